from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, FrozenSet, Generic, List, Optional, Protocol, TypeVar

from .errors import RegistrationRaceError, StaleHandleError
from .proto import OFFLINE, ONLINE, Identity, status_event


"""
Presence
--------
Process-local view of who is connected right now.

  * PresenceRegistry maps identity -> live handle, one entry per identity.
    A reconnect replaces the entry (last writer wins); eviction is guarded so
    the superseded handle's own disconnect cannot remove the newer entry.
  * PresenceBroadcaster listens to the registry and pushes userStatus events
    to every live handle. Listeners run under the registry lock, so status
    events leave in the same order the registry changed.
"""


log = logging.getLogger("rtchat.presence")


class Handle(Protocol):
    def push(self, event: dict) -> None: ...


H = TypeVar("H", bound=Handle)

Listener = Callable[[Identity, str], None]


class PresenceRegistry(Generic[H]):
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._entries: Dict[Identity, H] = {}
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    # --- mutations ---

    def register(self, identity: Identity, handle: H) -> Optional[H]:
        """Insert or replace the entry; returns the superseded handle, if any.

        The superseded handle is not notified.
        """
        with self._lock:
            previous = self._entries.get(identity)
            self._entries[identity] = handle
            if previous is not None and previous is not handle:
                log.info("User %s reconnected; superseding previous connection", identity)
            self._notify(identity, ONLINE)
            return previous

    def unregister(self, identity: Identity, handle: H, *, strict: bool = False) -> bool:
        """Remove the entry only if ``handle`` is still the one on record."""
        with self._lock:
            current = self._entries.get(identity)
            if current is None or current is not handle:
                if strict:
                    raise RegistrationRaceError(f"stale unregister for {identity!r}")
                log.debug("Ignored stale unregister for %s", identity)
                return False
            del self._entries[identity]
            self._notify(identity, OFFLINE)
            return True

    # --- reads ---

    def lookup(self, identity: Identity) -> Optional[H]:
        with self._lock:
            return self._entries.get(identity)

    def snapshot(self) -> FrozenSet[Identity]:
        with self._lock:
            return frozenset(self._entries)

    def handles(self) -> List[H]:
        with self._lock:
            return list(self._entries.values())

    def is_online(self, identity: Identity) -> bool:
        with self._lock:
            return identity in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _notify(self, identity: Identity, status: str) -> None:
        for listener in self._listeners:
            try:
                listener(identity, status)
            except Exception:
                log.exception("Presence listener failed for %s/%s", identity, status)


class PresenceBroadcaster:
    """Announces online/offline transitions to every live connection."""

    def __init__(self, registry: PresenceRegistry) -> None:
        self.registry = registry
        registry.subscribe(self.on_status_change)

    def on_status_change(self, identity: Identity, status: str) -> int:
        event = status_event(identity, status)
        delivered = 0
        for handle in self.registry.handles():
            try:
                handle.push(event)
                delivered += 1
            except StaleHandleError as exc:
                log.debug("Skipped %s event for stale handle: %s", status, exc)
        log.info("User %s is %s (announced to %d connection(s))", identity, status, delivered)
        return delivered


__all__ = ["Handle", "PresenceRegistry", "PresenceBroadcaster"]
