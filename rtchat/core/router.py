from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List

from .errors import NotFoundError, PermissionDeniedError, StaleHandleError, ValidationError
from .presence import PresenceRegistry
from .proto import Identity, Message, deleted_event, is_identity, message_event
from .store import MessageStore

log = logging.getLogger("rtchat.router")

DEFAULT_MAX_CONTENT = 2000


class MessageRouter:
    """Persists direct messages, then pushes them to whoever is online.

    The store write is authoritative: nothing is pushed unless it succeeded,
    and a push failure never undoes it.
    """

    def __init__(
        self,
        store: MessageStore,
        registry: PresenceRegistry,
        *,
        max_content_length: int = DEFAULT_MAX_CONTENT,
    ) -> None:
        self.store = store
        self.registry = registry
        self.max_content_length = max_content_length

    async def send(self, sender: Identity, receiver_id: Identity, content: str) -> Message:
        self._validate(receiver_id, content)

        # shielded: a dropping connection must not cancel an accepted write
        message = await asyncio.shield(self.store.append(sender, receiver_id, content))

        event = message_event(message)
        delivered = self._push(receiver_id, event)
        if receiver_id != sender:
            self._push(sender, event)
        log.debug(
            "Message %d %s -> %s (%s)",
            message.id, sender, receiver_id, "delivered" if delivered else "stored",
        )
        return message

    async def delete(self, requester: Identity, message_id: int) -> Message:
        message = await self.store.get(message_id)
        if message is None:
            raise NotFoundError("message not found")
        if message.sender_id != requester:
            raise PermissionDeniedError("only the sender can delete a message")
        if not await self.store.delete_by_id(message_id):
            raise NotFoundError("message not found")

        event = deleted_event(message_id)
        self._push(message.receiver_id, event)
        if message.receiver_id != requester:
            self._push(requester, event)
        log.info("Message %d deleted by %s", message_id, requester)
        return message

    async def history(self, identity: Identity, other: Identity) -> List[Message]:
        if not is_identity(other):
            raise ValidationError("invalid user id")
        return await self.store.history(identity, other)

    def _validate(self, receiver_id: Identity, content: Any) -> None:
        if not is_identity(receiver_id):
            raise ValidationError("invalid receiver id")
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("message content is required")
        if len(content) > self.max_content_length:
            raise ValidationError(f"message content exceeds {self.max_content_length} characters")

    def _push(self, identity: Identity, event: Dict[str, Any]) -> bool:
        handle = self.registry.lookup(identity)
        if handle is None:
            return False
        try:
            handle.push(event)
        except StaleHandleError as exc:
            log.info("Push to %s failed, treating as offline: %s", identity, exc)
            return False
        return True


__all__ = ["MessageRouter", "DEFAULT_MAX_CONTENT"]
