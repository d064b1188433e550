from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Dict, Optional

import websockets

from .errors import StaleHandleError
from .proto import Identity, encode_frame

log = logging.getLogger("rtchat.ws")

CLOSE_POLICY_VIOLATION = 1008
CLOSE_SLOW_CONSUMER = 1011


class Connection:
    """Live handle for one authenticated websocket.

    ``push`` only enqueues; a writer task drains the outbox with a bounded
    send per frame. A closed socket, full outbox or timed-out send turns the
    handle stale and further pushes raise StaleHandleError.
    """

    def __init__(
        self,
        websocket: Any,
        identity: Identity,
        *,
        outbox_size: int = 256,
        push_timeout: float = 5.0,
    ) -> None:
        self.websocket = websocket
        self.identity = identity
        self.push_timeout = push_timeout
        self._outbox: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=outbox_size)
        self._writer: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._drain(), name=f"writer:{self.identity}")

    def push(self, event: Dict[str, Any]) -> None:
        if self._closed:
            raise StaleHandleError(f"connection for {self.identity!r} is closed")
        try:
            self._outbox.put_nowait(event)
        except asyncio.QueueFull as exc:
            raise StaleHandleError(f"outbox full for {self.identity!r}") from exc

    async def _drain(self) -> None:
        while True:
            event = await self._outbox.get()
            try:
                await asyncio.wait_for(self.websocket.send(encode_frame(event)), self.push_timeout)
            except websockets.ConnectionClosed:
                self._closed = True
                return
            except asyncio.TimeoutError:
                log.warning("Push to %s timed out after %.1fs; closing", self.identity, self.push_timeout)
                self._closed = True
                with contextlib.suppress(Exception):
                    await self.websocket.close(CLOSE_SLOW_CONSUMER, "slow consumer")
                return
            except Exception:
                log.exception("Writer for %s failed; marking connection closed", self.identity)
                self._closed = True
                return

    async def aclose(self, code: int = 1000, reason: str = "") -> None:
        self._closed = True
        if self._writer is not None:
            self._writer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._writer
            self._writer = None
        with contextlib.suppress(websockets.ConnectionClosed):
            await self.websocket.close(code, reason)

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<Connection {self.identity!r} {state}>"


__all__ = ["Connection", "CLOSE_POLICY_VIOLATION", "CLOSE_SLOW_CONSUMER"]
