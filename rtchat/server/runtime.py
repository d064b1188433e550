from __future__ import annotations

import logging
import os
from typing import Any, Dict, Mapping, Optional, Tuple

import websockets

from rtchat.core import proto
from rtchat.core.auth import TokenAuthenticator, token_from_handshake
from rtchat.core.errors import AuthError, ChatError
from rtchat.core.presence import PresenceBroadcaster, PresenceRegistry
from rtchat.core.router import DEFAULT_MAX_CONTENT, MessageRouter
from rtchat.core.store import MessageStore
from rtchat.core.ws import CLOSE_POLICY_VIOLATION, Connection

log = logging.getLogger("rtchat.server.runtime")

DEV_SECRET = "fallback_secret_for_development"


class ServerRuntime:
    """Websocket server for direct messages and presence."""

    def __init__(self, config: Dict[str, Any]) -> None:
        self.cfg = config
        self.listen_host, self.listen_port = self._parse_listen(config.get("listen", "0.0.0.0:5000"))
        self.db_path = config.get("db_path", "rtchat.db")
        self.push_timeout = float(config.get("push_timeout_secs", 5))
        self.outbox_size = int(config.get("outbox_size", 256))

        secret = config.get("jwt_secret") or os.getenv("RTCHAT_JWT_SECRET")
        if not secret:
            log.warning("No jwt_secret configured; using the development secret")
            secret = DEV_SECRET
        self.authenticator = TokenAuthenticator(secret, algorithm=config.get("jwt_algorithm", "HS256"))

        self.store = MessageStore(self.db_path)
        self.registry: PresenceRegistry[Connection] = PresenceRegistry()
        self.broadcaster = PresenceBroadcaster(self.registry)
        self.router = MessageRouter(
            self.store,
            self.registry,
            max_content_length=int(config.get("max_content_length", DEFAULT_MAX_CONTENT)),
        )

        self._ws_server: Optional[Any] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.store.open()
        self._ws_server = await websockets.serve(self.handle_connection, self.listen_host, self.listen_port)
        log.info("rtchat server listening on ws://%s:%d", self.listen_host, self.listen_port)

    async def stop(self) -> None:
        for conn in self.registry.handles():
            await conn.aclose(1001, "server shutting down")

        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None

        await self.store.close()

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def handle_connection(self, websocket: Any) -> None:
        remote = self._fmt_remote(websocket)
        path, headers = self._handshake(websocket)
        try:
            identity = self.authenticator.verify(token_from_handshake(path, headers))
        except AuthError as exc:
            log.info("Rejected connection from %s: %s", remote, exc.detail)
            await websocket.close(CLOSE_POLICY_VIOLATION, exc.detail)
            return

        conn = Connection(websocket, identity, outbox_size=self.outbox_size, push_timeout=self.push_timeout)
        conn.start()
        self.registry.register(identity, conn)
        log.info("User %s connected from %s", identity, remote)
        try:
            async for raw in websocket:
                await self._dispatch(conn, raw)
        except websockets.ConnectionClosed:
            pass
        finally:
            self.registry.unregister(identity, conn)
            await conn.aclose()
            log.info("User %s disconnected", identity)

    async def _dispatch(self, conn: Connection, raw: Any) -> None:
        try:
            frame = proto.decode_frame(raw)
            type_ = frame.type
            if type_ == proto.EV_SEND_MESSAGE:
                req = proto.parse_payload(proto.SendMessage, frame.payload)
                await self.router.send(conn.identity, req.receiver_id, req.content)
            elif type_ == proto.EV_DELETE_MESSAGE:
                req = proto.parse_payload(proto.DeleteMessage, frame.payload)
                await self.router.delete(conn.identity, req.id)
            elif type_ == proto.EV_GET_HISTORY:
                req = proto.parse_payload(proto.HistoryRequest, frame.payload)
                messages = await self.router.history(conn.identity, req.user_id)
                self._reply(conn, proto.history_event(req.user_id, messages))
            elif type_ == proto.EV_LIST_ONLINE:
                self._reply(conn, proto.online_event(self.registry.snapshot()))
            elif type_ == proto.EV_HEARTBEAT:
                pass
            else:
                self._reply(conn, proto.error_event("UNKNOWN_TYPE", f"unsupported type {type_}"))
        except ChatError as exc:
            log.info("Request from %s failed: %s %s", conn.identity, exc.code, exc.detail)
            self._reply(conn, proto.error_event(exc.code, exc.detail))
        except Exception:
            # one bad frame must not take the connection down
            log.exception("Unhandled error dispatching frame from %s", conn.identity)
            self._reply(conn, proto.error_event("INTERNAL", "internal server error"))

    def _reply(self, conn: Connection, event: Dict[str, Any]) -> None:
        try:
            conn.push(event)
        except ChatError as exc:
            log.debug("Reply to %s dropped: %s", conn.identity, exc.detail)

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------

    @staticmethod
    def _handshake(websocket: Any) -> Tuple[Optional[str], Optional[Mapping[str, str]]]:
        request = getattr(websocket, "request", None)
        if request is not None:
            return request.path, request.headers
        # websockets legacy protocol
        return getattr(websocket, "path", None), getattr(websocket, "request_headers", None)

    @staticmethod
    def _parse_listen(value: str) -> tuple[str, int]:
        host, port = value.rsplit(":", 1)
        return host, int(port)

    @staticmethod
    def _fmt_remote(websocket: Any) -> str:
        peer = getattr(websocket, "remote_address", None)
        if isinstance(peer, tuple):
            return f"{peer[0]}:{peer[1]}"
        return str(peer)


__all__ = ["ServerRuntime", "DEV_SECRET"]
