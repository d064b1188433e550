from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import sys
from typing import Any, Dict, Optional
from urllib.parse import quote

import websockets

from rtchat.core import proto
from rtchat.core.auth import TokenAuthenticator
from rtchat.core.errors import FrameError

log = logging.getLogger("rtchat.cmd.client")


def _parse_user(value: str) -> proto.Identity:
    return int(value) if value.isdigit() else value


class ClientApp:
    def __init__(self, server_url: str, token: str) -> None:
        self.server_url = server_url
        self.token = token
        self.ws: Optional[Any] = None
        self.online: set = set()
        self.stop_event = asyncio.Event()

    async def run(self) -> None:
        sep = "&" if "?" in self.server_url else "?"
        url = f"{self.server_url}{sep}token={quote(self.token)}"
        async with websockets.connect(url) as ws:
            self.ws = ws
            await self._send_frame(proto.EV_LIST_ONLINE, {})
            receiver = asyncio.create_task(self._rx_loop())
            try:
                await self._command_loop()
            finally:
                self.stop_event.set()
                receiver.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await receiver

    async def _command_loop(self) -> None:
        loop = asyncio.get_running_loop()
        print("rtchat client ready. Commands: /tell <user> <msg>, /history <user>, /delete <id>, /online, /quit")
        while not self.stop_event.is_set():
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            line = line.strip()
            if line:
                await self._handle_command(line)

    async def _handle_command(self, line: str) -> None:
        parts = line.split()
        cmd = parts[0]
        if cmd == "/tell" and len(parts) >= 3:
            text = line.split(" ", 2)[2]
            await self._send_frame(proto.EV_SEND_MESSAGE, {"receiverId": _parse_user(parts[1]), "content": text})
        elif cmd == "/history" and len(parts) == 2:
            await self._send_frame(proto.EV_GET_HISTORY, {"userId": _parse_user(parts[1])})
        elif cmd == "/delete" and len(parts) == 2 and parts[1].isdigit():
            await self._send_frame(proto.EV_DELETE_MESSAGE, {"id": int(parts[1])})
        elif cmd == "/online":
            await self._send_frame(proto.EV_LIST_ONLINE, {})
        elif cmd in {"/quit", "/exit"}:
            self.stop_event.set()
        else:
            print("Unknown command")

    async def _send_frame(self, type_: str, payload: Dict[str, Any]) -> None:
        assert self.ws is not None
        await self.ws.send(proto.encode_frame(proto.build_frame(type_, payload)))

    async def _rx_loop(self) -> None:
        assert self.ws is not None
        try:
            async for raw in self.ws:
                try:
                    frame = proto.decode_frame(raw)
                except FrameError as exc:
                    log.warning("Dropped invalid frame: %s", exc)
                    continue
                self._handle_incoming(frame)
        except websockets.ConnectionClosed as exc:
            print(f"[closed] {exc}")
        finally:
            self.stop_event.set()

    def _handle_incoming(self, frame: proto.Frame) -> None:
        p = frame.payload
        if frame.type == proto.EV_MESSAGE:
            print(f"[{p.get('id')}] {p.get('senderId')} -> {p.get('receiverId')}: {p.get('content')}")
        elif frame.type == proto.EV_USER_STATUS:
            if p.get("status") == proto.ONLINE:
                self.online.add(p.get("userId"))
            else:
                self.online.discard(p.get("userId"))
            print(f"[status] {p.get('userId')} is {p.get('status')}")
        elif frame.type == proto.EV_MESSAGE_DELETED:
            print(f"[deleted] message {p.get('id')}")
        elif frame.type == proto.EV_HISTORY:
            print(f"[history with {p.get('userId')}]")
            for m in p.get("messages", []):
                print(f"  [{m['id']}] {m['senderId']}: {m['content']}")
        elif frame.type == proto.EV_ONLINE_USERS:
            self.online = set(p.get("userIds", []))
            print(f"[online] {', '.join(str(u) for u in p.get('userIds', [])) or 'nobody'}")
        elif frame.type == proto.EV_ERROR:
            print(f"[error] {p.get('code')}: {p.get('detail')}")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="rtchat client")
    parser.add_argument("--server", required=True, help="ws://host:port of the rtchat server")
    parser.add_argument("--token", help="Bearer token issued by the REST login")
    parser.add_argument("--user", help="Mint a development token for this user id (needs --secret)")
    parser.add_argument("--secret", help="JWT secret used with --user")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    token = args.token
    if not token:
        if not (args.user and args.secret):
            parser.error("either --token or both --user and --secret are required")
        token = TokenAuthenticator(args.secret).issue(_parse_user(args.user))

    asyncio.run(ClientApp(args.server, token).run())


if __name__ == "__main__":
    main()
