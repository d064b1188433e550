import asyncio
from urllib.parse import quote

import orjson
import pytest
import pytest_asyncio

from rtchat.core.auth import TokenAuthenticator
from rtchat.core.errors import StaleHandleError
from rtchat.core.presence import PresenceBroadcaster, PresenceRegistry
from rtchat.core.router import MessageRouter
from rtchat.core.store import MessageStore

SECRET = "test-secret-0123456789-abcdefghijklmnop"


class FakeConnection:
    """In-memory stand-in for a live handle; records every pushed event."""

    def __init__(self, identity, stale=False):
        self.identity = identity
        self.stale = stale
        self.events = []

    def push(self, event):
        if self.stale:
            raise StaleHandleError("gone")
        self.events.append(event)

    def of_type(self, type_):
        return [e["payload"] for e in self.events if e["type"] == type_]


class FakeRequest:
    def __init__(self, path, headers):
        self.path = path
        self.headers = headers


class FakeWebSocket:
    """Server-side websocket double: feed() inbound text, inspect sent frames."""

    def __init__(self, path="/", headers=None):
        self.request = FakeRequest(path, headers or {})
        self.remote_address = ("127.0.0.1", 50000)
        self.sent = []
        self.close_args = None
        self._inbox = asyncio.Queue()

    def feed(self, frame):
        self._inbox.put_nowait(frame if isinstance(frame, str) else orjson.dumps(frame).decode())

    def disconnect(self):
        self._inbox.put_nowait(None)

    async def send(self, text):
        self.sent.append(orjson.loads(text))

    async def close(self, code=1000, reason=""):
        if self.close_args is None:
            self.close_args = (code, reason)
        self._inbox.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is None:
            raise StopAsyncIteration
        return item

    def of_type(self, type_):
        return [f["payload"] for f in self.sent if f["type"] == type_]


async def eventually(predicate, timeout=2.0):
    """Spin the loop until predicate() is true."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def make_conn():
    return FakeConnection


@pytest.fixture
def make_ws():
    def _make(token=None, **kwargs):
        path = f"/?token={quote(token)}" if token else "/"
        return FakeWebSocket(path=path, **kwargs)
    return _make


@pytest.fixture
def authenticator():
    return TokenAuthenticator(SECRET)


@pytest.fixture
def registry():
    return PresenceRegistry()


@pytest.fixture
def broadcaster(registry):
    return PresenceBroadcaster(registry)


@pytest_asyncio.fixture
async def store():
    s = MessageStore(":memory:")
    await s.open()
    try:
        yield s
    finally:
        await s.close()


@pytest.fixture
def router(store, registry):
    return MessageRouter(store, registry, max_content_length=50)


@pytest.fixture
def wait_until():
    return eventually
