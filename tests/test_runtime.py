import asyncio

import pytest
import pytest_asyncio

from rtchat.server.runtime import ServerRuntime

SECRET = "test-secret-0123456789-abcdefghijklmnop"


@pytest_asyncio.fixture
async def runtime():
    rt = ServerRuntime({"jwt_secret": SECRET, "db_path": ":memory:", "listen": "127.0.0.1:0"})
    await rt.store.open()
    try:
        yield rt
    finally:
        await rt.store.close()


@pytest_asyncio.fixture
async def connect(runtime, make_ws):
    tasks = []
    sockets = []

    def _connect(user_id=None, token=None, **kwargs):
        if token is None and user_id is not None:
            token = runtime.authenticator.issue(user_id)
        ws = make_ws(token, **kwargs)
        sockets.append(ws)
        tasks.append(asyncio.ensure_future(runtime.handle_connection(ws)))
        return ws, tasks[-1]

    yield _connect
    for ws in sockets:
        ws.disconnect()
    await asyncio.wait_for(asyncio.gather(*tasks, return_exceptions=True), 2)


@pytest.mark.asyncio
async def test_missing_token_is_rejected_before_registration(runtime, connect):
    ws, task = connect()
    await asyncio.wait_for(task, 1)
    assert ws.close_args == (1008, "authentication required")
    assert ws.sent == []
    assert len(runtime.registry) == 0


@pytest.mark.asyncio
async def test_bad_token_is_rejected(runtime, connect):
    ws, task = connect(token="garbage")
    await asyncio.wait_for(task, 1)
    assert ws.close_args == (1008, "invalid token")
    assert len(runtime.registry) == 0


@pytest.mark.asyncio
async def test_bearer_header_is_accepted(runtime, make_ws, wait_until):
    ws = make_ws(headers={"Authorization": f"Bearer {runtime.authenticator.issue(5)}"})
    task = asyncio.ensure_future(runtime.handle_connection(ws))
    await wait_until(lambda: runtime.registry.is_online(5))
    ws.disconnect()
    await asyncio.wait_for(task, 1)
    assert not runtime.registry.is_online(5)


@pytest.mark.asyncio
async def test_two_user_chat_scenario(runtime, connect, wait_until):
    ws1, t1 = connect(1)
    await wait_until(lambda: {"userId": 1, "status": "online"} in ws1.of_type("userStatus"))

    ws2, t2 = connect(2)
    await wait_until(lambda: {"userId": 2, "status": "online"} in ws1.of_type("userStatus"))
    await wait_until(lambda: {"userId": 2, "status": "online"} in ws2.of_type("userStatus"))

    ws1.feed({"type": "sendMessage", "payload": {"receiverId": 2, "content": "hi"}})
    await wait_until(lambda: ws2.of_type("message") and ws1.of_type("message"))

    [delivered] = ws2.of_type("message")
    assert {k: delivered[k] for k in ("id", "senderId", "receiverId", "content")} == {
        "id": 1, "senderId": 1, "receiverId": 2, "content": "hi",
    }
    assert ws1.of_type("message") == [delivered]

    # user 2 leaves
    ws2.disconnect()
    await asyncio.wait_for(t2, 1)
    await wait_until(lambda: {"userId": 2, "status": "offline"} in ws1.of_type("userStatus"))

    ws1.feed({"type": "sendMessage", "payload": {"receiverId": 2, "content": "still there?"}})
    await wait_until(lambda: len(ws1.of_type("message")) == 2)

    assert ws1.of_type("message")[1]["id"] == 2
    assert len(ws2.of_type("message")) == 1
    history = await runtime.store.history(1, 2)
    assert [m.content for m in history] == ["hi", "still there?"]

    ws1.disconnect()
    await asyncio.wait_for(t1, 1)


@pytest.mark.asyncio
async def test_reconnect_survives_old_tab_disconnect(runtime, connect, wait_until):
    watcher, _ = connect(9)
    await wait_until(lambda: runtime.registry.is_online(9))

    old, t_old = connect(1)
    await wait_until(lambda: runtime.registry.is_online(1))
    first = runtime.registry.lookup(1)
    new, _ = connect(1)
    await wait_until(lambda: runtime.registry.lookup(1) is not first)
    current = runtime.registry.lookup(1)

    old.disconnect()
    await asyncio.wait_for(t_old, 1)

    assert runtime.registry.lookup(1) is current
    await asyncio.sleep(0.02)
    assert {"userId": 1, "status": "offline"} not in watcher.of_type("userStatus")

    watcher.feed({"type": "sendMessage", "payload": {"receiverId": 1, "content": "which tab?"}})
    await wait_until(lambda: new.of_type("message"))
    assert old.of_type("message") == []


@pytest.mark.asyncio
async def test_validation_error_goes_to_sender_only(runtime, connect, wait_until):
    ws1, _ = connect(1)
    ws2, _ = connect(2)
    await wait_until(lambda: len(runtime.registry) == 2)

    ws1.feed({"type": "sendMessage", "payload": {"receiverId": 2, "content": "  "}})
    await wait_until(lambda: ws1.of_type("error"))

    assert ws1.of_type("error")[0]["code"] == "VALIDATION"
    assert ws2.of_type("error") == []
    assert await runtime.store.history(1, 2) == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "raw,code",
    [
        ("{broken", "BAD_FRAME"),
        ('{"type": "fly"}', "UNKNOWN_TYPE"),
        ('{"type": "sendMessage", "payload": {"content": "x"}}', "VALIDATION"),
        ('{"type": "deleteMessage", "payload": {"id": 999}}', "NOT_FOUND"),
    ],
)
async def test_bad_requests_answer_with_error(runtime, connect, wait_until, raw, code):
    ws, _ = connect(1)
    await wait_until(lambda: runtime.registry.is_online(1))
    ws.feed(raw)
    await wait_until(lambda: ws.of_type("error"))
    assert ws.of_type("error")[0]["code"] == code


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "raw",
    [
        '{"type": "sendMessage", "payload": {"receiverId": 9223372036854775808, "content": "hi"}}',
        '{"type": "deleteMessage", "payload": {"id": 9223372036854775808}}',
    ],
)
async def test_out_of_range_ids_answer_with_validation_error(runtime, connect, wait_until, raw):
    watcher, _ = connect(2)
    ws, task = connect(1)
    await wait_until(lambda: len(runtime.registry) == 2)

    ws.feed(raw)
    await wait_until(lambda: ws.of_type("error"))

    assert ws.of_type("error")[0]["code"] == "VALIDATION"
    assert watcher.of_type("error") == []
    assert not task.done()
    assert runtime.registry.is_online(1)
    assert {"userId": 1, "status": "offline"} not in watcher.of_type("userStatus")

    ws.feed({"type": "listOnline"})
    await wait_until(lambda: ws.of_type("onlineUsers"))


@pytest.mark.asyncio
async def test_unexpected_failure_answers_internal_and_keeps_connection(
    runtime, connect, wait_until, monkeypatch
):
    async def broken_history(identity, other):
        raise RuntimeError("boom")

    monkeypatch.setattr(runtime.router, "history", broken_history)
    ws, task = connect(1)
    await wait_until(lambda: runtime.registry.is_online(1))

    ws.feed({"type": "getHistory", "payload": {"userId": 2}})
    await wait_until(lambda: ws.of_type("error"))

    assert ws.of_type("error")[0] == {"code": "INTERNAL", "detail": "internal server error"}
    assert not task.done()
    assert runtime.registry.is_online(1)

    ws.feed({"type": "sendMessage", "payload": {"receiverId": 2, "content": "still here"}})
    await wait_until(lambda: ws.of_type("message"))


@pytest.mark.asyncio
async def test_history_delete_and_online_listing(runtime, connect, wait_until):
    ws1, _ = connect(1)
    ws2, _ = connect(2)
    await wait_until(lambda: len(runtime.registry) == 2)

    ws1.feed({"type": "sendMessage", "payload": {"receiverId": 2, "content": "one"}})
    ws2.feed({"type": "sendMessage", "payload": {"receiverId": 1, "content": "two"}})
    await wait_until(lambda: len(ws1.of_type("message")) == 2)

    ws1.feed({"type": "listOnline"})
    await wait_until(lambda: ws1.of_type("onlineUsers"))
    assert ws1.of_type("onlineUsers")[0] == {"userIds": [1, 2]}

    ws1.feed({"type": "getHistory", "payload": {"userId": 2}})
    await wait_until(lambda: ws1.of_type("history"))
    hist = ws1.of_type("history")[0]
    assert hist["userId"] == 2
    assert sorted(m["content"] for m in hist["messages"]) == ["one", "two"]

    theirs = next(m for m in hist["messages"] if m["senderId"] == 2)
    ws1.feed({"type": "deleteMessage", "payload": {"id": theirs["id"]}})
    await wait_until(lambda: ws1.of_type("error"))
    assert ws1.of_type("error")[0]["code"] == "FORBIDDEN"

    mine = next(m for m in hist["messages"] if m["senderId"] == 1)
    ws1.feed({"type": "deleteMessage", "payload": {"id": mine["id"]}})
    await wait_until(lambda: ws2.of_type("messageDeleted"))
    assert ws2.of_type("messageDeleted") == [{"id": mine["id"]}]
    assert [m.content for m in await runtime.store.history(1, 2)] == ["two"]


@pytest.mark.asyncio
async def test_heartbeat_is_ignored(runtime, connect, wait_until):
    ws, _ = connect(1)
    await wait_until(lambda: runtime.registry.is_online(1))
    ws.feed({"type": "heartbeat"})
    ws.feed({"type": "listOnline"})
    await wait_until(lambda: ws.of_type("onlineUsers"))
    assert ws.of_type("error") == []


def test_listen_address_parsing():
    rt = ServerRuntime({"jwt_secret": SECRET, "listen": "localhost:7001", "db_path": ":memory:"})
    assert (rt.listen_host, rt.listen_port) == ("localhost", 7001)


def test_dev_secret_fallback(monkeypatch):
    monkeypatch.delenv("RTCHAT_JWT_SECRET", raising=False)
    rt = ServerRuntime({"db_path": ":memory:"})
    assert rt.authenticator.secret == "fallback_secret_for_development"

    monkeypatch.setenv("RTCHAT_JWT_SECRET", "from-env")
    assert ServerRuntime({"db_path": ":memory:"}).authenticator.secret == "from-env"
