# tests/test_session_manager.py
import asyncio
from typing import Callable, List, Optional, Tuple

import anyio
import pytest
from mcp.types import JSONRPCMessage, JSONRPCNotification

from mcp_oauth_gateway.sessions import McpSession, SessionRegistry

from conftest import McpTestClient, running_app


@pytest.fixture(autouse=True)
def oauth_disabled(gateway_settings, monkeypatch):
    monkeypatch.setattr(gateway_settings, "oauth_enabled", False)


def _session_manager():
    from mcp_oauth_gateway.main import app
    return app.state.session_manager


def _assert_no_valid_session(response):
    assert response.status_code == 400
    body = response.json()
    assert body["jsonrpc"] == "2.0"
    assert body["error"]["code"] == -32000
    assert body["error"]["message"] == "Bad Request: No valid session ID provided"
    assert body["id"] is None


async def _open_stream(
    session_id: str,
    last_event_id: Optional[str] = None,
    until: Optional[Callable[[str], bool]] = None,
):
    """
    Open GET /mcp through raw ASGI. Returns the sent messages once the
    response head is out, or once the body read so far satisfies ``until``.
    """
    from mcp_oauth_gateway.main import app

    headers = [
        (b"accept", b"text/event-stream"),
        (b"mcp-session-id", session_id.encode()),
        (b"mcp-protocol-version", b"2025-03-26"),
    ]
    if last_event_id is not None:
        headers.append((b"last-event-id", last_event_id.encode()))
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "GET",
        "scheme": "http",
        "path": "/mcp",
        "raw_path": b"/mcp",
        "root_path": "",
        "query_string": b"",
        "headers": headers,
        "server": ("testserver", 80),
        "client": ("127.0.0.1", 50000),
    }
    messages = []
    done = anyio.Event()

    async def receive():
        await anyio.sleep_forever()

    async def send(message):
        messages.append(message)
        if until is None:
            if message["type"] == "http.response.start":
                done.set()
        elif until(_stream_body(messages)):
            done.set()

    async with anyio.create_task_group() as task_group:
        task_group.start_soon(app, scope, receive, send)
        with anyio.fail_after(5):
            await done.wait()
        task_group.cancel_scope.cancel()
    return messages


def _stream_body(messages) -> str:
    return b"".join(m.get("body", b"") for m in messages if m["type"] == "http.response.body").decode()


def _sse_events(body: str) -> List[Tuple[Optional[str], str]]:
    """Split an SSE body into (id, data) pairs."""
    events = []
    for block in body.replace("\r\n", "\n").split("\n\n"):
        event_id, data = None, []
        for line in block.split("\n"):
            if line.startswith("id:"):
                event_id = line[3:].strip()
            elif line.startswith("data:"):
                data.append(line[5:].strip())
        if event_id is not None or data:
            events.append((event_id, "\n".join(data)))
    return events


def _log_notification(text: str) -> JSONRPCMessage:
    return JSONRPCMessage(JSONRPCNotification(
        jsonrpc="2.0",
        method="notifications/message",
        params={"level": "info", "data": text},
    ))


async def test_initialize_creates_a_session():
    async with running_app() as http:
        mcp = McpTestClient(http)
        response = await mcp.initialize()

        assert response.status_code == 200
        assert mcp.session_id
        assert response.json()["result"]["serverInfo"]["name"]
        manager = _session_manager()
        assert mcp.session_id in manager.registry
        assert manager.active_sessions == 1


async def test_requests_with_session_id_reuse_the_session():
    async with running_app() as http:
        mcp = McpTestClient(http)
        await mcp.initialize()
        manager = _session_manager()
        session = manager.registry.get(mcp.session_id)

        result = await mcp.call_tool("greet", {"name": "Ada"})
        await mcp.call_tool("greet", {"name": "Grace"})

        assert result["content"][0]["text"] == "Hello, Ada!"
        assert len(manager.registry) == 1
        assert manager.registry.get(mcp.session_id) is session


async def test_each_initialize_gets_its_own_session():
    async with running_app() as http:
        first, second = McpTestClient(http), McpTestClient(http)
        await first.initialize()
        await second.initialize()

        assert first.session_id != second.session_id
        assert _session_manager().active_sessions == 2


async def test_post_without_session_must_be_initialize():
    async with running_app() as http:
        mcp = McpTestClient(http)
        response = await mcp.post({"jsonrpc": "2.0", "id": 1, "method": "tools/list"})

        _assert_no_valid_session(response)
        assert _session_manager().active_sessions == 0


async def test_post_with_unparseable_body_is_a_parse_error():
    async with running_app() as http:
        response = await http.post(
            "/mcp",
            content=b"{not json",
            headers={"Content-Type": "application/json", "Accept": "application/json, text/event-stream"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == -32700


async def test_unknown_session_id_is_rejected_for_every_method():
    async with running_app() as http:
        mcp = McpTestClient(http)
        _assert_no_valid_session(await mcp.post({"jsonrpc": "2.0", "id": 1, "method": "tools/list"}, "nope"))
        _assert_no_valid_session(await mcp.delete("nope"))
        _assert_no_valid_session(await http.get("/mcp", headers={"Accept": "text/event-stream"}))


async def test_delete_removes_session_and_id_is_not_recreated():
    async with running_app() as http:
        mcp = McpTestClient(http)
        await mcp.initialize()
        manager = _session_manager()

        response = await mcp.delete()
        assert response.status_code == 200
        assert mcp.session_id not in manager.registry

        # The body is an initialize request, but a stale id is never revived
        again = await mcp.post({
            "jsonrpc": "2.0",
            "id": 99,
            "method": "initialize",
            "params": {
                "protocolVersion": "2025-03-26",
                "capabilities": {},
                "clientInfo": {"name": "gateway-tests", "version": "1.0"},
            },
        })
        _assert_no_valid_session(again)
        assert manager.active_sessions == 0


async def test_get_with_known_session_opens_event_stream():
    async with running_app() as http:
        mcp = McpTestClient(http)
        await mcp.initialize()

        messages = await _open_stream(mcp.session_id)

        start = messages[0]
        assert start["status"] == 200
        headers = {key.decode().lower(): value.decode() for key, value in start["headers"]}
        assert headers["content-type"].startswith("text/event-stream")
        # No backlog: nothing but the response head was sent before cancellation
        assert not any(m["type"] == "http.response.body" and m.get("body") for m in messages[1:])


async def test_get_with_last_event_id_replays_backlog_after_cursor():
    async with running_app() as http:
        mcp = McpTestClient(http)
        await mcp.initialize()
        event_log = _session_manager().registry.get(mcp.session_id).event_log

        event_ids = [
            await event_log.store_event("request-7", _log_notification(f"line {n}"))
            for n in range(3)
        ]
        await event_log.store_event("request-8", _log_notification("other stream"))

        def replayed(body: str):
            return [(event_id, data) for event_id, data in _sse_events(body) if "notifications/message" in data]

        messages = await _open_stream(
            mcp.session_id,
            last_event_id=event_ids[0],
            until=lambda body: any(event_id == event_ids[2] for event_id, _ in replayed(body)),
        )

        assert messages[0]["status"] == 200
        events = replayed(_stream_body(messages))
        assert [event_id for event_id, _ in events] == event_ids[1:]
        assert "line 1" in events[0][1]
        assert "line 2" in events[1][1]


async def test_double_close_removes_session_once():
    async with running_app() as http:
        mcp = McpTestClient(http)
        await mcp.initialize()
        manager = _session_manager()
        session = manager.registry.get(mcp.session_id)

        await asyncio.gather(manager.close_session(session), manager.close_session(session))

        assert session.closed
        assert manager.active_sessions == 0
        _assert_no_valid_session(await mcp.post({"jsonrpc": "2.0", "id": 5, "method": "tools/list"}))


async def test_shutdown_closes_open_sessions():
    async with running_app() as http:
        mcp = McpTestClient(http)
        await mcp.initialize()
        manager = _session_manager()
        session = manager.registry.get(mcp.session_id)

    assert session.closed
    assert manager.active_sessions == 0


async def test_health_reports_active_sessions():
    async with running_app() as http:
        await McpTestClient(http).initialize()
        health = (await http.get("/health")).json()
        ready = await http.get("/ready")

    assert health["status"] == "healthy"
    assert health["active_sessions"] == 1
    assert health["version"] == "1.0.0"
    assert ready.status_code == 200
    assert ready.json()["status"] == "ready"


async def test_greet_output_is_truncated_to_budget(gateway_settings, monkeypatch):
    monkeypatch.setattr(gateway_settings, "max_token_single_call", 5)
    async with running_app() as http:
        mcp = McpTestClient(http)
        await mcp.initialize()
        result = await mcp.call_tool("greet", {"name": "Ada Lovelace"})

    text = result["content"][0]["text"]
    assert text.startswith("[Output truncated to 5 of 20 characters]")
    assert text.endswith("Hello")


@pytest.mark.parametrize("debug_mode", [False, True])
async def test_unexpected_error_becomes_jsonrpc_500(gateway_settings, monkeypatch, debug_mode):
    monkeypatch.setattr(gateway_settings, "debug_mode", debug_mode)

    async def broken_handle_request(scope, receive, send):
        raise RuntimeError("registry exploded")

    async with running_app() as http:
        monkeypatch.setattr(_session_manager(), "handle_request", broken_handle_request)
        response = await McpTestClient(http).initialize()

    assert response.status_code == 500
    error = response.json()["error"]
    assert error["code"] == -32603
    assert error["message"] == "Internal server error"
    if debug_mode:
        assert error["data"] == "registry exploded"
    else:
        assert "data" not in error


def test_registry_remove_is_idempotent():
    registry = SessionRegistry()
    session = McpSession("abc", transport=None, event_log=None)
    registry.add(session)

    assert registry.remove("abc") is session
    assert registry.remove("abc") is None
    assert "abc" not in registry
    assert len(registry) == 0


def test_registry_rejects_duplicate_ids():
    registry = SessionRegistry()
    registry.add(McpSession("abc", transport=None, event_log=None))
    with pytest.raises(ValueError):
        registry.add(McpSession("abc", transport=None, event_log=None))
