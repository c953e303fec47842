"""End-to-end tests for ``EventStreamService`` over mocked HTTP."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from typing import TYPE_CHECKING, Any

import httpx

from codeconsole.event_stream.backend import AgentBackendClient
from codeconsole.event_stream.connection import ConnectionManager
from codeconsole.event_stream.models.enums import SessionStatusType, ToolStatus
from codeconsole.event_stream.service import CONNECTION_LOST, EventStreamService
from codeconsole.settings import ConsoleSettings

if TYPE_CHECKING:
    from conftest import FakeClock, RecordingNotifier


async def _wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


def _frame(payload: dict[str, Any]) -> bytes:
    return f"data: {json.dumps(payload)}\n\n".encode()


def _offline_service(notifier: RecordingNotifier, clock: FakeClock) -> EventStreamService:
    """Service whose relay refuses every request."""
    http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
    return EventStreamService(
        ConnectionManager("http://relay", http_client=http, reconnect_delay=10),
        AgentBackendClient("http://relay/api/opencode", http),
        notifier=notifier,
        clock=clock,
    )


# ---------------------------------------------------------------------------
# Feed -> store
# ---------------------------------------------------------------------------


async def test_feed_reaches_store_and_resync_runs(notifier: RecordingNotifier, clock: FakeClock) -> None:
    gate = asyncio.Event()
    message = {"id": "msg_1", "sessionID": "ses_1", "role": "assistant", "time": {"created": 1}}

    async def _stream() -> AsyncIterator[bytes]:
        yield b'event: connected\ndata: {"clientId": "client_1"}\n\n'
        yield _frame({"type": "message.updated", "properties": {"info": message}})
        yield b"data: not json\n\n"
        await gate.wait()

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/sse/stream":
            return httpx.Response(200, content=_stream())
        if request.url.path == "/api/opencode/session/status":
            return httpx.Response(200, json={"ses_9": {"type": "busy"}})
        return httpx.Response(200, json={"success": True})

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    service = EventStreamService(
        ConnectionManager("http://relay", http_client=http, reconnect_delay=10),
        AgentBackendClient("http://relay/api/opencode", http),
        notifier=notifier,
        clock=clock,
    )

    service.start()
    await _wait_for(lambda: service.store.session("ses_9") is not None and service.dispatcher.dropped == 1)

    assert service.store.connection.connected is True
    assert service.store.message("ses_1", "msg_1") is not None
    assert service.store.session("ses_1").status.type is SessionStatusType.BUSY  # type: ignore[union-attr]
    assert service.store.session("ses_9").status.type is SessionStatusType.BUSY  # type: ignore[union-attr]
    assert service.dispatcher.dropped == 1

    gate.set()
    await _wait_for(lambda: not service.store.connection.connected)
    assert service.store.connection.error == CONNECTION_LOST

    await service.stop()
    await http.aclose()


# ---------------------------------------------------------------------------
# Local actions
# ---------------------------------------------------------------------------


async def test_initial_disconnected_state_has_no_error(notifier: RecordingNotifier, clock: FakeClock) -> None:
    service = _offline_service(notifier, clock)
    service.start()

    assert service.store.connection.connected is False
    assert service.store.connection.error is None
    await service.stop()


async def test_optimistic_prompt_round_trip(notifier: RecordingNotifier, clock: FakeClock) -> None:
    service = _offline_service(notifier, clock)

    correlation_id = service.submit_optimistic_prompt("ses_1", "run the tests")

    assert correlation_id.startswith("optimistic_user_")
    [placeholder] = service.store.messages("ses_1")
    assert placeholder.optimistic is True
    assert placeholder.time.created == clock()

    service.discard_optimistic_prompt("ses_1", correlation_id)
    assert service.store.messages("ses_1") == []
    await service.stop()


async def test_reject_tool_call_uses_clock(notifier: RecordingNotifier, clock: FakeClock) -> None:
    service = _offline_service(notifier, clock)
    service._on_frame(
        json.dumps({
            "type": "message.updated",
            "properties": {"info": {"id": "msg_1", "sessionID": "ses_1", "role": "assistant", "time": {"created": 1}}},
        })
    )
    service._on_frame(
        json.dumps({
            "type": "message.part.updated",
            "properties": {
                "part": {
                    "id": "prt_1",
                    "messageID": "msg_1",
                    "sessionID": "ses_1",
                    "type": "tool",
                    "callID": "call_1",
                    "state": {"status": "running", "input": {}},
                }
            },
        })
    )

    service.reject_tool_call("ses_1", "msg_1", "call_1", "User dismissed this question")

    state = service.store.part("msg_1", "prt_1").state  # type: ignore[union-attr]
    assert state.status is ToolStatus.ERROR
    assert state.time.end == clock()
    await service.stop()


async def test_current_session_errors_are_not_notified(notifier: RecordingNotifier, clock: FakeClock) -> None:
    service = _offline_service(notifier, clock)
    error = {"type": "session.error", "properties": {"sessionID": "ses_1", "error": {"name": "APIError"}}}

    service.set_current_session("ses_1")
    service._on_frame(json.dumps(error))
    assert notifier.notifications == []

    service.set_current_session("ses_2")
    service._on_frame(json.dumps(error))
    assert notifier.kinds() == ["error"]
    await service.stop()


async def test_visibility_is_remembered_offline(notifier: RecordingNotifier, clock: FakeClock) -> None:
    service = _offline_service(notifier, clock)

    service.report_visibility(False, "ses_3")

    assert service.visibility.visible is False
    assert service.visibility.focused_session_id == "ses_3"
    await service.stop()


def test_from_settings_uses_configured_urls(monkeypatch: Any) -> None:
    monkeypatch.setenv("CODECONSOLE_SERVER_URL", "http://relay.test:9000/")
    monkeypatch.setenv("CODECONSOLE_RECONNECT_DELAY_MS", "250")

    service = EventStreamService.from_settings(ConsoleSettings())

    assert service.connection._server_url == "http://relay.test:9000"
    assert service.connection._base_delay == 0.25
