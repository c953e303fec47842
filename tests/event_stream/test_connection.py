"""Tests for SSE framing and the connection manager.

The relay is replaced by ``httpx.MockTransport``.  Stream bodies are async
generators so a test decides when the feed ends.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable

import httpx

from codeconsole.event_stream.connection import ConnectionManager
from codeconsole.sse import SSEFrame, iter_sse

CONNECTED = b'event: connected\ndata: {"clientId": "client_1"}\n\n'

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


def _held_open(*chunks: bytes, gate: asyncio.Event) -> AsyncIterator[bytes]:
    async def _body() -> AsyncIterator[bytes]:
        for chunk in chunks:
            yield chunk
        await gate.wait()

    return _body()


# ---------------------------------------------------------------------------
# SSE framing
# ---------------------------------------------------------------------------


async def test_iter_sse_frames() -> None:
    body = (
        b": comment\n"
        b"event: connected\n"
        b'data: {"clientId": "c"}\n'
        b"\n"
        b"id: 7\n"
        b"data: line one\n"
        b"data: line two\n"
        b"\n"
        b"event: heartbeat\n"
        b"\n"
        b"data:no-space\n"
    )
    response = httpx.Response(200, content=body)

    frames = [frame async for frame in iter_sse(response)]

    assert frames == [
        SSEFrame(event="connected", data='{"clientId": "c"}'),
        SSEFrame(event="message", data="line one\nline two"),
        SSEFrame(event="message", data="no-space"),
    ]


# ---------------------------------------------------------------------------
# Directory interest
# ---------------------------------------------------------------------------


async def test_directory_interest_is_refcounted() -> None:
    manager = ConnectionManager("http://relay")
    first = manager.add_directory_interest("/repo")
    second = manager.add_directory_interest("/repo")

    first()
    first()  # idempotent
    assert manager.is_directory_active("/repo")

    second()
    assert not manager.is_directory_active("/repo")
    assert manager.interested_directories == set()
    await manager.stop()


async def test_connection_handler_called_with_current_state() -> None:
    manager = ConnectionManager("http://relay")
    states: list[bool] = []

    manager.subscribe(lambda data: None, states.append)

    assert states == [False]
    await manager.stop()


# ---------------------------------------------------------------------------
# Stream lifecycle
# ---------------------------------------------------------------------------


async def test_stream_delivers_frames_and_reports_loss() -> None:
    requests: list[httpx.Request] = []
    event = json.dumps({"type": "session.idle", "properties": {"sessionID": "ses_1"}})
    body = CONNECTED + f"data: {event}\n\n".encode() + b'event: heartbeat\ndata: {"timestamp": 1}\n\n'

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, content=body)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    manager = ConnectionManager("http://relay", http_client=client, reconnect_delay=10, max_reconnect_delay=10)
    received: list[str] = []
    states: list[bool] = []
    manager.subscribe(received.append, states.append)
    manager.add_directory_interest("/repo")

    manager.start()
    await _wait_for(lambda: states == [False, True, False])
    await manager.stop()
    await client.aclose()

    assert received == [event]
    assert manager.client_id is None
    [stream_request] = requests
    assert stream_request.url.path == "/api/sse/stream"
    assert stream_request.url.params["directories"] == "/repo"


async def test_control_calls_while_connected() -> None:
    gate = asyncio.Event()
    posts: list[tuple[str, dict]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/sse/stream":
            return httpx.Response(200, content=_held_open(CONNECTED, gate=gate))
        posts.append((request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={"success": True})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    manager = ConnectionManager("http://relay", http_client=client)

    assert await manager.ensure_connected(timeout=2)
    release = manager.add_directory_interest("/repo")
    await _wait_for(lambda: len(posts) == 1)
    release()
    await _wait_for(lambda: len(posts) == 2)
    manager.report_visibility(True, "ses_1")
    await _wait_for(lambda: len(posts) == 3)

    gate.set()
    await manager.stop()
    await client.aclose()

    assert posts == [
        ("/api/sse/subscribe", {"clientId": "client_1", "directories": ["/repo"]}),
        ("/api/sse/unsubscribe", {"clientId": "client_1", "directories": ["/repo"]}),
        ("/api/sse/visibility", {"clientId": "client_1", "visible": True, "activeSessionId": "ses_1"}),
    ]


async def test_failed_subscribe_requeues_and_reconnects() -> None:
    gate = asyncio.Event()
    streams: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/sse/stream":
            streams.append(request)
            return httpx.Response(200, content=_held_open(CONNECTED, gate=gate))
        return httpx.Response(500)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    manager = ConnectionManager("http://relay", http_client=client)

    assert await manager.ensure_connected(timeout=2)
    manager.add_directory_interest("/repo")
    await _wait_for(lambda: len(streams) == 2)

    gate.set()
    await manager.stop()
    await client.aclose()

    assert "directories" not in streams[0].url.params
    assert streams[1].url.params["directories"] == "/repo"


async def test_refused_stream_backs_off() -> None:
    attempts: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        return httpx.Response(503)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    manager = ConnectionManager("http://relay", http_client=client, reconnect_delay=0.001, max_reconnect_delay=0.004)
    states: list[bool] = []
    manager.subscribe(lambda data: None, states.append)

    manager.start()
    await _wait_for(lambda: len(attempts) >= 5)
    await manager.stop()
    await client.aclose()

    assert states == [False]
    assert manager._delay == 0.004


async def test_connected_frame_without_client_id_drops_stream() -> None:
    gate = asyncio.Event()
    attempts: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        return httpx.Response(200, content=_held_open(b"event: connected\ndata: {}\n\n", gate=gate))

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    manager = ConnectionManager("http://relay", http_client=client, reconnect_delay=0.001, max_reconnect_delay=0.004)
    states: list[bool] = []
    manager.subscribe(lambda data: None, states.append)
    manager.add_directory_interest("/repo")

    manager.start()
    await _wait_for(lambda: len(attempts) >= 4)
    gate.set()
    await manager.stop()
    await client.aclose()

    assert states == [False]
    assert manager.client_id is None
    assert manager._delay == 0.004


async def test_subscriber_errors_are_isolated() -> None:
    event = json.dumps({"type": "session.idle", "properties": {"sessionID": "ses_1"}})

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=CONNECTED + f"data: {event}\n\n".encode())

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    manager = ConnectionManager("http://relay", http_client=client, reconnect_delay=10)
    received: list[str] = []

    def _broken(data: str) -> None:
        raise ValueError("boom")

    manager.subscribe(_broken)
    manager.subscribe(received.append)

    manager.start()
    await _wait_for(lambda: received == [event])
    await manager.stop()
    await client.aclose()
