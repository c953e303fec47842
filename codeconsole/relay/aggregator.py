"""Relay aggregator -- upstream feeds in, per-client queues out.

The relay keeps exactly one upstream event stream per directory that some
client needs (``GET {opencode_url}/event?directory=...``) and fans each
upstream frame out to the clients subscribed to that directory.  Each client
owns an ``asyncio.Queue`` drained by its SSE response; ``put_nowait`` means
a slow client can never stall an upstream reader; a client that falls a
full queue behind has its stream closed rather than miss frames.

The aggregator also tracks which sessions are active per directory (from
``session.status`` / ``session.idle``) and which session each client is
looking at, so server-side features can tell whether anyone is watching.

Ephemeral -- empty on process restart.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx
from loguru import logger

from codeconsole.event_stream.models.enums import EventType, SessionStatusType
from codeconsole.sse import iter_sse

if TYPE_CHECKING:
    from codeconsole.settings import ConsoleSettings

STREAM_END = object()
"""Queue sentinel: the client's stream should close."""

EventListener = Callable[[str, dict[str, Any]], None]
"""Receives ``(directory, payload)`` for every decodable upstream event."""

_ACTIVE_STATUSES = frozenset({SessionStatusType.BUSY, SessionStatusType.RETRY, SessionStatusType.COMPACTING})


class RelayShuttingDownError(RuntimeError):
    """Raised when a client tries to connect while the relay is shutting down."""


@dataclass
class RelayClient:
    id: str
    queue: asyncio.Queue[Any]
    directories: set[str] = field(default_factory=set)
    visible: bool = False
    active_session_id: str | None = None


@dataclass
class UpstreamConnection:
    directory: str
    delay: float
    connected: bool = False
    task: asyncio.Task[None] | None = None


class SSEAggregator:
    """Client registry plus one reconnecting upstream stream per required directory."""

    def __init__(
        self,
        upstream_url: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 30.0,
        queue_size: int = 1000,
    ) -> None:
        self._upstream_url = upstream_url.rstrip("/")
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(10.0, read=None))
        self._base_delay = reconnect_delay
        self._max_delay = max_reconnect_delay
        self._queue_size = queue_size

        self._clients: dict[str, RelayClient] = {}
        self._connections: dict[str, UpstreamConnection] = {}
        self._active_sessions: dict[str, set[str]] = {}
        self._listeners: dict[int, EventListener] = {}
        self._listener_ids = itertools.count(1)
        self._shutting_down = False

    @classmethod
    def from_settings(cls, settings: ConsoleSettings, http_client: httpx.AsyncClient | None = None) -> SSEAggregator:
        return cls(
            settings.opencode_url,
            http_client=http_client,
            reconnect_delay=settings.reconnect_delay,
            max_reconnect_delay=settings.max_reconnect_delay,
        )

    # -- Clients ---------------------------------------------------------------

    def add_client(self, directories: list[str]) -> RelayClient:
        """Register a new stream client.  Raises ``RelayShuttingDownError`` during shutdown."""
        if self._shutting_down:
            raise RelayShuttingDownError
        client_id = f"client_{int(time.time() * 1000)}_{secrets.token_hex(5)}"
        client = RelayClient(id=client_id, queue=asyncio.Queue(maxsize=self._queue_size), directories=set(directories))
        self._clients[client_id] = client
        logger.info("Client {} connected with directories: {}", client_id, ", ".join(directories) or "(none)")
        self._sync_connections()
        return client

    def remove_client(self, client_id: str) -> None:
        if self._clients.pop(client_id, None) is not None:
            logger.info("Client {} disconnected", client_id)
            self._sync_connections()

    def add_directories(self, client_id: str, directories: list[str]) -> bool:
        client = self._clients.get(client_id)
        if client is None:
            logger.warning("add_directories: client {} not found", client_id)
            return False
        client.directories.update(directories)
        logger.info("Client {} subscribed to: {}", client_id, ", ".join(directories))
        self._sync_connections()
        return True

    def remove_directories(self, client_id: str, directories: list[str]) -> bool:
        client = self._clients.get(client_id)
        if client is None:
            logger.warning("remove_directories: client {} not found", client_id)
            return False
        client.directories.difference_update(directories)
        logger.info("Client {} unsubscribed from: {}", client_id, ", ".join(directories))
        self._sync_connections()
        return True

    def set_client_visibility(self, client_id: str, visible: bool, active_session_id: str | None = None) -> bool:
        client = self._clients.get(client_id)
        if client is None:
            logger.warning("set_client_visibility: client {} not found", client_id)
            return False
        client.visible = visible
        client.active_session_id = active_session_id if visible else None
        return True

    def get_client(self, client_id: str) -> RelayClient | None:
        return self._clients.get(client_id)

    # -- Query -----------------------------------------------------------------

    @property
    def client_count(self) -> int:
        return len(self._clients)

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    def is_session_being_viewed(self, session_id: str) -> bool:
        return any(c.visible and c.active_session_id == session_id for c in self._clients.values())

    def connection_status(self) -> dict[str, int]:
        connected = sum(1 for conn in self._connections.values() if conn.connected)
        return {"connected": connected, "total": len(self._connections)}

    def active_directories(self) -> list[str]:
        return list(self._connections)

    def active_sessions(self) -> dict[str, list[str]]:
        return {directory: sorted(sessions) for directory, sessions in self._active_sessions.items()}

    # -- Listeners -------------------------------------------------------------

    def add_listener(self, listener: EventListener) -> Callable[[], None]:
        """Observe every decodable upstream event.  Returns the removal handle."""
        listener_id = next(self._listener_ids)
        self._listeners[listener_id] = listener

        def _remove() -> None:
            self._listeners.pop(listener_id, None)

        return _remove

    # -- Fan-out ---------------------------------------------------------------

    def broadcast_to_all(self, event: str, data: str) -> None:
        for client in list(self._clients.values()):
            self._deliver(client, (event, data))

    def _broadcast(self, directory: str, data: str) -> None:
        try:
            payload = json.loads(data)
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            self._track_activity(directory, payload)
            for listener in list(self._listeners.values()):
                try:
                    listener(directory, payload)
                except Exception:
                    logger.exception("Relay event listener failed")

        for client in list(self._clients.values()):
            if directory in client.directories:
                self._deliver(client, ("message", data))

    def _deliver(self, client: RelayClient, item: Any) -> None:
        try:
            client.queue.put_nowait(item)
        except asyncio.QueueFull:
            # No gaps: the client reconnects and resyncs rather than miss a frame.
            logger.warning("Client {} queue full, closing its stream", client.id)
            while not client.queue.empty():
                client.queue.get_nowait()
            client.queue.put_nowait(STREAM_END)
            self.remove_client(client.id)

    def _track_activity(self, directory: str, payload: dict[str, Any]) -> None:
        event_type = payload.get("type")
        properties = payload.get("properties")
        if not isinstance(properties, dict):
            return
        session_id = properties.get("sessionID")
        if not isinstance(session_id, str) or not session_id:
            return

        if event_type == EventType.SESSION_STATUS:
            status = properties.get("status")
            status_type = status.get("type") if isinstance(status, dict) else None
            if status_type in _ACTIVE_STATUSES:
                self._mark_active(directory, session_id)
            elif status_type == SessionStatusType.IDLE:
                self._mark_idle(directory, session_id)
        elif event_type == EventType.SESSION_IDLE:
            self._mark_idle(directory, session_id)

    def _mark_active(self, directory: str, session_id: str) -> None:
        sessions = self._active_sessions.setdefault(directory, set())
        if session_id not in sessions:
            sessions.add(session_id)
            logger.info("Session active: {} in {} ({} active)", session_id, directory, len(sessions))

    def _mark_idle(self, directory: str, session_id: str) -> None:
        sessions = self._active_sessions.get(directory)
        if not sessions or session_id not in sessions:
            return
        sessions.discard(session_id)
        logger.info("Session idle: {} in {} ({} active)", session_id, directory, len(sessions))
        if not sessions:
            del self._active_sessions[directory]

    # -- Upstream connections --------------------------------------------------

    def _required_directories(self) -> set[str]:
        return {d for client in self._clients.values() for d in client.directories}

    def _sync_connections(self) -> None:
        if self._shutting_down:
            return
        required = self._required_directories()
        for directory in list(self._connections):
            if directory not in required:
                self._disconnect(directory)
        for directory in required:
            if directory not in self._connections:
                self._connect(directory)

    def _connect(self, directory: str) -> None:
        conn = UpstreamConnection(directory=directory, delay=self._base_delay)
        conn.task = asyncio.create_task(self._run_upstream(conn), name=f"upstream:{directory}")
        self._connections[directory] = conn

    def _disconnect(self, directory: str) -> None:
        conn = self._connections.pop(directory, None)
        if conn is None:
            return
        if conn.task is not None:
            conn.task.cancel()
        self._active_sessions.pop(directory, None)
        logger.info("Upstream disconnected: {}", directory)

    async def _run_upstream(self, conn: UpstreamConnection) -> None:
        directory = conn.directory
        while True:
            logger.info("Upstream connecting: {}", directory)
            try:
                async with self._client.stream(
                    "GET",
                    f"{self._upstream_url}/event",
                    params={"directory": directory},
                    headers={"Accept": "text/event-stream"},
                ) as response:
                    if response.status_code != httpx.codes.OK:
                        logger.warning("Upstream {} rejected with HTTP {}", directory, response.status_code)
                    else:
                        conn.connected = True
                        conn.delay = self._base_delay
                        logger.info("Upstream connected: {}", directory)
                        async for frame in iter_sse(response):
                            self._broadcast(directory, frame.data)
            except (httpx.HTTPError, OSError) as exc:
                logger.warning("Upstream {} error: {}", directory, exc)
            finally:
                conn.connected = False

            await asyncio.sleep(conn.delay)
            conn.delay = min(conn.delay * 2, self._max_delay)

    # -- Lifecycle -------------------------------------------------------------

    async def shutdown(self) -> None:
        """Refuse new clients, close every client stream and every upstream."""
        self._shutting_down = True
        logger.info("Relay shutting down (clients={}, upstreams={})", len(self._clients), len(self._connections))

        for client in list(self._clients.values()):
            while True:
                try:
                    client.queue.put_nowait(STREAM_END)
                    break
                except asyncio.QueueFull:
                    client.queue.get_nowait()

        tasks = [conn.task for conn in self._connections.values() if conn.task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._connections.clear()
        self._active_sessions.clear()
        self._listeners.clear()
        if self._owns_client:
            await self._client.aclose()
