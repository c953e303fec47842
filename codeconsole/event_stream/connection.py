"""Connection manager -- one long-lived event feed per process.

The manager owns the streaming HTTP connection to the relay and fans raw
event payloads out to every subscriber.  Views register interest in
directories; interest is reference-counted so the relay only sees a
subscribe on the first interest and an unsubscribe on the last release.

Lifecycle::

    start() -> connect -> "connected" frame (client id) -> flush pending
            -> frames ... -> stream ends/errors -> backoff -> connect ...

Backoff starts at ``reconnect_delay`` and doubles per failed attempt up to
``max_reconnect_delay``; a stream that delivers its ``connected`` frame resets
it.  A ``connected`` frame without a client id drops the stream.
``reconnect()`` skips the wait.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
from collections.abc import Callable, Coroutine
from typing import TYPE_CHECKING, Any

import httpx
from loguru import logger

from codeconsole.sse import SSEFrame, iter_sse

if TYPE_CHECKING:
    from codeconsole.settings import ConsoleSettings

FrameHandler = Callable[[str], None]
"""Receives the raw ``data`` of every non-control frame."""

ConnectionHandler = Callable[[bool], None]
"""Receives ``True`` on open and ``False`` on loss."""


class StreamProtocolError(Exception):
    """The relay sent a stream the manager cannot use; it is dropped and retried."""


class ConnectionManager:
    """Shared feed connection with directory interest tracking."""

    def __init__(
        self,
        server_url: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 30.0,
        request_timeout: float = 10.0,
    ) -> None:
        self._server_url = server_url.rstrip("/")
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(request_timeout, read=None))
        self._base_delay = reconnect_delay
        self._max_delay = max_reconnect_delay
        self._delay = reconnect_delay
        self._request_timeout = request_timeout

        self._frame_handlers: dict[int, FrameHandler] = {}
        self._connection_handlers: dict[int, ConnectionHandler] = {}
        self._handler_ids = itertools.count(1)

        self._refcounts: dict[str, int] = {}
        self._pending: set[str] = set()
        self._streamed: frozenset[str] = frozenset()

        self.client_id: str | None = None
        self.connected = False
        self._connected_event = asyncio.Event()

        self._task: asyncio.Task[None] | None = None
        self._consumer: asyncio.Task[None] | None = None
        self._wake = asyncio.Event()
        self._stopped = False
        self._background: set[asyncio.Task[Any]] = set()

    @classmethod
    def from_settings(
        cls, settings: ConsoleSettings, http_client: httpx.AsyncClient | None = None
    ) -> ConnectionManager:
        return cls(
            settings.server_url,
            http_client=http_client,
            reconnect_delay=settings.reconnect_delay,
            max_reconnect_delay=settings.max_reconnect_delay,
            request_timeout=settings.request_timeout,
        )

    # -- Subscribers -----------------------------------------------------------

    def subscribe(
        self,
        on_frame: FrameHandler,
        on_connection_change: ConnectionHandler | None = None,
    ) -> Callable[[], None]:
        """Register handlers.  *on_connection_change* is called immediately with the current state."""
        handler_id = next(self._handler_ids)
        self._frame_handlers[handler_id] = on_frame
        if on_connection_change is not None:
            self._connection_handlers[handler_id] = on_connection_change
            on_connection_change(self.connected)

        def _unsubscribe() -> None:
            self._frame_handlers.pop(handler_id, None)
            self._connection_handlers.pop(handler_id, None)

        return _unsubscribe

    # -- Directory interest ----------------------------------------------------

    @property
    def interested_directories(self) -> set[str]:
        return set(self._refcounts)

    def is_directory_active(self, directory: str) -> bool:
        return self._refcounts.get(directory, 0) > 0

    def add_directory_interest(self, directory: str) -> Callable[[], None]:
        """Register interest in *directory*.  Returns an idempotent release handle."""
        count = self._refcounts.get(directory, 0)
        self._refcounts[directory] = count + 1
        if count == 0:
            self._first_interest(directory)

        released = False

        def _release() -> None:
            nonlocal released
            if released:
                return
            released = True
            self._drop_interest(directory)

        return _release

    def _first_interest(self, directory: str) -> None:
        if self.connected and self.client_id:
            self._spawn(self._post_subscribe([directory]))
            return
        self._pending.add(directory)
        if not self.connected:
            # Skip any backoff wait so the directory is in the next stream URL.
            self._wake.set()

    def _drop_interest(self, directory: str) -> None:
        count = self._refcounts.get(directory, 0)
        if count > 1:
            self._refcounts[directory] = count - 1
            return
        self._refcounts.pop(directory, None)
        self._pending.discard(directory)
        if self.connected and self.client_id:
            self._spawn(self._post_unsubscribe([directory]))

    # -- Relay control calls ---------------------------------------------------

    async def _post_subscribe(self, directories: list[str]) -> None:
        client_id = self.client_id
        try:
            response = await self._client.post(
                f"{self._server_url}/api/sse/subscribe",
                json={"clientId": client_id, "directories": directories},
                timeout=self._request_timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Subscribe for {} failed, reconnecting: {}", directories, exc)
            self._pending.update(d for d in directories if d in self._refcounts)
            self.reconnect()
            return
        logger.debug("Subscribed client {} to {}", client_id, directories)

    async def _post_unsubscribe(self, directories: list[str]) -> None:
        try:
            response = await self._client.post(
                f"{self._server_url}/api/sse/unsubscribe",
                json={"clientId": self.client_id, "directories": directories},
                timeout=self._request_timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Unsubscribe for {} failed: {}", directories, exc)

    def report_visibility(self, visible: bool, focused_session_id: str | None = None) -> None:
        """Tell the relay whether the user is looking.  Fire-and-forget; skipped while offline."""
        if not (self.connected and self.client_id):
            return
        self._spawn(self._post_visibility(visible, focused_session_id))

    async def _post_visibility(self, visible: bool, focused_session_id: str | None) -> None:
        try:
            response = await self._client.post(
                f"{self._server_url}/api/sse/visibility",
                json={"clientId": self.client_id, "visible": visible, "activeSessionId": focused_session_id},
                timeout=self._request_timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.debug("Visibility report failed: {}", exc)

    # -- Lifecycle -------------------------------------------------------------

    def start(self) -> None:
        if self._task is not None:
            return
        self._stopped = False
        self._task = asyncio.create_task(self._run(), name="event-stream")

    async def stop(self) -> None:
        self._stopped = True
        self._wake.set()
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        if self._owns_client:
            await self._client.aclose()

    def reconnect(self) -> None:
        """Drop the current stream (if any) and connect again without waiting."""
        self._delay = self._base_delay
        if self._consumer is not None and not self._consumer.done():
            self._consumer.cancel()
        self._wake.set()

    async def ensure_connected(self, timeout: float = 5.0) -> bool:
        """Start if needed and wait until the stream is open.  Returns the final state."""
        self.start()
        if self.connected:
            return True
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._connected_event.wait(), timeout=timeout)
        return self.connected

    # -- Stream loop -----------------------------------------------------------

    async def _run(self) -> None:
        while not self._stopped:
            self._wake.clear()
            self._consumer = asyncio.create_task(self._consume(), name="event-stream-consumer")
            try:
                await self._consumer
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if current is not None and current.cancelling():
                    raise
            finally:
                self._consumer = None

            if self._stopped:
                break
            if self._wake.is_set():
                continue

            logger.info("Event stream reconnecting in {:.1f}s", self._delay)
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._delay)
            except TimeoutError:
                self._delay = min(self._delay * 2, self._max_delay)

    async def _consume(self) -> None:
        directories = sorted(self._refcounts)
        params = {"directories": ",".join(directories)} if directories else None
        try:
            async with self._client.stream(
                "GET",
                f"{self._server_url}/api/sse/stream",
                params=params,
                headers={"Accept": "text/event-stream"},
            ) as response:
                if response.status_code != httpx.codes.OK:
                    logger.warning("Event stream rejected with HTTP {}", response.status_code)
                    return
                self._streamed = frozenset(directories)
                async for frame in iter_sse(response):
                    self._handle_frame(frame)
                logger.info("Event stream closed by server")
        except (httpx.HTTPError, OSError, StreamProtocolError) as exc:
            logger.warning("Event stream error: {}", exc)
        finally:
            self.client_id = None
            self._set_connected(False)

    def _handle_frame(self, frame: SSEFrame) -> None:
        if frame.event == "connected":
            self._on_connected_frame(frame.data)
            return
        if frame.event == "heartbeat":
            return

        for handler in list(self._frame_handlers.values()):
            try:
                handler(frame.data)
            except Exception:
                logger.exception("Event stream subscriber failed")

    def _on_connected_frame(self, data: str) -> None:
        try:
            payload = json.loads(data)
        except ValueError:
            payload = None
        client_id = payload.get("clientId") if isinstance(payload, dict) else None
        if not isinstance(client_id, str) or not client_id:
            # Without a client id no subscribe call can be made on this stream.
            msg = f"connected frame without a client id: {data!r}"
            raise StreamProtocolError(msg)
        self.client_id = client_id
        self._delay = self._base_delay
        logger.info("Event stream connected (client {})", self.client_id)

        # Directories in the stream URL were subscribed by the relay already.
        pending = sorted(self._pending - self._streamed)
        self._pending.clear()
        if pending:
            self._spawn(self._post_subscribe(pending))
        self._set_connected(True)

    def _set_connected(self, connected: bool) -> None:
        if self.connected == connected:
            return
        self.connected = connected
        if connected:
            self._connected_event.set()
        else:
            self._connected_event.clear()
        for handler in list(self._connection_handlers.values()):
            try:
                handler(connected)
            except Exception:
                logger.exception("Connection state handler failed")

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
