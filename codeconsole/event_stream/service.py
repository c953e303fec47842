"""Event-stream service -- wires the engine together.

::

    ConnectionManager --raw--> EventDispatcher --DomainEvent--> Reconciler --> DerivedStore
           |                                                        ^
           +--open--> ResyncTrigger --StatusSnapshot----------------+
           +--open--> VisibilityReporter.resend()

The service is the single entry point a front end talks to: it owns the
store, forwards directory interest and visibility to the connection, and
turns local user actions (optimistic prompt, rejected tool call) into local
events for the reconciler.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from typing import TYPE_CHECKING

from loguru import logger

from codeconsole.event_stream.backend import AgentBackendClient
from codeconsole.event_stream.connection import ConnectionManager
from codeconsole.event_stream.dispatcher import EventDispatcher
from codeconsole.event_stream.models.events import (
    ConnectionStateChanged,
    OptimisticPromptDiscarded,
    OptimisticPromptSubmitted,
    ToolCallRejected,
)
from codeconsole.event_stream.notifications import LoggingNotifier
from codeconsole.event_stream.reconciler import Reconciler
from codeconsole.event_stream.resync import ResyncTrigger
from codeconsole.event_stream.store import DerivedStore
from codeconsole.event_stream.visibility import VisibilityReporter

if TYPE_CHECKING:
    from codeconsole.event_stream.models.events import StoreEvent
    from codeconsole.event_stream.notifications import Notifier
    from codeconsole.settings import ConsoleSettings

CONNECTION_LOST = "Connection lost. Reconnecting..."


class EventStreamService:
    def __init__(
        self,
        connection: ConnectionManager,
        backend: AgentBackendClient,
        *,
        store: DerivedStore | None = None,
        reconciler: Reconciler | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.connection = connection
        self.backend = backend
        self.store = store or DerivedStore()
        self._clock = clock or (lambda: time.time() * 1000)
        self.reconciler = reconciler or Reconciler(notifier or LoggingNotifier(), clock=self._clock)
        self.dispatcher = EventDispatcher()
        self.visibility = VisibilityReporter(connection)
        self.resync = ResyncTrigger(
            backend,
            self.apply,
            lambda: self.store.sequence,
            lambda: self.connection.interested_directories,
        )
        self.current_session_id: str | None = None
        self._was_connected = False
        self._unsubscribe: Callable[[], None] | None = None

    @classmethod
    def from_settings(cls, settings: ConsoleSettings, *, notifier: Notifier | None = None) -> EventStreamService:
        return cls(
            ConnectionManager.from_settings(settings),
            AgentBackendClient(settings.opencode_api_url, timeout=settings.request_timeout),
            notifier=notifier,
        )

    # -- Lifecycle -------------------------------------------------------------

    def start(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.connection.subscribe(self._on_frame, self._on_connection_change)
        self.connection.start()

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self.resync.stop()
        await self.connection.stop()
        await self.backend.aclose()

    # -- Event flow ------------------------------------------------------------

    def apply(self, event: StoreEvent) -> None:
        """Run *event* through the reconciler against this service's store."""
        self.reconciler.apply(self.store, event, current_session_id=self.current_session_id)

    def _on_frame(self, data: str) -> None:
        event = self.dispatcher.decode(data)
        if event is not None:
            self.apply(event)

    def _on_connection_change(self, connected: bool) -> None:
        if connected:
            self._was_connected = True
            self.apply(ConnectionStateChanged(connected=True))
            self.resync.trigger()
            self.visibility.resend()
            return
        error = CONNECTION_LOST if self._was_connected else None
        self.apply(ConnectionStateChanged(connected=False, error=error))

    # -- Front-end surface -----------------------------------------------------

    def add_directory_interest(self, directory: str) -> Callable[[], None]:
        return self.connection.add_directory_interest(directory)

    def set_current_session(self, session_id: str | None) -> None:
        self.current_session_id = session_id

    def report_visibility(self, visible: bool, focused_session_id: str | None = None) -> None:
        self.visibility.report(visible, focused_session_id)

    def submit_optimistic_prompt(self, session_id: str, text: str = "") -> str:
        """Show a user prompt immediately.  Returns the correlation id to send with the real request."""
        correlation_id = f"optimistic_user_{uuid.uuid4().hex}"
        self.apply(
            OptimisticPromptSubmitted(
                session_id=session_id,
                correlation_id=correlation_id,
                created=self._clock(),
                text=text,
            )
        )
        return correlation_id

    def discard_optimistic_prompt(self, session_id: str, correlation_id: str) -> None:
        """Drop a placeholder whose submission failed."""
        logger.debug("Discarding optimistic prompt {} in session {}", correlation_id, session_id)
        self.apply(OptimisticPromptDiscarded(session_id=session_id, correlation_id=correlation_id))

    def reject_tool_call(self, session_id: str, message_id: str, call_id: str, error: str) -> None:
        """Mark the running tool call as failed right away after the user rejects its request."""
        self.apply(
            ToolCallRejected(
                session_id=session_id,
                message_id=message_id,
                call_id=call_id,
                error=error,
                at=self._clock(),
            )
        )
