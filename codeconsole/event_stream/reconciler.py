"""Reconciler -- the transition function from events to store state.

``Reconciler.apply(store, event)`` is evaluated once per event, in arrival
order, on the event loop.  It opens one store transaction per event and is
the only code that writes to the store.  The reconciler itself keeps no
state; the clock and the notifier are injected.

Rules worth knowing before changing anything here:

- Upserts are keyed by stable ids, never positions, so re-applying an event
  is invisible.
- A part event for a message the store does not know is dropped.  Parts are
  not buffered for later replay.
- Tool parts only move forward (pending -> running -> completed|error); once
  final they are frozen.
- ``session.idle`` finalizes everything still in flight in the session,
  because the backend may go idle without terminal updates for every part.
- A status snapshot never overwrites a status written by a live event
  processed after the snapshot was requested.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import TYPE_CHECKING, assert_never

from loguru import logger

from codeconsole.event_stream.models.enums import MessageRole, StoreSection, ToolStatus
from codeconsole.event_stream.models.events import (
    ConnectionStateChanged,
    InstallationUpdateAvailable,
    InstallationUpdated,
    MessageRemoved,
    MessageUpdated,
    OptimisticPromptDiscarded,
    OptimisticPromptSubmitted,
    PartRemoved,
    PartUpdated,
    PermissionAsked,
    PermissionReplied,
    QuestionAsked,
    QuestionRejected,
    QuestionReplied,
    SessionCompacted,
    SessionDeleted,
    SessionError,
    SessionErrorProperties,
    SessionIdle,
    SessionStatusChanged,
    SessionUpdated,
    StatusSnapshot,
    TodoUpdated,
    ToolCallRejected,
)
from codeconsole.event_stream.models.session import (
    BUSY,
    IDLE,
    ConnectionState,
    Message,
    MessagePart,
    MessageTime,
    ToolState,
    ToolTime,
)
from codeconsole.event_stream.notifications import LoggingNotifier, Notifier, parse_session_error

if TYPE_CHECKING:
    from codeconsole.event_stream.models.events import StoreEvent
    from codeconsole.event_stream.store import DerivedStore, StoreTransaction

RUNNING_TOOL_OUTPUT = "[Session ended — output not captured]"
PENDING_TOOL_OUTPUT = "[Tool was pending when session ended]"

_TOOL_RANK = {
    ToolStatus.PENDING: 0,
    ToolStatus.RUNNING: 1,
    ToolStatus.COMPLETED: 2,
    ToolStatus.ERROR: 2,
}


def _now_ms() -> float:
    return time.time() * 1000


class Reconciler:
    """Applies domain and local events to a ``DerivedStore``."""

    def __init__(
        self,
        notifier: Notifier | None = None,
        *,
        clock: Callable[[], float] = _now_ms,
    ) -> None:
        self._notifier: Notifier = notifier or LoggingNotifier()
        self._clock = clock

    def apply(self, store: DerivedStore, event: StoreEvent, *, current_session_id: str | None = None) -> None:
        """Apply *event* to *store* as one transaction.

        *current_session_id* is the session the user has open; its errors are
        shown by that session's own view and are not re-reported here.
        """
        with store.transaction() as tx:
            self._dispatch(store, tx, event, current_session_id)

    # -- Dispatch --------------------------------------------------------------

    def _dispatch(  # noqa: C901
        self,
        store: DerivedStore,
        tx: StoreTransaction,
        event: StoreEvent,
        current_session_id: str | None,
    ) -> None:
        match event:
            case SessionUpdated():
                info = event.properties.info
                session = tx.ensure_session(info.id)
                tx.put_session(session.model_copy(update={"info": info}))
                tx.invalidate(StoreSection.SESSION_LIST, info.directory or "")
                tx.invalidate(StoreSection.SESSION, info.id)
            case SessionDeleted():
                props = event.properties
                directory = props.info.directory if props.info is not None else None
                tx.remove_session(props.target_id)
                tx.invalidate(StoreSection.SESSION_LIST, directory or "")
                tx.invalidate(StoreSection.SESSION, props.target_id)
            case SessionStatusChanged():
                tx.set_status(event.properties.session_id, event.properties.status)
            case SessionIdle():
                self._finalize_session(store, tx, event.properties.session_id)
            case SessionCompacted():
                session_id = event.properties.session_id
                tx.set_status(session_id, IDLE)
                tx.invalidate(StoreSection.MESSAGES, session_id)
                self._notifier.dismiss(f"compact-{session_id}")
                self._notifier.success("Session compacted", key=f"compact-{session_id}")
            case SessionError():
                self._report_error(event.properties, current_session_id)
            case MessageUpdated():
                self._upsert_message(store, tx, event.properties.info)
            case MessageRemoved():
                tx.remove_message(event.properties.session_id, event.properties.message_id)
            case PartUpdated():
                self._upsert_part(store, tx, event.properties.part)
            case PartRemoved():
                tx.remove_part(event.properties.message_id, event.properties.part_id)
            case TodoUpdated():
                tx.ensure_session(event.properties.session_id)
                tx.set_todos(event.properties.session_id, event.properties.todos)
            case QuestionAsked():
                tx.put_question(event.properties)
            case QuestionReplied() | QuestionRejected():
                tx.remove_question(event.properties.session_id, event.properties.request_id)
                tx.invalidate(StoreSection.MESSAGES, event.properties.session_id)
            case PermissionAsked():
                tx.put_permission(event.properties)
            case PermissionReplied():
                tx.remove_permission(event.properties.session_id, event.properties.target_id)
            case InstallationUpdated():
                self._notifier.success(
                    f"Agent updated to v{event.properties.version}",
                    "The server has been successfully upgraded.",
                )
            case InstallationUpdateAvailable():
                self._notifier.info(
                    f"Agent v{event.properties.version} is available",
                    "Reload the configuration to update.",
                )
            case OptimisticPromptSubmitted():
                self._add_placeholder(tx, event)
            case OptimisticPromptDiscarded():
                placeholder = store.message(event.session_id, event.correlation_id)
                if placeholder is not None and placeholder.optimistic:
                    tx.remove_message(event.session_id, placeholder.id)
            case ToolCallRejected():
                self._reject_tool_call(store, tx, event)
            case ConnectionStateChanged():
                tx.set_connection(ConnectionState(connected=event.connected, error=event.error))
            case StatusSnapshot():
                self._merge_snapshot(store, tx, event)
            case _:
                assert_never(event)

    # -- Messages --------------------------------------------------------------

    def _upsert_message(self, store: DerivedStore, tx: StoreTransaction, info: Message) -> None:
        session_id = info.session_id
        tx.ensure_session(session_id)
        existing = store.message(session_id, info.id)

        if existing is None:
            if info.role is MessageRole.USER:
                _drop_placeholders(store, tx, session_id, info.correlation_id)
            merged = info
        else:
            merged = info
            if existing.is_completed and not info.is_completed:
                # A late, older copy must not reopen a finished message.
                merged = info.model_copy(update={"time": info.time.model_copy(update={"completed": existing.time.completed})})
            if merged == existing:
                return

        tx.put_message(merged)
        if merged.role is MessageRole.ASSISTANT:
            tx.set_status(session_id, IDLE if merged.is_completed else BUSY)

    def _add_placeholder(self, tx: StoreTransaction, event: OptimisticPromptSubmitted) -> None:
        tx.ensure_session(event.session_id)
        tx.put_message(
            Message(
                id=event.correlation_id,
                session_id=event.session_id,
                role=MessageRole.USER,
                time=MessageTime(created=event.created),
                correlation_id=event.correlation_id,
                optimistic=True,
            )
        )
        if event.text:
            tx.put_part(
                MessagePart(
                    id=f"{event.correlation_id}-text",
                    message_id=event.correlation_id,
                    session_id=event.session_id,
                    type="text",
                    text=event.text,
                )
            )

    # -- Parts -----------------------------------------------------------------

    def _upsert_part(self, store: DerivedStore, tx: StoreTransaction, part: MessagePart) -> None:
        if store.message(part.session_id, part.message_id) is None:
            logger.debug("Dropping part {} for unknown message {}", part.id, part.message_id)
            return

        existing = store.part(part.message_id, part.id)
        if existing is not None and existing.is_tool and part.is_tool:
            if existing.is_finalized:
                logger.debug("Ignoring update for finalized tool part {}", part.id)
                return
            if _TOOL_RANK[part.state.status] < _TOOL_RANK[existing.state.status]:  # type: ignore[union-attr]
                logger.debug("Ignoring backwards tool transition for part {}", part.id)
                return

        tx.put_part(part)

    def _reject_tool_call(self, store: DerivedStore, tx: StoreTransaction, event: ToolCallRejected) -> None:
        for part in store.parts(event.message_id):
            if not part.is_tool or part.call_id != event.call_id:
                continue
            state = part.state
            if state.status is not ToolStatus.RUNNING:  # type: ignore[union-attr]
                continue
            start = state.time.start if state.time is not None else event.at  # type: ignore[union-attr]
            rejected = ToolState(
                status=ToolStatus.ERROR,
                input=state.input,  # type: ignore[union-attr]
                error=event.error,
                time=ToolTime(start=start, end=event.at),
            )
            tx.put_part(part.model_copy(update={"state": rejected}))
            return

    # -- Session lifecycle -----------------------------------------------------

    def _finalize_session(self, store: DerivedStore, tx: StoreTransaction, session_id: str) -> None:
        tx.set_status(session_id, IDLE)
        now = self._clock()

        for message in store.messages(session_id):
            for part in store.parts(message.id):
                finalized = _finalize_tool_part(part, now)
                if finalized is not part:
                    tx.put_part(finalized)
            if not message.is_completed:
                completed_time = message.time.model_copy(update={"completed": now})
                tx.put_message(message.model_copy(update={"time": completed_time}))

    def _merge_snapshot(self, store: DerivedStore, tx: StoreTransaction, event: StatusSnapshot) -> None:
        for session_id, status in event.statuses.items():
            if store.status_sequence(session_id) > event.issued_at:
                if store.session(session_id) is None:
                    logger.debug("Resync: session {} was deleted after the request", session_id)
                else:
                    logger.debug("Resync: keeping live status for session {}", session_id)
                continue
            tx.set_status(session_id, status)

    # -- Side channel ----------------------------------------------------------

    def _report_error(self, props: SessionErrorProperties, current_session_id: str | None) -> None:
        if props.session_id is not None and props.session_id == current_session_id:
            return
        parsed = parse_session_error(props.error)
        if parsed is None:
            logger.debug("Session {} error suppressed (aborted)", props.session_id)
            return
        key = f"session-error-{props.session_id}" if props.session_id else None
        self._notifier.error(parsed.title, parsed.message, key=key)


# -- Helpers -------------------------------------------------------------------


def _drop_placeholders(
    store: DerivedStore,
    tx: StoreTransaction,
    session_id: str,
    correlation_id: str | None,
) -> None:
    """Remove the optimistic placeholder(s) a confirmed user message replaces.

    When the backend echoes the correlation id only that placeholder goes;
    otherwise every placeholder of the session does.
    """
    for message in store.messages(session_id):
        if not message.optimistic:
            continue
        if correlation_id is None or message.correlation_id == correlation_id:
            tx.remove_message(session_id, message.id)


def _finalize_tool_part(part: MessagePart, now: float) -> MessagePart:
    """Force an in-flight tool part to ``completed``.  Returns *part* itself if untouched."""
    state = part.state
    if not part.is_tool or state.status not in (ToolStatus.RUNNING, ToolStatus.PENDING):  # type: ignore[union-attr]
        return part

    running = state.status is ToolStatus.RUNNING  # type: ignore[union-attr]
    start = state.time.start if state.time is not None else now  # type: ignore[union-attr]
    finalized = state.model_copy(  # type: ignore[union-attr]
        update={
            "status": ToolStatus.COMPLETED,
            "output": RUNNING_TOOL_OUTPUT if running else PENDING_TOOL_OUTPUT,
            "title": (state.title or "") if running else "",  # type: ignore[union-attr]
            "metadata": state.metadata or {},  # type: ignore[union-attr]
            "time": ToolTime(start=start, end=now),
        }
    )
    return part.model_copy(update={"state": finalized})
