"""Derived store -- the client-side picture of sessions, messages, parts and todos.

The store is a set of id-keyed mappings:

- sessions by id
- messages by session (insertion order is display order)
- parts by message (insertion order is display order)
- todos, pending questions and pending permissions by session

Readers use the query methods and ``subscribe`` for change notifications.
Writes go through ``transaction()``, which only the reconciler opens: one
transaction per applied event, one ``StoreChange`` per transaction.
"""

from __future__ import annotations

import itertools
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, NamedTuple

from loguru import logger

from codeconsole.event_stream.models.enums import StoreSection
from codeconsole.event_stream.models.session import (
    ConnectionState,
    Message,
    MessagePart,
    MessageWithParts,
    PermissionRequest,
    QuestionRequest,
    Session,
    SessionStatus,
    Todo,
)


class StoreKey(NamedTuple):
    """Addresses one view of the store (``id`` is a directory for session lists)."""

    section: StoreSection
    id: str = ""


@dataclass(frozen=True)
class StoreChange:
    """What one applied event did to the store.

    ``changed`` keys hold new data; ``invalidated`` keys name views that this
    engine does not model and that readers should refetch from the REST API.
    """

    sequence: int
    changed: frozenset[StoreKey] = field(default_factory=frozenset)
    invalidated: frozenset[StoreKey] = field(default_factory=frozenset)

    def __bool__(self) -> bool:
        return bool(self.changed or self.invalidated)


StoreListener = Callable[[StoreChange], None]


class DerivedStore:
    """Id-keyed mappings plus change subscription.  Single writer, many readers."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._messages: dict[str, dict[str, Message]] = {}
        self._parts: dict[str, dict[str, MessagePart]] = {}
        self._todos: dict[str, tuple[Todo, ...]] = {}
        self._questions: dict[str, dict[str, QuestionRequest]] = {}
        self._permissions: dict[str, dict[str, PermissionRequest]] = {}
        self._status_seq: dict[str, int] = {}
        self._connection = ConnectionState()
        self._sequence = 0
        self._listeners: dict[int, StoreListener] = {}
        self._listener_ids = itertools.count(1)
        self._open: StoreTransaction | None = None

    # -- Query -----------------------------------------------------------------

    @property
    def sequence(self) -> int:
        """Number of events applied so far."""
        return self._sequence

    @property
    def connection(self) -> ConnectionState:
        return self._connection

    def session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def sessions(self) -> list[Session]:
        return list(self._sessions.values())

    def messages(self, session_id: str) -> list[Message]:
        return list(self._messages.get(session_id, {}).values())

    def message(self, session_id: str, message_id: str) -> Message | None:
        return self._messages.get(session_id, {}).get(message_id)

    def parts(self, message_id: str) -> list[MessagePart]:
        return list(self._parts.get(message_id, {}).values())

    def part(self, message_id: str, part_id: str) -> MessagePart | None:
        return self._parts.get(message_id, {}).get(part_id)

    def message_with_parts(self, session_id: str) -> list[MessageWithParts]:
        return [MessageWithParts(info=msg, parts=self.parts(msg.id)) for msg in self.messages(session_id)]

    def todos(self, session_id: str) -> list[Todo]:
        return list(self._todos.get(session_id, ()))

    def pending_questions(self, session_id: str | None = None) -> list[QuestionRequest]:
        return _flatten(self._questions, session_id)

    def pending_permissions(self, session_id: str | None = None) -> list[PermissionRequest]:
        return _flatten(self._permissions, session_id)

    def status_sequence(self, session_id: str) -> int:
        """Sequence of the last event that wrote this session's status or deleted the session (0 if never)."""
        return self._status_seq.get(session_id, 0)

    def snapshot(self) -> dict[str, Any]:
        """Plain-data dump of every mapping, for comparisons and debugging."""
        return {
            "sessions": {sid: s.model_dump(by_alias=True) for sid, s in self._sessions.items()},
            "messages": {
                sid: [m.model_dump(by_alias=True) for m in msgs.values()] for sid, msgs in self._messages.items()
            },
            "parts": {
                mid: [p.model_dump(by_alias=True) for p in parts.values()] for mid, parts in self._parts.items()
            },
            "todos": {sid: [t.model_dump(by_alias=True) for t in todos] for sid, todos in self._todos.items()},
            "questions": {sid: sorted(reqs) for sid, reqs in self._questions.items()},
            "permissions": {sid: sorted(reqs) for sid, reqs in self._permissions.items()},
            "connection": self._connection.model_dump(),
        }

    # -- Subscription ----------------------------------------------------------

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        """Register *listener* for every non-empty change.  Returns the unsubscribe handle."""
        listener_id = next(self._listener_ids)
        self._listeners[listener_id] = listener

        def _unsubscribe() -> None:
            self._listeners.pop(listener_id, None)

        return _unsubscribe

    # -- Mutation --------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[StoreTransaction]:
        """Open the write handle for one event.  Not re-entrant."""
        if self._open is not None:
            msg = "A store transaction is already open"
            raise RuntimeError(msg)
        tx = StoreTransaction(self, self._sequence + 1)
        self._open = tx
        try:
            yield tx
        finally:
            self._open = None
            self._sequence = tx.sequence
            change = tx.to_change()
            if change:
                self._notify(change)

    def _notify(self, change: StoreChange) -> None:
        for listener in list(self._listeners.values()):
            try:
                listener(change)
            except Exception:
                logger.exception("Store listener failed on change #{}", change.sequence)


class StoreTransaction:
    """Write handle over a ``DerivedStore`` for the duration of one event.

    Every write is keyed by a stable id.  Writing a value equal to the one
    already stored records no change, so re-applied events are invisible to
    subscribers.
    """

    def __init__(self, store: DerivedStore, sequence: int) -> None:
        self._store = store
        self.sequence = sequence
        self._changed: set[StoreKey] = set()
        self._invalidated: set[StoreKey] = set()

    def to_change(self) -> StoreChange:
        return StoreChange(
            sequence=self.sequence,
            changed=frozenset(self._changed),
            invalidated=frozenset(self._invalidated),
        )

    def invalidate(self, section: StoreSection, key_id: str = "") -> None:
        self._invalidated.add(StoreKey(section, key_id))

    def _touch(self, section: StoreSection, key_id: str = "") -> None:
        self._changed.add(StoreKey(section, key_id))

    # -- Sessions --------------------------------------------------------------

    def ensure_session(self, session_id: str) -> Session:
        """Return the session, creating it (status idle) on first reference."""
        session = self._store._sessions.get(session_id)
        if session is None:
            session = Session(id=session_id)
            self._store._sessions[session_id] = session
            self._touch(StoreSection.SESSION, session_id)
        return session

    def put_session(self, session: Session) -> None:
        if self._store._sessions.get(session.id) != session:
            self._store._sessions[session.id] = session
            self._touch(StoreSection.SESSION, session.id)

    def set_status(self, session_id: str, status: SessionStatus) -> None:
        """Write a session status and stamp it with this transaction's sequence."""
        session = self.ensure_session(session_id)
        self._store._status_seq[session_id] = self.sequence
        if session.status != status:
            self.put_session(session.model_copy(update={"status": status}))

    def remove_session(self, session_id: str) -> None:
        store = self._store
        if store._sessions.pop(session_id, None) is not None:
            self._touch(StoreSection.SESSION, session_id)
        for message_id in list(store._messages.get(session_id, {})):
            self.remove_message(session_id, message_id)
        store._messages.pop(session_id, None)
        # Tombstone: a snapshot requested before the deletion must not recreate it.
        store._status_seq[session_id] = self.sequence
        if store._todos.pop(session_id, None) is not None:
            self._touch(StoreSection.TODOS, session_id)
        if store._questions.pop(session_id, None) is not None:
            self._touch(StoreSection.QUESTIONS, session_id)
        if store._permissions.pop(session_id, None) is not None:
            self._touch(StoreSection.PERMISSIONS, session_id)

    # -- Messages --------------------------------------------------------------

    def put_message(self, message: Message) -> None:
        """Append a new message or replace one in place (position is kept)."""
        messages = self._store._messages.setdefault(message.session_id, {})
        if messages.get(message.id) != message:
            messages[message.id] = message
            self._touch(StoreSection.MESSAGES, message.session_id)

    def remove_message(self, session_id: str, message_id: str) -> None:
        messages = self._store._messages.get(session_id, {})
        if messages.pop(message_id, None) is not None:
            self._touch(StoreSection.MESSAGES, session_id)
        if self._store._parts.pop(message_id, None) is not None:
            self._touch(StoreSection.PARTS, message_id)

    # -- Parts -----------------------------------------------------------------

    def put_part(self, part: MessagePart) -> None:
        parts = self._store._parts.setdefault(part.message_id, {})
        if parts.get(part.id) != part:
            parts[part.id] = part
            self._touch(StoreSection.PARTS, part.message_id)

    def remove_part(self, message_id: str, part_id: str) -> None:
        parts = self._store._parts.get(message_id, {})
        if parts.pop(part_id, None) is not None:
            self._touch(StoreSection.PARTS, message_id)

    # -- Todos -----------------------------------------------------------------

    def set_todos(self, session_id: str, todos: list[Todo]) -> None:
        items = tuple(todos)
        if self._store._todos.get(session_id) != items:
            self._store._todos[session_id] = items
            self._touch(StoreSection.TODOS, session_id)

    # -- Pending requests ------------------------------------------------------

    def put_question(self, question: QuestionRequest) -> None:
        if _put_keyed(self._store._questions, question.session_id, question.id, question):
            self._touch(StoreSection.QUESTIONS, question.session_id)

    def remove_question(self, session_id: str, request_id: str) -> None:
        if _pop_keyed(self._store._questions, session_id, request_id):
            self._touch(StoreSection.QUESTIONS, session_id)

    def put_permission(self, permission: PermissionRequest) -> None:
        if _put_keyed(self._store._permissions, permission.session_id, permission.id, permission):
            self._touch(StoreSection.PERMISSIONS, permission.session_id)

    def remove_permission(self, session_id: str, request_id: str) -> None:
        if _pop_keyed(self._store._permissions, session_id, request_id):
            self._touch(StoreSection.PERMISSIONS, session_id)

    # -- Connection ------------------------------------------------------------

    def set_connection(self, state: ConnectionState) -> None:
        if self._store._connection != state:
            self._store._connection = state
            self._touch(StoreSection.CONNECTION)


# -- Helpers -------------------------------------------------------------------


def _flatten(mapping: dict[str, dict[str, Any]], session_id: str | None) -> list[Any]:
    if session_id is not None:
        return list(mapping.get(session_id, {}).values())
    return [item for items in mapping.values() for item in items.values()]


def _put_keyed(mapping: dict[str, dict[str, Any]], session_id: str, item_id: str, item: Any) -> bool:
    items = mapping.setdefault(session_id, {})
    if items.get(item_id) == item:
        return False
    items[item_id] = item
    return True


def _pop_keyed(mapping: dict[str, dict[str, Any]], session_id: str, item_id: str) -> bool:
    items = mapping.get(session_id)
    if not items or items.pop(item_id, None) is None:
        return False
    if not items:
        del mapping[session_id]
    return True
