"""Unit tests for the derived store and its transactions."""

from __future__ import annotations

import pytest

from codeconsole.event_stream.models.enums import MessageRole, StoreSection
from codeconsole.event_stream.models.session import (
    BUSY,
    Message,
    MessagePart,
    MessageTime,
    PermissionRequest,
    QuestionRequest,
    Todo,
)
from codeconsole.event_stream.store import DerivedStore, StoreChange, StoreKey


def _message(message_id: str, session_id: str = "ses_1") -> Message:
    return Message(id=message_id, session_id=session_id, role=MessageRole.USER, time=MessageTime(created=1.0))


def _part(part_id: str, message_id: str, session_id: str = "ses_1") -> MessagePart:
    return MessagePart(id=part_id, message_id=message_id, session_id=session_id, type="text", text=part_id)


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


def test_one_change_per_transaction() -> None:
    store = DerivedStore()
    changes: list[StoreChange] = []
    store.subscribe(changes.append)

    with store.transaction() as tx:
        tx.put_message(_message("msg_1"))
        tx.put_part(_part("prt_1", "msg_1"))
        tx.invalidate(StoreSection.SESSION_LIST, "/repo")

    [change] = changes
    assert change.sequence == 1
    assert change.changed == {
        StoreKey(StoreSection.MESSAGES, "ses_1"),
        StoreKey(StoreSection.PARTS, "msg_1"),
    }
    assert change.invalidated == {StoreKey(StoreSection.SESSION_LIST, "/repo")}


def test_empty_transaction_bumps_sequence_without_notifying() -> None:
    store = DerivedStore()
    changes: list[StoreChange] = []
    store.subscribe(changes.append)

    with store.transaction():
        pass

    assert store.sequence == 1
    assert changes == []


def test_equal_write_is_not_a_change() -> None:
    store = DerivedStore()
    with store.transaction() as tx:
        tx.put_message(_message("msg_1"))

    changes: list[StoreChange] = []
    store.subscribe(changes.append)
    with store.transaction() as tx:
        tx.put_message(_message("msg_1"))

    assert changes == []


def test_transactions_do_not_nest() -> None:
    store = DerivedStore()
    with store.transaction(), pytest.raises(RuntimeError), store.transaction():
        pass


def test_failing_listener_does_not_block_others() -> None:
    store = DerivedStore()
    seen: list[int] = []

    def _broken(change: StoreChange) -> None:
        raise ValueError("boom")

    store.subscribe(_broken)
    store.subscribe(lambda change: seen.append(change.sequence))

    with store.transaction() as tx:
        tx.set_status("ses_1", BUSY)

    assert seen == [1]


def test_unsubscribe() -> None:
    store = DerivedStore()
    changes: list[StoreChange] = []
    unsubscribe = store.subscribe(changes.append)
    unsubscribe()

    with store.transaction() as tx:
        tx.set_status("ses_1", BUSY)

    assert changes == []


# ---------------------------------------------------------------------------
# Mappings
# ---------------------------------------------------------------------------


def test_status_sequence_is_recorded_even_when_unchanged() -> None:
    store = DerivedStore()
    with store.transaction() as tx:
        tx.set_status("ses_1", BUSY)
    with store.transaction() as tx:
        tx.set_status("ses_1", BUSY)

    assert store.status_sequence("ses_1") == 2
    assert store.status_sequence("ses_unknown") == 0


def test_message_with_parts_view() -> None:
    store = DerivedStore()
    with store.transaction() as tx:
        tx.put_message(_message("msg_1"))
        tx.put_part(_part("prt_1", "msg_1"))
        tx.put_part(_part("prt_2", "msg_1"))

    [entry] = store.message_with_parts("ses_1")
    assert entry.info.id == "msg_1"
    assert [p.id for p in entry.parts] == ["prt_1", "prt_2"]


def test_remove_session_cascades() -> None:
    store = DerivedStore()
    with store.transaction() as tx:
        tx.set_status("ses_1", BUSY)
        tx.put_message(_message("msg_1"))
        tx.put_part(_part("prt_1", "msg_1"))
        tx.set_todos("ses_1", [Todo(content="x", status="pending")])
        tx.put_question(QuestionRequest(id="que_1", session_id="ses_1"))
        tx.put_permission(PermissionRequest(id="per_1", session_id="ses_1", permission="bash"))
        tx.put_message(_message("msg_2", session_id="ses_2"))

    with store.transaction() as tx:
        tx.remove_session("ses_1")

    assert store.session("ses_1") is None
    assert store.messages("ses_1") == []
    assert store.parts("msg_1") == []
    assert store.todos("ses_1") == []
    assert store.pending_questions() == []
    assert store.pending_permissions() == []
    assert store.status_sequence("ses_1") == 2
    assert [m.id for m in store.messages("ses_2")] == ["msg_2"]


def test_pending_requests_across_sessions() -> None:
    store = DerivedStore()
    with store.transaction() as tx:
        tx.put_question(QuestionRequest(id="que_1", session_id="ses_1"))
        tx.put_question(QuestionRequest(id="que_2", session_id="ses_2"))
        tx.remove_question("ses_1", "que_missing")

    assert {q.id for q in store.pending_questions()} == {"que_1", "que_2"}
    assert [q.id for q in store.pending_questions("ses_2")] == ["que_2"]
