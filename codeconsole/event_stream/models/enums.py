"""Shared enumerations used across the event-stream engine."""

from __future__ import annotations

from enum import StrEnum

# -- Session -----------------------------------------------------------------


class SessionStatusType(StrEnum):
    """Tag of the session status variant."""

    IDLE = "idle"
    BUSY = "busy"
    RETRY = "retry"
    COMPACTING = "compacting"


# -- Message -----------------------------------------------------------------


class MessageRole(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"


class ToolStatus(StrEnum):
    """Lifecycle of a ``tool`` message part.  Transitions are monotonic."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_final(self) -> bool:
        return self in (ToolStatus.COMPLETED, ToolStatus.ERROR)


# -- Store -------------------------------------------------------------------


class StoreSection(StrEnum):
    """Kinds of view a store change or invalidation can refer to."""

    SESSION = "session"
    SESSION_LIST = "sessions"
    MESSAGES = "messages"
    PARTS = "parts"
    TODOS = "todos"
    QUESTIONS = "questions"
    PERMISSIONS = "permissions"
    CONNECTION = "connection"


# -- Events ------------------------------------------------------------------


class EventType(StrEnum):
    """Wire event types consumed from the agent backend feed."""

    # Session
    SESSION_UPDATED = "session.updated"
    SESSION_DELETED = "session.deleted"
    SESSION_STATUS = "session.status"
    SESSION_IDLE = "session.idle"
    SESSION_COMPACTED = "session.compacted"
    SESSION_ERROR = "session.error"

    # Message
    MESSAGE_UPDATED = "message.updated"
    MESSAGE_REMOVED = "message.removed"
    MESSAGE_PART_UPDATED = "message.part.updated"
    MESSAGE_PART_REMOVED = "message.part.removed"

    # Legacy v2 aliases, handled exactly like the names above
    MESSAGE_V2_UPDATED = "messagev2.updated"
    MESSAGE_V2_REMOVED = "messagev2.removed"
    MESSAGE_V2_PART_UPDATED = "messagev2.part.updated"
    MESSAGE_V2_PART_REMOVED = "messagev2.part.removed"

    # Todo
    TODO_UPDATED = "todo.updated"

    # Interaction
    QUESTION_ASKED = "question.asked"
    QUESTION_REPLIED = "question.replied"
    QUESTION_REJECTED = "question.rejected"
    PERMISSION_ASKED = "permission.asked"
    PERMISSION_REPLIED = "permission.replied"

    # Installation
    INSTALLATION_UPDATED = "installation.updated"
    INSTALLATION_UPDATE_AVAILABLE = "installation.update-available"
