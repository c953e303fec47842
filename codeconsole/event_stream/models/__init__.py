"""Data models for the event-stream engine."""

from codeconsole.event_stream.models.enums import (
    EventType,
    MessageRole,
    SessionStatusType,
    StoreSection,
    ToolStatus,
)
from codeconsole.event_stream.models.events import (
    ConnectionStateChanged,
    DomainEvent,
    LocalEvent,
    OptimisticPromptDiscarded,
    OptimisticPromptSubmitted,
    StatusSnapshot,
    StoreEvent,
    ToolCallRejected,
)
from codeconsole.event_stream.models.session import (
    ConnectionState,
    Message,
    MessagePart,
    MessageTime,
    MessageWithParts,
    PermissionRequest,
    QuestionRequest,
    Session,
    SessionInfo,
    SessionStatus,
    Todo,
    ToolState,
    ToolTime,
)

__all__ = [
    # Events
    "ConnectionState",
    "ConnectionStateChanged",
    "DomainEvent",
    # Enums
    "EventType",
    "LocalEvent",
    # Store
    "Message",
    "MessagePart",
    "MessageRole",
    "MessageTime",
    "MessageWithParts",
    "OptimisticPromptDiscarded",
    "OptimisticPromptSubmitted",
    "PermissionRequest",
    "QuestionRequest",
    "Session",
    "SessionInfo",
    "SessionStatus",
    "SessionStatusType",
    "StatusSnapshot",
    "StoreEvent",
    "StoreSection",
    "Todo",
    "ToolCallRejected",
    "ToolState",
    "ToolStatus",
    "ToolTime",
]
