"""Session, message, part and todo models held by the derived store.

Field names are pythonic; the wire names used by the agent backend
(``sessionID``, ``messageID``, ``callID``, ...) are kept as aliases so models
validate straight from event payloads and dump back with ``by_alias=True``.
Fields the engine does not interpret (text, tool name, tokens, ...) pass
through untouched.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from codeconsole.event_stream.models.enums import MessageRole, SessionStatusType, ToolStatus


class WireModel(BaseModel):
    """Base for models validated from backend payloads."""

    model_config = ConfigDict(populate_by_name=True, extra="allow", frozen=True)


# -- Session -----------------------------------------------------------------


class SessionStatus(WireModel):
    """Tagged session status.  ``retry`` carries the retry bookkeeping."""

    type: SessionStatusType
    attempt: int | None = None
    message: str | None = None
    next: float | None = None

    @property
    def is_active(self) -> bool:
        return self.type is not SessionStatusType.IDLE


IDLE = SessionStatus(type=SessionStatusType.IDLE)
BUSY = SessionStatus(type=SessionStatusType.BUSY)


class SessionInfo(WireModel):
    """Session metadata as carried by ``session.updated``."""

    id: str
    title: str | None = None
    directory: str | None = None
    parent_id: str | None = Field(default=None, alias="parentID")


class Session(WireModel):
    id: str
    status: SessionStatus = IDLE
    info: SessionInfo | None = None


# -- Message -----------------------------------------------------------------


class MessageTime(WireModel):
    created: float
    completed: float | None = None


class Message(WireModel):
    """Message metadata.  Parts are stored separately, keyed by message id."""

    id: str
    session_id: str = Field(alias="sessionID")
    role: MessageRole
    time: MessageTime
    correlation_id: str | None = Field(default=None, alias="correlationID")
    """Echo of the client correlation id that created an optimistic placeholder."""

    optimistic: bool = False
    """True only for locally synthesized placeholders awaiting server confirmation."""

    @property
    def is_completed(self) -> bool:
        return self.time.completed is not None


class ToolTime(WireModel):
    start: float
    end: float | None = None


class ToolState(WireModel):
    status: ToolStatus
    input: Any = None
    output: str | None = None
    title: str | None = None
    error: str | None = None
    metadata: dict[str, Any] | None = None
    time: ToolTime | None = None


class MessagePart(WireModel):
    id: str
    message_id: str = Field(alias="messageID")
    session_id: str = Field(alias="sessionID")
    type: str
    call_id: str | None = Field(default=None, alias="callID")
    state: ToolState | None = None

    @property
    def is_tool(self) -> bool:
        return self.type == "tool" and self.state is not None

    @property
    def is_finalized(self) -> bool:
        return self.is_tool and self.state.status.is_final  # type: ignore[union-attr]


class MessageWithParts(BaseModel):
    """Read-side view combining a message with its ordered parts."""

    info: Message
    parts: list[MessagePart] = Field(default_factory=list)


# -- Todo --------------------------------------------------------------------


class Todo(WireModel):
    id: str | None = None
    content: str
    status: str
    priority: str | None = None


# -- Interaction requests ----------------------------------------------------


class ToolRef(WireModel):
    message_id: str = Field(alias="messageID")
    call_id: str = Field(alias="callID")


class QuestionRequest(WireModel):
    id: str
    session_id: str = Field(alias="sessionID")
    questions: list[dict[str, Any]] = Field(default_factory=list)
    tool: ToolRef | None = None


class PermissionRequest(WireModel):
    id: str
    session_id: str = Field(alias="sessionID")
    permission: str
    patterns: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    tool: ToolRef | None = None


# -- Connection --------------------------------------------------------------


class ConnectionState(BaseModel):
    model_config = ConfigDict(frozen=True)

    connected: bool = False
    error: str | None = None
