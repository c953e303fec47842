"""Domain event models.

Two families of events flow through the reconciler:

- **Wire events** (``DomainEvent``): decoded from the backend feed.  The
  envelope is ``{"type": ..., "properties": {...}}`` and ``type`` is the
  discriminator, so every event name has exactly one model and an unknown
  name fails validation instead of becoming a silent no-op.
- **Local events** (``LocalEvent``): synthesized in-process for optimistic
  edits, connection state and resync snapshots.  They go through the same
  ``Reconciler.apply`` so the store has a single writer.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from codeconsole.event_stream.models.session import (
    Message,
    MessagePart,
    PermissionRequest,
    QuestionRequest,
    SessionInfo,
    SessionStatus,
    Todo,
)


class _Properties(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow", frozen=True)


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)


# -- Session -----------------------------------------------------------------


class SessionInfoProperties(_Properties):
    info: SessionInfo


class SessionUpdated(_Event):
    type: Literal["session.updated"]
    properties: SessionInfoProperties


class SessionDeletedProperties(_Properties):
    info: SessionInfo | None = None
    session_id: str | None = Field(default=None, alias="sessionID")

    @model_validator(mode="after")
    def _require_id(self) -> SessionDeletedProperties:
        if self.info is None and self.session_id is None:
            msg = "session.deleted requires info or sessionID"
            raise ValueError(msg)
        return self

    @property
    def target_id(self) -> str:
        return self.info.id if self.info is not None else self.session_id  # type: ignore[return-value]


class SessionDeleted(_Event):
    type: Literal["session.deleted"]
    properties: SessionDeletedProperties


class SessionStatusProperties(_Properties):
    session_id: str = Field(alias="sessionID")
    status: SessionStatus


class SessionStatusChanged(_Event):
    type: Literal["session.status"]
    properties: SessionStatusProperties


class SessionRef(_Properties):
    session_id: str = Field(alias="sessionID")


class SessionIdle(_Event):
    type: Literal["session.idle"]
    properties: SessionRef


class SessionCompacted(_Event):
    type: Literal["session.compacted"]
    properties: SessionRef


class SessionErrorProperties(_Properties):
    session_id: str | None = Field(default=None, alias="sessionID")
    error: dict[str, Any]


class SessionError(_Event):
    type: Literal["session.error"]
    properties: SessionErrorProperties


# -- Message -----------------------------------------------------------------


class MessageInfoProperties(_Properties):
    info: Message


class MessageUpdated(_Event):
    type: Literal["message.updated", "messagev2.updated"]
    properties: MessageInfoProperties


class MessageRef(_Properties):
    session_id: str = Field(alias="sessionID")
    message_id: str = Field(alias="messageID")


class MessageRemoved(_Event):
    type: Literal["message.removed", "messagev2.removed"]
    properties: MessageRef


class PartProperties(_Properties):
    part: MessagePart


class PartUpdated(_Event):
    type: Literal["message.part.updated", "messagev2.part.updated"]
    properties: PartProperties


class PartRef(_Properties):
    session_id: str = Field(alias="sessionID")
    message_id: str = Field(alias="messageID")
    part_id: str = Field(alias="partID")


class PartRemoved(_Event):
    type: Literal["message.part.removed", "messagev2.part.removed"]
    properties: PartRef


# -- Todo --------------------------------------------------------------------


class TodoProperties(_Properties):
    session_id: str = Field(alias="sessionID")
    todos: list[Todo]


class TodoUpdated(_Event):
    type: Literal["todo.updated"]
    properties: TodoProperties


# -- Questions and permissions -----------------------------------------------


class QuestionAsked(_Event):
    type: Literal["question.asked"]
    properties: QuestionRequest


class RequestRef(_Properties):
    session_id: str = Field(alias="sessionID")
    request_id: str = Field(alias="requestID")


class QuestionReplied(_Event):
    type: Literal["question.replied"]
    properties: RequestRef


class QuestionRejected(_Event):
    type: Literal["question.rejected"]
    properties: RequestRef


class PermissionAsked(_Event):
    type: Literal["permission.asked"]
    properties: PermissionRequest


class PermissionRepliedProperties(_Properties):
    session_id: str = Field(alias="sessionID")
    request_id: str | None = Field(default=None, alias="requestID")
    permission_id: str | None = Field(default=None, alias="permissionID")

    @model_validator(mode="after")
    def _require_id(self) -> PermissionRepliedProperties:
        if self.request_id is None and self.permission_id is None:
            msg = "permission.replied requires requestID or permissionID"
            raise ValueError(msg)
        return self

    @property
    def target_id(self) -> str:
        return self.request_id or self.permission_id  # type: ignore[return-value]


class PermissionReplied(_Event):
    type: Literal["permission.replied"]
    properties: PermissionRepliedProperties


# -- Installation ------------------------------------------------------------


class VersionProperties(_Properties):
    version: str


class InstallationUpdated(_Event):
    type: Literal["installation.updated"]
    properties: VersionProperties


class InstallationUpdateAvailable(_Event):
    type: Literal["installation.update-available"]
    properties: VersionProperties


DomainEvent = Annotated[
    SessionUpdated
    | SessionDeleted
    | SessionStatusChanged
    | SessionIdle
    | SessionCompacted
    | SessionError
    | MessageUpdated
    | MessageRemoved
    | PartUpdated
    | PartRemoved
    | TodoUpdated
    | QuestionAsked
    | QuestionReplied
    | QuestionRejected
    | PermissionAsked
    | PermissionReplied
    | InstallationUpdated
    | InstallationUpdateAvailable,
    Field(discriminator="type"),
]
"""Tagged union of every event the backend feed can carry."""

domain_event_adapter: TypeAdapter[DomainEvent] = TypeAdapter(DomainEvent)


# -- Local events ------------------------------------------------------------


class OptimisticPromptSubmitted(_Event):
    """The user submitted a prompt; show it before the server confirms."""

    session_id: str
    correlation_id: str
    created: float
    text: str = ""


class OptimisticPromptDiscarded(_Event):
    """The submission failed or was superseded; drop its placeholder."""

    session_id: str
    correlation_id: str


class ToolCallRejected(_Event):
    """A permission or question tied to a running tool call was rejected locally."""

    session_id: str
    message_id: str
    call_id: str
    error: str
    at: float


class ConnectionStateChanged(_Event):
    connected: bool
    error: str | None = None


class StatusSnapshot(_Event):
    """Authoritative statuses fetched by the resync trigger.

    ``issued_at`` is the store sequence observed when the request was sent;
    sessions whose status was written by a live event after that point keep
    their live value.
    """

    statuses: dict[str, SessionStatus]
    issued_at: int


LocalEvent = (
    OptimisticPromptSubmitted | OptimisticPromptDiscarded | ToolCallRejected | ConnectionStateChanged | StatusSnapshot
)

StoreEvent = DomainEvent | LocalEvent
