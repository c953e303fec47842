"""Request / response schemas for the relay control endpoints.

Field names are pythonic; the camelCase names the browser client sends
(``clientId``, ``activeSessionId``) are accepted as aliases and used on
output.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class _RelayModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SSESubscribeRequest(_RelayModel):
    """Body of ``/subscribe`` and ``/unsubscribe``."""

    client_id: str = Field(alias="clientId", min_length=1)
    directories: list[str] = Field(min_length=1)


class SSEVisibilityRequest(_RelayModel):
    client_id: str = Field(alias="clientId", min_length=1)
    visible: bool
    active_session_id: str | None = Field(default=None, alias="activeSessionId")


class SuccessResponse(BaseModel):
    success: bool = True


class RelayStatusResponse(_RelayModel):
    """Snapshot of relay state for ``GET /api/sse/status``."""

    connected: int
    total: int
    clients: int
    directories: list[str]
    active_sessions: dict[str, list[str]] = Field(alias="activeSessions")
