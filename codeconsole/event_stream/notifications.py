"""Notification side channel.

Domain errors (``session.error``) and advisory messages (compaction done,
agent upgraded) are not store mutations.  The reconciler hands them to a
``Notifier``; the rendering layer decides how to show them.  The default
implementation writes them to the log.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from loguru import logger

ABORTED_ERROR = "MessageAbortedError"
"""Error name the backend uses when the user cancelled the in-flight response."""

_ERROR_TITLES = {
    "ProviderAuthError": "Authentication failed",
    "APIError": "Provider API error",
    "MessageOutputLengthError": "Output length exceeded",
    "ContextOverflowError": "Context window exceeded",
    "UnknownError": "Unexpected error",
}


@dataclass(frozen=True)
class ParsedError:
    name: str
    title: str
    message: str


@runtime_checkable
class Notifier(Protocol):
    """Receives user-facing notifications.  Implementations must not raise."""

    def error(self, title: str, message: str | None = None, *, key: str | None = None) -> None: ...

    def success(self, title: str, message: str | None = None, *, key: str | None = None) -> None: ...

    def info(self, title: str, message: str | None = None, *, key: str | None = None) -> None: ...

    def dismiss(self, key: str) -> None: ...


class LoggingNotifier:
    """Notifier that writes every notification to the log."""

    def error(self, title: str, message: str | None = None, *, key: str | None = None) -> None:
        logger.error("[notify] {}{}", title, f": {message}" if message else "")

    def success(self, title: str, message: str | None = None, *, key: str | None = None) -> None:
        logger.info("[notify] {}{}", title, f": {message}" if message else "")

    def info(self, title: str, message: str | None = None, *, key: str | None = None) -> None:
        logger.info("[notify] {}{}", title, f": {message}" if message else "")

    def dismiss(self, key: str) -> None:
        logger.debug("[notify] dismiss {}", key)


def parse_session_error(error: dict[str, Any]) -> ParsedError | None:
    """Turn a ``session.error`` payload into something displayable.

    Returns ``None`` for errors that should never be surfaced (user-initiated
    cancellation).
    """
    name = str(error.get("name") or "UnknownError")
    if name == ABORTED_ERROR:
        return None

    data = error.get("data")
    message = ""
    if isinstance(data, dict):
        message = str(data.get("message") or "")
        provider = data.get("providerID")
        if provider and name == "ProviderAuthError":
            message = f"{provider}: {message}" if message else str(provider)
    if not message:
        message = str(error.get("message") or name)

    return ParsedError(name=name, title=_ERROR_TITLES.get(name, "Session error"), message=message)
