"""Event dispatcher -- raw feed payloads to typed domain events.

Decoding never raises: a payload that is not JSON, names an unknown event
type or lacks a required field is logged and dropped, and the feed keeps
flowing.
"""

from __future__ import annotations

import json
from typing import Any

from loguru import logger
from pydantic import ValidationError

from codeconsole.event_stream.models.enums import EventType
from codeconsole.event_stream.models.events import DomainEvent, domain_event_adapter

_KNOWN_TYPES = frozenset(EventType)


class EventDispatcher:
    """Decodes one raw payload at a time.  Stateless apart from counters."""

    def __init__(self) -> None:
        self.decoded = 0
        self.dropped = 0

    def decode(self, raw: str | bytes | dict[str, Any]) -> DomainEvent | None:
        """Return the typed event for *raw*, or ``None`` if it should be dropped."""
        if isinstance(raw, dict):
            payload: Any = raw
        else:
            try:
                payload = json.loads(raw)
            except ValueError:
                self.dropped += 1
                logger.warning("Dropping non-JSON event payload: {!r}", _preview(raw))
                return None

        if not isinstance(payload, dict):
            self.dropped += 1
            logger.warning("Dropping event payload that is not an object: {!r}", _preview(raw))
            return None

        event_type = payload.get("type")
        if not isinstance(event_type, str) or event_type not in _KNOWN_TYPES:
            self.dropped += 1
            logger.debug("Ignoring unknown event type {!r}", event_type)
            return None

        try:
            event = domain_event_adapter.validate_python(payload)
        except ValidationError as exc:
            self.dropped += 1
            logger.warning("Dropping malformed {} event ({} errors): {}", event_type, exc.error_count(), exc)
            return None

        self.decoded += 1
        return event


def _preview(raw: Any, limit: int = 200) -> str:
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else str(raw)
    return text if len(text) <= limit else text[:limit] + "..."
