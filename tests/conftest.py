"""Shared test fixtures: in-memory store, reconciler with a fixed clock, recording notifier.

Nothing here needs a network: the relay and the connection manager are
exercised through ``httpx.MockTransport`` / ``httpx.ASGITransport`` in their
own modules.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field

import pytest

from codeconsole.event_stream.reconciler import Reconciler
from codeconsole.event_stream.store import DerivedStore
from codeconsole.settings import _get_settings_cached


@dataclass
class Notification:
    kind: str
    title: str
    message: str | None = None
    key: str | None = None


@dataclass
class RecordingNotifier:
    """Notifier that keeps every call for assertions."""

    notifications: list[Notification] = field(default_factory=list)
    dismissed: list[str] = field(default_factory=list)

    def error(self, title: str, message: str | None = None, *, key: str | None = None) -> None:
        self.notifications.append(Notification("error", title, message, key))

    def success(self, title: str, message: str | None = None, *, key: str | None = None) -> None:
        self.notifications.append(Notification("success", title, message, key))

    def info(self, title: str, message: str | None = None, *, key: str | None = None) -> None:
        self.notifications.append(Notification("info", title, message, key))

    def dismiss(self, key: str) -> None:
        self.dismissed.append(key)

    def kinds(self) -> list[str]:
        return [n.kind for n in self.notifications]


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, now: float = 1_700_000_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


@pytest.fixture(autouse=True)
def _fresh_settings() -> Iterator[None]:
    """Every test reads settings from its own environment."""
    _get_settings_cached.cache_clear()
    yield
    _get_settings_cached.cache_clear()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> DerivedStore:
    return DerivedStore()


@pytest.fixture
def reconciler(notifier: RecordingNotifier, clock: FakeClock) -> Reconciler:
    return Reconciler(notifier, clock=clock)
