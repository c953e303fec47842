"""Resync trigger -- fetch authoritative statuses after a (re)connect.

Events emitted while the feed was down are never replayed, so on every
open the engine asks the backend for current session statuses and merges
them through the reconciler as a ``StatusSnapshot``.

Only the newest request may land: each trigger bumps a generation counter
and an older response is discarded.  A snapshot carries the store sequence
at request time so the reconciler can keep statuses written by live events
that arrived while the request was in flight.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

import httpx
from loguru import logger
from pydantic import ValidationError

from codeconsole.event_stream.models.events import StatusSnapshot

if TYPE_CHECKING:
    from codeconsole.event_stream.backend import AgentBackendClient
    from codeconsole.event_stream.models.session import SessionStatus
    from codeconsole.event_stream.models.events import StoreEvent

    ApplyFn = Callable[[StoreEvent], None]


class ResyncTrigger:
    def __init__(
        self,
        backend: AgentBackendClient,
        apply: ApplyFn,
        sequence: Callable[[], int],
        directories: Callable[[], Iterable[str]],
    ) -> None:
        self._backend = backend
        self._apply = apply
        self._sequence = sequence
        self._directories = directories
        self._generation = 0
        self._task: asyncio.Task[None] | None = None

    @property
    def generation(self) -> int:
        return self._generation

    def trigger(self) -> asyncio.Task[None]:
        """Start a resync; any in-flight one is superseded."""
        self._generation += 1
        generation = self._generation
        issued_at = self._sequence()
        self._task = asyncio.create_task(self._resync(generation, issued_at), name=f"resync-{generation}")
        return self._task

    async def _resync(self, generation: int, issued_at: int) -> None:
        statuses: dict[str, SessionStatus] = {}
        directories = sorted(self._directories()) or [None]
        for directory in directories:
            try:
                statuses.update(await self._backend.get_session_statuses(directory))
            except (httpx.HTTPError, ValidationError) as exc:
                logger.warning("Resync: status fetch failed for {}: {}", directory or "<all>", exc)

        if generation != self._generation:
            logger.debug("Resync {} superseded by {}, discarding", generation, self._generation)
            return
        if not statuses:
            return

        logger.info("Resync: merging {} session statuses", len(statuses))
        self._apply(StatusSnapshot(statuses=statuses, issued_at=issued_at))

    async def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
