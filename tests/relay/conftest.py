"""Shared fixtures for relay endpoint tests."""

from __future__ import annotations

from collections.abc import AsyncIterator

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from codeconsole.relay.aggregator import SSEAggregator
from codeconsole.relay.app import app


@pytest.fixture
async def aggregator() -> AsyncIterator[SSEAggregator]:
    """Aggregator whose upstream agent backend refuses every stream."""
    upstream = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
    agg = SSEAggregator("http://backend", http_client=upstream, reconnect_delay=10)
    yield agg
    if not agg.is_shutting_down:
        await agg.shutdown()
    await upstream.aclose()


@pytest.fixture
async def client(aggregator: SSEAggregator) -> AsyncIterator[AsyncClient]:
    """Async HTTP client wired to the relay app.

    The app lifespan does NOT run under ``ASGITransport``, so the aggregator
    is placed on ``app.state`` directly.
    """
    app.state.aggregator = aggregator

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.state.aggregator = None
