"""FastAPI dependency injection for the relay.

Usage in route handlers::

    @router.get("/status")
    async def status(aggregator: Aggregator) -> dict:
        ...

Dependencies raise HTTP 503 if the aggregator was not initialised (lifespan
not run or already torn down).
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from codeconsole.relay.aggregator import SSEAggregator


async def get_aggregator(request: Request) -> SSEAggregator:
    aggregator: SSEAggregator | None = getattr(request.app.state, "aggregator", None)
    if aggregator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Relay not initialised.",
        )
    return aggregator


# -- Annotated type aliases for concise route signatures ---------------------

Aggregator = Annotated[SSEAggregator, Depends(get_aggregator)]
"""Annotated dependency: the process-wide SSE aggregator."""
