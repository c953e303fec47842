from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.routing import APIRouter
from loguru import logger

from codeconsole.log import setup_logging
from codeconsole.relay.aggregator import SSEAggregator
from codeconsole.settings import get_settings


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    # -- Startup ---------------------------------------------------------------
    settings = get_settings()
    setup_logging(settings.log_level, component="relay", json_logs=settings.log_json)

    logger.info("Event relay starting (host={}, port={})", settings.host, settings.port)
    logger.info("Upstream agent backend: {}", settings.opencode_url)

    _app.state.aggregator = SSEAggregator.from_settings(settings)

    yield

    # -- Shutdown --------------------------------------------------------------
    aggregator: SSEAggregator = _app.state.aggregator
    logger.info("Event relay shutting down (clients={})", aggregator.client_count)

    # Closes every client stream (sentinel) before the upstream feeds go away.
    await aggregator.shutdown()
    _app.state.aggregator = None


app = FastAPI(title="Codeconsole Event Relay", lifespan=lifespan)

# ---------------------------------------------------------------------------
# API router -- all relay endpoints live under /api
# ---------------------------------------------------------------------------
api = APIRouter(prefix="/api")


@api.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


from codeconsole.relay.routers.sse import router as sse_router  # noqa: E402

api.include_router(sse_router)

app.include_router(api)
