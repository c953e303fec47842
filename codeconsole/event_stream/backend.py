"""REST collaborator -- the handful of backend reads the engine needs."""

from __future__ import annotations

import httpx
from pydantic import TypeAdapter

from codeconsole.event_stream.models.session import SessionStatus

_statuses_adapter: TypeAdapter[dict[str, SessionStatus]] = TypeAdapter(dict[str, SessionStatus])


class AgentBackendClient:
    """Thin async client over the agent backend REST API (proxied by the relay)."""

    def __init__(self, base_url: str, http_client: httpx.AsyncClient | None = None, timeout: float = 10.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def get_session_statuses(self, directory: str | None = None) -> dict[str, SessionStatus]:
        """Current status of every non-idle session, optionally scoped to *directory*.

        Raises ``httpx.HTTPError`` on transport or HTTP failure and
        ``pydantic.ValidationError`` on an unexpected body.
        """
        params = {"directory": directory} if directory else None
        response = await self._client.get(f"{self._base_url}/session/status", params=params)
        response.raise_for_status()
        return _statuses_adapter.validate_python(response.json())

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
