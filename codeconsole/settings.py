"""Console configuration loaded from CODECONSOLE_* environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class ConsoleSettings(BaseSettings):
    """Settings shared by the event-stream engine and the relay.

    All fields are read from environment variables with the ``CODECONSOLE_``
    prefix.  For example, ``CODECONSOLE_LOG_LEVEL=DEBUG`` maps to ``log_level``.
    """

    model_config = SettingsConfigDict(
        env_prefix="CODECONSOLE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # -- Logging ---------------------------------------------------------------
    log_level: str = "INFO"
    log_json: bool = False
    """Emit serialized JSON records instead of the coloured text format."""

    # -- Engine (client side) --------------------------------------------------
    server_url: str = "http://localhost:5003"
    """Relay base URL.  The event feed lives at ``{server_url}/api/sse/stream``."""

    opencode_api_url: str = "http://localhost:5003/api/opencode"
    """REST collaborator base URL used for the session-status snapshot."""

    # -- Relay (server side) ---------------------------------------------------
    opencode_url: str = "http://127.0.0.1:5551"
    """Agent backend the relay opens one ``/event`` stream per directory against."""

    host: str = "0.0.0.0"  # noqa: S104
    port: int = 5003

    # -- Streaming -------------------------------------------------------------
    reconnect_delay_ms: int = 1000
    max_reconnect_delay_ms: int = 30000
    heartbeat_interval_ms: int = 30000
    request_timeout: float = 10.0
    """Timeout in seconds for the short REST calls (subscribe, status, ...)."""

    # -- Helpers ---------------------------------------------------------------

    @property
    def reconnect_delay(self) -> float:
        return self.reconnect_delay_ms / 1000

    @property
    def max_reconnect_delay(self) -> float:
        return self.max_reconnect_delay_ms / 1000

    @property
    def heartbeat_interval(self) -> float:
        return self.heartbeat_interval_ms / 1000


def get_settings() -> ConsoleSettings:
    """Return a cached settings instance.

    Reads from environment variables and ``.env`` on first call, then returns
    the same object.  Call ``_get_settings_cached.cache_clear()`` in tests to
    force a re-read after overriding env vars.
    """
    return _get_settings_cached()


def _get_settings_cached() -> ConsoleSettings:
    """Inner function wrapped by lru_cache (allows type-safe cache_clear)."""
    return ConsoleSettings()


# Apply lru_cache at runtime so the function is only called once.
from functools import lru_cache  # noqa: E402

_get_settings_cached = lru_cache(maxsize=1)(_get_settings_cached)
