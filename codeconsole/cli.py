import click


@click.group()
def main() -> None:
    """Codeconsole - event-stream engine and SSE relay for coding-agent sessions."""


@main.command()
@click.option("--host", default=None, help="Bind host (default: from CODECONSOLE_HOST or 0.0.0.0).")
@click.option("--port", default=None, type=int, help="Bind port (default: from CODECONSOLE_PORT or 5003).")
@click.option("--reload", is_flag=True, default=False, help="Enable auto-reload for development.")
def relay(host: str | None, port: int | None, reload: bool) -> None:
    """Start the event relay server."""
    import uvicorn

    from codeconsole.settings import ConsoleSettings

    settings = ConsoleSettings()

    uvicorn.run(
        "codeconsole.relay.app:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        log_level="warning",  # uvicorn's own logging is intercepted by loguru
    )


@main.command()
@click.option("--server-url", default=None, help="Relay URL (default: from CODECONSOLE_SERVER_URL).")
@click.option("--directory", "directories", multiple=True, help="Directory to follow (repeatable).")
@click.option("--session", "session_id", default=None, help="Session the user has open (its errors are not re-reported).")
def watch(server_url: str | None, directories: tuple[str, ...], session_id: str | None) -> None:
    """Follow the event feed and log every store change until interrupted."""
    import asyncio

    from codeconsole.log import setup_logging
    from codeconsole.settings import ConsoleSettings

    settings = ConsoleSettings()
    if server_url:
        settings = settings.model_copy(update={"server_url": server_url})
    setup_logging(settings.log_level, component="engine", json_logs=settings.log_json)

    try:
        asyncio.run(_watch(settings, directories, session_id))
    except KeyboardInterrupt:
        click.echo("Stopped.")


async def _watch(settings, directories: tuple[str, ...], session_id: str | None) -> None:
    import asyncio

    from loguru import logger

    from codeconsole.event_stream.service import EventStreamService
    from codeconsole.event_stream.store import StoreChange

    service = EventStreamService.from_settings(settings)
    service.set_current_session(session_id)

    def _log_change(change: StoreChange) -> None:
        changed = ", ".join(sorted(f"{k.section}:{k.id}" if k.id else str(k.section) for k in change.changed))
        invalidated = ", ".join(sorted(f"{k.section}:{k.id}" if k.id else str(k.section) for k in change.invalidated))
        logger.info("#{} changed=[{}] invalidated=[{}]", change.sequence, changed, invalidated)

    service.store.subscribe(_log_change)
    releases = [service.add_directory_interest(d) for d in directories]
    service.start()
    try:
        if not await service.connection.ensure_connected(timeout=settings.request_timeout):
            logger.warning("Relay not reachable yet at {}; still retrying", settings.server_url)
        await asyncio.Event().wait()
    finally:
        for release in releases:
            release()
        await service.stop()


if __name__ == "__main__":
    main()
