"""Command line interface for browser-session-hub."""

from __future__ import annotations

import asyncio
import logging
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as get_version
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
import uvicorn
from rich.logging import RichHandler

from .api.app import create_app
from .config import ServiceConfig, load_config
from .engine_service import create_engine_service
from .factory import build_datastore

app = typer.Typer(help="Browser Session Hub entry point")

ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="Path to YAML configuration."),
]
EnvFileOption = Annotated[
    Optional[Path],
    typer.Option("--env-file", help="Path to an .env file with default configuration values."),
]


@app.callback()
def main(
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Configure logging before executing any command."""

    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True)],
    )


@app.command()
def version() -> None:
    """Print the package version."""

    try:
        typer.echo(get_version("browser-session-hub"))
    except PackageNotFoundError:  # pragma: no cover - when running from source tree
        typer.echo("0.0.0")


def _load(
    config_path: Optional[Path],
    env_file: Optional[Path],
    *,
    backend: Optional[str] = None,
    headless: Optional[bool] = None,
    database_url: Optional[str] = None,
) -> ServiceConfig:
    overrides: dict[str, Any] = {}
    if backend is not None or headless is not None:
        overrides.setdefault("engine", {})
        if backend is not None:
            overrides["engine"]["backend"] = backend
        if headless is not None:
            overrides["engine"]["headless"] = headless
    if database_url is not None:
        overrides["database"] = {"url": database_url}
    return load_config(config_path, env_file=env_file, **overrides)


@app.command()
def serve(
    config_path: ConfigOption = None,
    env_file: EnvFileOption = None,
    host: Annotated[Optional[str], typer.Option("--host", help="Binding address.")] = None,
    port: Annotated[Optional[int], typer.Option("--port", help="HTTP port.")] = None,
    backend: Annotated[
        Optional[str],
        typer.Option("--backend", help="Engine backend: playwright, remote or scripted."),
    ] = None,
    headless: Annotated[
        Optional[bool],
        typer.Option("--headless/--headed", help="Run browsers in headless mode (or headed)."),
    ] = None,
    database_url: Annotated[
        Optional[str],
        typer.Option("--database-url", help="SQLAlchemy async database URL."),
    ] = None,
) -> None:
    """Run the session API."""

    config = _load(
        config_path,
        env_file,
        backend=backend,
        headless=headless,
        database_url=database_url,
    )
    typer.echo(f"Starting session API with {config.engine.backend} engine backend")
    uvicorn.run(
        create_app(config),
        host=host or config.server.host,
        port=port or config.server.port,
        log_config=None,
    )


@app.command("engine-service")
def engine_service(
    config_path: ConfigOption = None,
    env_file: EnvFileOption = None,
    host: Annotated[Optional[str], typer.Option("--host", help="Binding address.")] = None,
    port: Annotated[Optional[int], typer.Option("--port", help="HTTP port.")] = None,
    headless: Annotated[
        Optional[bool],
        typer.Option("--headless/--headed", help="Run browsers in headless mode (or headed)."),
    ] = None,
) -> None:
    """Run the standalone engine service used by the remote backend."""

    config = _load(config_path, env_file, headless=headless)
    if config.engine.backend == "remote":
        raise typer.BadParameter("The engine service cannot itself use the remote backend")
    typer.echo(f"Starting engine service with {config.engine.backend} engine backend")
    uvicorn.run(
        create_engine_service(config),
        host=host or config.server.host,
        port=port or config.server.engine_service_port,
        log_config=None,
    )


@app.command("init-db")
def init_db(
    config_path: ConfigOption = None,
    env_file: EnvFileOption = None,
    database_url: Annotated[
        Optional[str],
        typer.Option("--database-url", help="SQLAlchemy async database URL."),
    ] = None,
) -> None:
    """Create the database schema."""

    config = _load(config_path, env_file, database_url=database_url)
    datastore = build_datastore(config)

    async def _create() -> None:
        try:
            await datastore.create_all()
        finally:
            await datastore.dispose()

    asyncio.run(_create())
    typer.echo(f"Database schema ready at {config.database.url}")


if __name__ == "__main__":
    app()
