"""
Server and configuration commands: serve, config-init.
"""

from __future__ import annotations

from typing import Annotated

import typer
import uvicorn
from loguru import logger

from chaincore.cli_common import setup_cli
from chaincore.paths import get_default_data_dir
from chaincore.settings import ensure_config_file, reset_settings
from chainbooks.cli import app
from chainbooks.cli.common import DataDirOption, LogLevelOption


@app.command()
def serve(
    host: Annotated[str | None, typer.Option("--host", help="Bind address")] = None,
    port: Annotated[int | None, typer.Option("--port", "-p", help="Bind port")] = None,
    data_dir: DataDirOption = None,
    log_level: LogLevelOption = None,
) -> None:
    """Run the HTTP API."""
    from chainbooks.api import create_app

    settings = setup_cli(log_level, data_dir)
    bind_host = host or settings.api.host
    bind_port = port or settings.api.port

    logger.info(f"Serving chainbooks API on http://{bind_host}:{bind_port}")
    logger.info(f"Data directory: {settings.get_data_dir()}")
    uvicorn.run(
        create_app(settings=settings),
        host=bind_host,
        port=bind_port,
        log_level=(log_level or settings.logging.level).lower(),
    )


@app.command("config-init")
def config_init(data_dir: DataDirOption = None) -> None:
    """Initialize the config file with default settings."""
    reset_settings()

    if data_dir is None:
        data_dir = get_default_data_dir()

    config_path = ensure_config_file(data_dir)
    typer.echo(f"Config file created at: {config_path}")
    typer.echo("\nAll settings are commented out by default.")
    typer.echo("Edit the file to customize your configuration.")
    typer.echo("\nPriority (highest to lowest):")
    typer.echo("  1. CLI arguments")
    typer.echo("  2. Environment variables")
    typer.echo("  3. Config file")
    typer.echo("  4. Built-in defaults")
