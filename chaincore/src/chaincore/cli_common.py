"""
Common CLI components for chainbooks.

Resolver functions take CLI args + settings and return resolved values;
setup functions do the common initialization (logging, settings).
The typer parameter definitions stay in chainbooks.cli so this module
does not depend on typer.

Usage:
    from chaincore.cli_common import resolve_indexer_settings, setup_cli

    @app.command()
    def scan(
        network: Annotated[str | None, typer.Option("--network")] = None,
        log_level: Annotated[str | None, typer.Option("--log-level")] = None,
    ):
        settings = setup_cli(log_level)
        indexer = resolve_indexer_settings(settings, network=network)
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from chaincore.models import NetworkType
from chaincore.settings import ChainbooksSettings, get_settings, reset_settings


@dataclass
class ResolvedIndexerSettings:
    """Resolved indexer settings ready for use."""

    network: NetworkType
    base_url: str
    timeout: float
    data_dir: Path


def setup_logging(level: str = "INFO") -> None:
    """
    Configure loguru logging with consistent format.

    Args:
        level: Log level (TRACE, DEBUG, INFO, WARNING, ERROR)
    """
    logger.remove()
    logger.add(
        sys.stderr,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
            "<level>{message}</level>"
        ),
        level=level.upper(),
        colorize=True,
    )


def setup_cli(log_level: str | None = None, data_dir: Path | None = None) -> ChainbooksSettings:
    """
    Common CLI setup: reset settings cache, configure logging, return settings.

    Log level priority: CLI argument > settings (env/config) > default "INFO"
    """
    reset_settings()
    settings = get_settings(data_dir=data_dir) if data_dir is not None else get_settings()

    effective_log_level = log_level if log_level is not None else settings.logging.level
    setup_logging(effective_log_level)

    return settings


def resolve_indexer_settings(
    settings: ChainbooksSettings,
    *,
    network: NetworkType | str | None = None,
    indexer_url: str | None = None,
) -> ResolvedIndexerSettings:
    """
    Resolve indexer settings with priority: CLI > Settings (env + config) > Defaults.
    """
    if network is not None:
        resolved_network = NetworkType(network)
    else:
        resolved_network = settings.network

    base_url = indexer_url or settings.indexer.base_url(resolved_network)

    return ResolvedIndexerSettings(
        network=resolved_network,
        base_url=base_url.rstrip("/"),
        timeout=settings.indexer.timeout,
        data_dir=settings.get_data_dir(),
    )
