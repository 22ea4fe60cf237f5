"""
Shared helpers for CLI commands.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Annotated, TypeVar

import typer
from loguru import logger

from chaincore.settings import ChainbooksSettings
from chainbooks.errors import ChainbooksError
from chainbooks.service import WalletService

T = TypeVar("T")

DataDirOption = Annotated[
    Path | None,
    typer.Option(
        "--data-dir",
        "-d",
        envvar="CHAINBOOKS_DATA_DIR",
        help="Data directory (default: ~/.chainbooks or $CHAINBOOKS_DATA_DIR)",
    ),
]
LogLevelOption = Annotated[
    str | None,
    typer.Option("--log-level", "-l", help="Log level"),
]


def create_service(settings: ChainbooksSettings) -> WalletService:
    return WalletService.from_settings(settings)


def run_with_service(
    settings: ChainbooksSettings,
    operation: Callable[[WalletService], Awaitable[T]],
) -> T:
    """
    Run an async operation against a freshly built service, then close it.

    Domain errors are logged and turned into exit code 1.
    """

    async def _run() -> T:
        service = create_service(settings)
        try:
            return await operation(service)
        finally:
            await service.close()

    try:
        return asyncio.run(_run())
    except ChainbooksError as e:
        logger.error(str(e))
        raise typer.Exit(1)


def parse_decimal(value: str, name: str) -> Decimal:
    try:
        result = Decimal(value)
    except InvalidOperation:
        logger.error(f"{name} must be a number, got {value!r}")
        raise typer.Exit(1)
    if not result.is_finite():
        logger.error(f"{name} must be a finite number")
        raise typer.Exit(1)
    return result


def as_date(value: datetime | None) -> date | None:
    return value.date() if value is not None else None
