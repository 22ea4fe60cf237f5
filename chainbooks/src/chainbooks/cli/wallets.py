"""
Wallet commands: derive, add-wallet, wallets, scan.
"""

from __future__ import annotations

from typing import Annotated

import typer
from loguru import logger

from chaincore.cli_common import resolve_indexer_settings, setup_cli, setup_logging
from chainbooks.cli import app
from chainbooks.cli.common import DataDirOption, LogLevelOption, run_with_service
from chainbooks.errors import ChainbooksError
from chainbooks.events import ScanEvent, ScanEventType
from chainbooks.service import WalletService
from chainbooks.store import FetchStats, WalletRecord
from chainbooks.wallet.address import derive_addresses, parse_extended_key
from chainbooks.wallet.models import Chain


@app.command()
def derive(
    extended_key: Annotated[str, typer.Argument(help="Account xpub/ypub/zpub (or testnet)")],
    count: Annotated[int, typer.Option("--count", "-c", help="Addresses to derive")] = 10,
    start: Annotated[int, typer.Option("--start", "-s", help="First address index")] = 0,
    change: Annotated[
        bool, typer.Option("--change", help="Derive the internal (change) chain")
    ] = False,
    log_level: LogLevelOption = None,
) -> None:
    """Derive addresses from an extended public key without touching the network."""
    setup_logging(log_level or "WARNING")

    if count < 1 or start < 0:
        logger.error("--count must be positive and --start non-negative")
        raise typer.Exit(1)

    chain = Chain.INTERNAL if change else Chain.EXTERNAL
    try:
        key = parse_extended_key(extended_key)
        addresses = derive_addresses(key, count, start_index=start, chain=chain)
    except ChainbooksError as e:
        logger.error(str(e))
        raise typer.Exit(1)

    typer.echo(f"# {key.version.prefix} ({key.network.value}, {key.address_type.value})")
    for derived in addresses:
        typer.echo(f"{derived.path:<8} {derived.address}")


@app.command("add-wallet")
def add_wallet(
    wallet_data: Annotated[str, typer.Argument(help="Bitcoin address or account extended key")],
    name: Annotated[str | None, typer.Option("--name", help="Wallet label")] = None,
    network: Annotated[
        str | None, typer.Option("--network", "-n", help="mainnet or testnet")
    ] = None,
    data_dir: DataDirOption = None,
    log_level: LogLevelOption = None,
) -> None:
    """Register a wallet (single address or xpub/ypub/zpub)."""
    settings = setup_cli(log_level, data_dir)

    async def _add(service: WalletService) -> WalletRecord:
        return service.add_wallet(wallet_data, name=name, network=network)

    try:
        wallet = run_with_service(settings, _add)
    except ValueError as e:
        logger.error(str(e))
        raise typer.Exit(1)
    typer.echo(f"Added wallet {wallet.id}: {wallet.name} ({wallet.network.value})")


@app.command("wallets")
def list_wallets(
    include_archived: Annotated[
        bool, typer.Option("--all", "-a", help="Include archived wallets")
    ] = False,
    data_dir: DataDirOption = None,
    log_level: LogLevelOption = None,
) -> None:
    """List registered wallets and their last scan."""
    settings = setup_cli(log_level, data_dir)

    async def _list(service: WalletService) -> list[WalletRecord]:
        return service.list_wallets(include_archived=include_archived)

    wallets = run_with_service(settings, _list)
    if not wallets:
        typer.echo("No wallets registered.")
        return

    for wallet in wallets:
        scan = wallet.last_scan
        scan_info = "never scanned"
        if scan is not None:
            scan_info = f"last scan {scan.status} {scan.started_at:%Y-%m-%d %H:%M}"
        if not wallet.is_active:
            scan_info += " (archived)"
        typer.echo(
            f"{wallet.id:>4}  {wallet.name:<30} {wallet.kind.value:<13} "
            f"{wallet.network.value:<8} {scan_info}"
        )


@app.command("archive-wallet")
def archive_wallet(
    wallet_id: Annotated[int, typer.Argument(help="Wallet id (see `chainbooks wallets`)")],
    data_dir: DataDirOption = None,
    log_level: LogLevelOption = None,
) -> None:
    """Stop scanning a wallet. Its transactions and lots are kept."""
    settings = setup_cli(log_level, data_dir)

    async def _archive(service: WalletService) -> tuple[WalletRecord, bool]:
        return service.archive_wallet(wallet_id)

    wallet, changed = run_with_service(settings, _archive)
    if changed:
        typer.echo(f"Archived wallet {wallet.id}: {wallet.name}")
    else:
        typer.echo(f"Wallet {wallet.id} is already archived")


def _print_event(event: ScanEvent) -> None:
    if event.event_type in (ScanEventType.BATCH_COMPLETED, ScanEventType.SCAN_COMPLETED):
        typer.echo(f"  {event.message}")


@app.command()
def scan(
    wallet_id: Annotated[int, typer.Argument(help="Wallet id (see `chainbooks wallets`)")],
    indexer_url: Annotated[
        str | None, typer.Option("--indexer-url", help="Esplora-compatible API base URL")
    ] = None,
    data_dir: DataDirOption = None,
    log_level: LogLevelOption = None,
) -> None:
    """Fetch, classify and value a wallet's transactions."""
    settings = setup_cli(log_level, data_dir)
    if indexer_url is not None:
        # Override applies to whichever network the wallet is on
        resolved = resolve_indexer_settings(settings, indexer_url=indexer_url)
        settings.indexer.mainnet_url = resolved.base_url
        settings.indexer.testnet_url = resolved.base_url

    async def _scan(service: WalletService) -> FetchStats:
        service.get_wallet(wallet_id)
        typer.echo(f"Scanning wallet {wallet_id}...")
        return await service.fetch_transactions(wallet_id, on_event=_print_event)

    stats = run_with_service(settings, _scan)
    typer.echo(
        f"Fetched {stats.fetched}, added {stats.added}, skipped {stats.skipped}, "
        f"created {stats.lots_created} purchase lot(s)"
    )
