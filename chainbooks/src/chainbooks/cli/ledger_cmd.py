"""
Ledger commands: purchase-add, purchases, cost-basis, export.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Annotated

import typer

from chaincore.cli_common import setup_cli
from chainbooks.cli import app
from chainbooks.cli.common import (
    DataDirOption,
    LogLevelOption,
    as_date,
    parse_decimal,
    run_with_service,
)
from chainbooks.export import ExportFormat
from chainbooks.ledger import CostBasisResult
from chainbooks.rates import utc_today
from chainbooks.service import WalletService
from chainbooks.store import PurchaseLot

DATE_FORMATS = ["%Y-%m-%d"]


@app.command("purchase-add")
def purchase_add(
    wallet_id: Annotated[int, typer.Argument(help="Wallet the BTC was bought into")],
    amount_btc: Annotated[str, typer.Argument(help="BTC amount, e.g. 0.25")],
    cost_basis_usd: Annotated[str, typer.Argument(help="Total USD paid, e.g. 10000")],
    purchase_date: Annotated[
        datetime | None,
        typer.Option("--date", formats=DATE_FORMATS, help="Purchase date (default: today)"),
    ] = None,
    source: Annotated[
        str | None, typer.Option("--source", help="Where it was bought, e.g. an exchange")
    ] = None,
    data_dir: DataDirOption = None,
    log_level: LogLevelOption = None,
) -> None:
    """Record a BTC purchase lot."""
    settings = setup_cli(log_level, data_dir)
    amount = parse_decimal(amount_btc, "amount_btc")
    cost = parse_decimal(cost_basis_usd, "cost_basis_usd")
    day = as_date(purchase_date) or utc_today()

    async def _add(service: WalletService) -> PurchaseLot:
        return service.add_purchase(wallet_id, amount, cost, day, source)

    lot = run_with_service(settings, _add)
    typer.echo(
        f"Added lot {lot.id}: {lot.amount_btc} BTC for ${lot.cost_basis_usd} "
        f"on {lot.purchase_date}"
    )


@app.command()
def purchases(
    wallet_id: Annotated[
        int | None, typer.Option("--wallet", "-w", help="Only lots of this wallet")
    ] = None,
    data_dir: DataDirOption = None,
    log_level: LogLevelOption = None,
) -> None:
    """List purchase lots, oldest first."""
    settings = setup_cli(log_level, data_dir)

    async def _list(service: WalletService) -> list[PurchaseLot]:
        return service.list_purchases(wallet_id)

    lots = run_with_service(settings, _list)
    if not lots:
        typer.echo("No purchase lots.")
        return

    typer.echo(
        f"{'ID':>4}  {'Wallet':>6}  {'Date':<10}  {'Amount BTC':>14}  "
        f"{'Remaining BTC':>14}  {'Cost USD':>12}  State"
    )
    for lot in lots:
        typer.echo(
            f"{lot.id:>4}  {lot.wallet_id:>6}  {lot.purchase_date}  {lot.amount_btc:>14.8f}  "
            f"{lot.remaining_btc:>14.8f}  {lot.cost_basis_usd:>12.2f}  {lot.state.value}"
        )


@app.command("cost-basis")
def cost_basis(
    transaction_ids: Annotated[list[int], typer.Argument(help="Sent transaction ids")],
    data_dir: DataDirOption = None,
    log_level: LogLevelOption = None,
) -> None:
    """Compute FIFO cost basis and gain/loss for sent transactions."""
    settings = setup_cli(log_level, data_dir)

    async def _compute(service: WalletService) -> list[CostBasisResult]:
        return await service.cost_basis_batch(transaction_ids)

    results = run_with_service(settings, _compute)
    if not results:
        typer.echo("None of the given transactions is a send.")
        return

    for result in results:
        typer.echo(
            f"Transaction {result.transaction_id} ({result.txid[:16]}...): "
            f"{result.amount_btc} BTC sold for ${result.sale_value_usd}"
        )
        typer.echo(f"  Cost basis: ${result.cost_basis_usd}")
        typer.echo(f"  Gain/loss:  ${result.gain_loss_usd}")
        for lot in result.lots:
            typer.echo(
                f"    lot {lot.lot_id} ({lot.purchase_date}): "
                f"{lot.btc_used} BTC at ${lot.cost_basis_used}"
            )
        if result.insufficient_lots:
            typer.echo(f"  WARNING: {result.uncovered_btc} BTC not covered by purchase lots")


@app.command("export")
def export(
    output: Annotated[
        Path | None, typer.Option("--output", "-o", help="Write to file instead of stdout")
    ] = None,
    export_format: Annotated[
        ExportFormat, typer.Option("--format", "-f", help="standard or quickbooks")
    ] = ExportFormat.STANDARD,
    start_date: Annotated[
        datetime | None, typer.Option("--start", formats=DATE_FORMATS, help="First day")
    ] = None,
    end_date: Annotated[
        datetime | None, typer.Option("--end", formats=DATE_FORMATS, help="Last day")
    ] = None,
    wallet_id: Annotated[
        int | None, typer.Option("--wallet", "-w", help="Only this wallet")
    ] = None,
    data_dir: DataDirOption = None,
    log_level: LogLevelOption = None,
) -> None:
    """Export transactions as CSV."""
    settings = setup_cli(log_level, data_dir)

    async def _export(service: WalletService) -> str:
        return await service.export(
            export_format, wallet_id, as_date(start_date), as_date(end_date)
        )

    text = run_with_service(settings, _export)
    if output is None:
        typer.echo(text)
        return
    output.write_text(text if text.endswith("\n") else text + "\n", encoding="utf-8")
    typer.echo(f"Exported to {output}")
