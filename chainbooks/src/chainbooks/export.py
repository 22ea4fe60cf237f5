"""
CSV export of stored transactions.

Two layouts are supported:
- standard: one row per transaction with BTC amounts, USD values and, for
  sends, the FIFO cost basis and gain/loss.
- quickbooks: Date/Description/Debit/Credit journal lines. A send with cost
  basis becomes three lines (expense, asset at cost, capital gain or loss),
  a send without cost basis two lines, receives and self transfers one.

Cost basis is computed through the ledger for every send in the export
(oldest first), so exporting also records lot consumption for sends that
had none yet.
"""

from __future__ import annotations

import csv
import io
from collections.abc import Sequence
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum

from loguru import logger

from chainbooks.errors import LedgerError, NothingToExport
from chainbooks.ledger import CostBasisLedger, CostBasisResult
from chainbooks.store import StoredTransaction
from chainbooks.wallet.models import TxType


class ExportFormat(str, Enum):
    STANDARD = "standard"
    QUICKBOOKS = "quickbooks"


STANDARD_FIELDS = [
    "date",
    "type",
    "txid",
    "amount_btc",
    "usd_value",
    "fee_btc",
    "fee_usd",
    "exchange_rate",
    "category",
    "memo",
    "cost_basis_usd",
    "gain_loss_usd",
]

QUICKBOOKS_HEADER = "Date,Description,Debit,Credit"


async def collect_cost_basis(
    ledger: CostBasisLedger, transactions: Sequence[StoredTransaction]
) -> dict[int, CostBasisResult]:
    """
    Cost basis for each send, keyed by transaction id.

    A send the ledger cannot cover is left out and exported without cost
    basis instead of failing the whole export.
    """
    results: dict[int, CostBasisResult] = {}
    sent = sorted(
        (tx for tx in transactions if tx.tx_type == TxType.SENT),
        key=lambda tx: (tx.timestamp, tx.id),
    )
    for tx in sent:
        try:
            results[tx.id] = await ledger.compute_cost_basis(tx)
        except LedgerError as e:
            logger.warning(f"Exporting transaction {tx.id} without cost basis: {e}")
    return results


def _money(value: Decimal) -> str:
    return f"{value:.2f}"


def write_standard_csv(
    transactions: Sequence[StoredTransaction],
    cost_basis: dict[int, CostBasisResult],
) -> str:
    out = io.StringIO()
    writer = csv.DictWriter(out, fieldnames=STANDARD_FIELDS, lineterminator="\n")
    writer.writeheader()
    for tx in transactions:
        result = cost_basis.get(tx.id)
        writer.writerow(
            {
                "date": tx.timestamp.astimezone(UTC).isoformat(),
                "type": tx.tx_type.value,
                "txid": tx.txid,
                "amount_btc": f"{tx.amount_btc:.8f}",
                "usd_value": _money(tx.usd_value),
                "fee_btc": f"{tx.fee_btc:.8f}",
                "fee_usd": _money(tx.fee_usd),
                "exchange_rate": _money(tx.exchange_rate),
                "category": tx.category or "",
                "memo": tx.memo or "",
                "cost_basis_usd": _money(result.cost_basis_usd) if result else "",
                "gain_loss_usd": _money(result.gain_loss_usd) if result else "",
            }
        )
    return out.getvalue()


def _journal_line(
    day: str, description: str, debit: Decimal | None = None, credit: Decimal | None = None
) -> str:
    escaped = description.replace('"', '""')
    debit_str = _money(debit) if debit is not None else ""
    credit_str = _money(credit) if credit is not None else ""
    return f'{day},"{escaped}",{debit_str},{credit_str}'


def _describe(base: str, tx: StoredTransaction, with_category: bool = True) -> str:
    description = base
    if with_category and tx.category:
        description += f" - {tx.category}"
    if tx.memo:
        description += f" ({tx.memo})"
    return description


def write_quickbooks_csv(
    transactions: Sequence[StoredTransaction],
    cost_basis: dict[int, CostBasisResult],
) -> str:
    # QuickBooks accepts only a debit or a credit per line, never both
    lines = [QUICKBOOKS_HEADER]
    for tx in transactions:
        day = tx.timestamp.astimezone(UTC).strftime("%m/%d/%Y")
        amount = tx.usd_value

        if tx.tx_type == TxType.RECEIVED:
            lines.append(_journal_line(day, _describe("Bitcoin received", tx), credit=amount))

        elif tx.tx_type == TxType.SENT:
            expense = _describe(
                f"Expense - {tx.category or 'Bitcoin Payment'}", tx, with_category=False
            )
            lines.append(_journal_line(day, expense, debit=amount))

            result = cost_basis.get(tx.id)
            if result is not None and result.cost_basis_usd > 0:
                lines.append(
                    _journal_line(day, "Bitcoin Asset - Cost Basis", credit=result.cost_basis_usd)
                )
                if result.gain_loss_usd >= 0:
                    lines.append(
                        _journal_line(day, "Capital Gains - Bitcoin", credit=result.gain_loss_usd)
                    )
                else:
                    lines.append(
                        _journal_line(
                            day, "Capital Loss - Bitcoin", debit=abs(result.gain_loss_usd)
                        )
                    )
            else:
                lines.append(_journal_line(day, "Bitcoin Asset", credit=amount))

        else:
            description = _describe("Bitcoin self - Internal Transfer", tx)
            lines.append(_journal_line(day, description, debit=amount))

    return "\n".join(lines)


async def export_transactions(
    ledger: CostBasisLedger,
    transactions: Sequence[StoredTransaction],
    export_format: ExportFormat | str = ExportFormat.STANDARD,
) -> str:
    """
    Render transactions as CSV text in the requested layout.

    Raises:
        NothingToExport: If `transactions` is empty.
    """
    export_format = ExportFormat(export_format)
    if not transactions:
        raise NothingToExport("No transactions found for the selected date range")

    cost_basis = await collect_cost_basis(ledger, transactions)
    if export_format == ExportFormat.QUICKBOOKS:
        text = write_quickbooks_csv(transactions, cost_basis)
    else:
        text = write_standard_csv(transactions, cost_basis)
    logger.info(
        f"Exported {len(transactions)} transactions ({export_format.value}), "
        f"{len(cost_basis)} with cost basis"
    )
    return text


def export_filename(export_format: ExportFormat | str, now: datetime | None = None) -> str:
    now = now or datetime.now(UTC)
    prefix = "transactions-export"
    if ExportFormat(export_format) == ExportFormat.QUICKBOOKS:
        prefix = "quickbooks-export"
    return f"{prefix}-{int(now.timestamp() * 1000)}.csv"
