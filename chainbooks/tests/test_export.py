"""
Tests for CSV export in standard and QuickBooks layouts.
"""

from __future__ import annotations

import csv
import io
from datetime import UTC, date, datetime
from decimal import Decimal

import pytest

from chainbooks.errors import NothingToExport
from chainbooks.export import ExportFormat, export_filename, export_transactions
from chainbooks.ledger import CostBasisLedger
from chainbooks.store import LedgerStore
from chainbooks.wallet.models import TxType


@pytest.fixture
def history(ledger: CostBasisLedger, store: LedgerStore, wallet_id: int, add_stored_tx):
    """Salary received, rent paid from it, then a consolidation."""
    ledger.create_lot(wallet_id, Decimal("0.5"), Decimal("20000"), date(2024, 1, 1))
    received = add_stored_tx(
        wallet_id, TxType.RECEIVED, "0.5", "20000", day=date(2024, 1, 1), category="Salary"
    )
    sent = add_stored_tx(
        wallet_id,
        TxType.SENT,
        "0.2",
        "12000",
        day=date(2024, 3, 1),
        fee_sats=5_000,
        category="Rent",
        memo='Rent "March"',
    )
    moved = add_stored_tx(wallet_id, TxType.SELF, "0", "0", day=date(2024, 4, 1))
    return [received, sent, moved]


class TestQuickBooksExport:
    @pytest.mark.asyncio
    async def test_journal_lines(self, ledger: CostBasisLedger, history) -> None:
        text = await export_transactions(ledger, history, ExportFormat.QUICKBOOKS)

        assert text.split("\n") == [
            "Date,Description,Debit,Credit",
            '01/01/2024,"Bitcoin received - Salary",,20000.00',
            '03/01/2024,"Expense - Rent (Rent ""March"")",12000.00,',
            '03/01/2024,"Bitcoin Asset - Cost Basis",,8000.00',
            '03/01/2024,"Capital Gains - Bitcoin",,4000.00',
            '04/01/2024,"Bitcoin self - Internal Transfer",0.00,',
        ]

    @pytest.mark.asyncio
    async def test_capital_loss_is_debit(
        self, ledger: CostBasisLedger, wallet_id: int, add_stored_tx
    ) -> None:
        ledger.create_lot(wallet_id, Decimal("1"), Decimal("60000"), date(2024, 1, 1))
        sent = add_stored_tx(wallet_id, TxType.SENT, "0.1", "4000")

        text = await export_transactions(ledger, [sent], "quickbooks")

        lines = text.split("\n")
        assert lines[1] == '03/01/2024,"Expense - Bitcoin Payment",4000.00,'
        assert lines[3] == '03/01/2024,"Capital Loss - Bitcoin",2000.00,'

    @pytest.mark.asyncio
    async def test_uncovered_send_credits_asset_at_value(
        self, ledger: CostBasisLedger, wallet_id: int, add_stored_tx
    ) -> None:
        """A send the lots cannot cover is exported without cost basis lines."""
        sent = add_stored_tx(wallet_id, TxType.SENT, "0.1", "4000")

        text = await export_transactions(ledger, [sent], ExportFormat.QUICKBOOKS)

        assert text.split("\n")[1:] == [
            '03/01/2024,"Expense - Bitcoin Payment",4000.00,',
            '03/01/2024,"Bitcoin Asset",,4000.00',
        ]


class TestStandardExport:
    @pytest.mark.asyncio
    async def test_rows(self, ledger: CostBasisLedger, history) -> None:
        text = await export_transactions(ledger, history, ExportFormat.STANDARD)

        rows = list(csv.DictReader(io.StringIO(text)))
        assert [r["type"] for r in rows] == ["received", "sent", "self"]

        sent = rows[1]
        assert sent["date"] == "2024-03-01T12:00:00+00:00"
        assert sent["amount_btc"] == "0.20000000"
        assert sent["fee_btc"] == "0.00005000"
        assert sent["usd_value"] == "12000.00"
        assert sent["exchange_rate"] == "50000.00"
        assert sent["memo"] == 'Rent "March"'
        assert sent["cost_basis_usd"] == "8000.00"
        assert sent["gain_loss_usd"] == "4000.00"
        assert rows[0]["cost_basis_usd"] == ""
        assert rows[0]["category"] == "Salary"

    @pytest.mark.asyncio
    async def test_export_records_cost_basis(
        self, ledger: CostBasisLedger, store: LedgerStore, history
    ) -> None:
        sent = history[1]
        assert store.cost_basis_record(sent.id) is None

        await export_transactions(ledger, history)

        assert store.cost_basis_record(sent.id) is not None
        assert store.list_lots()[0].remaining_btc == Decimal("0.3")

    @pytest.mark.asyncio
    async def test_nothing_to_export(self, ledger: CostBasisLedger) -> None:
        with pytest.raises(NothingToExport):
            await export_transactions(ledger, [])


class TestExportFilename:
    def test_names(self) -> None:
        now = datetime(2024, 6, 1, tzinfo=UTC)
        millis = int(now.timestamp() * 1000)

        assert export_filename(ExportFormat.STANDARD, now) == f"transactions-export-{millis}.csv"
        assert export_filename("quickbooks", now) == f"quickbooks-export-{millis}.csv"
