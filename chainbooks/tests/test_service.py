"""
Tests for WalletService: registration, imports, cost basis and export.
"""

from __future__ import annotations

import asyncio
from datetime import date
from decimal import Decimal
from pathlib import Path
from unittest.mock import patch

import pytest

from chaincore.models import NetworkType, ShortfallPolicy
from chaincore.settings import ChainbooksSettings
from chainbooks.errors import (
    DuplicateWallet,
    ExchangeRateUnavailable,
    InvalidAddress,
    InvalidKeyFormat,
    NotFound,
    NothingToExport,
    WalletArchived,
)
from chainbooks.events import ScanEventLog, ScanEventType
from chainbooks.ledger import CostBasisLedger
from chainbooks.rates import ValuationJoiner
from chainbooks.service import WalletService
from chainbooks.store import LedgerStore, WalletKind
from chainbooks.wallet.models import TxType
from chainbooks.wallet.sync import GapLimitScanner

RECEIVE_0 = "bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu"
CHANGE_0 = "bc1q8c6fshw2dlwun7ekn9qwf37cu2rn755upcp6el"


@pytest.fixture
def funded_backend(fake_backend, make_raw_tx, external_address):
    """Receive 0.5 BTC in January, pay 0.2 BTC with change in March."""
    received = make_raw_tx(
        "aa" * 32,
        inputs=[(external_address, 50_010_000)],
        outputs=[(RECEIVE_0, 50_000_000)],
        fee=10_000,
        day=date(2024, 1, 10),
    )
    sent = make_raw_tx(
        "bb" * 32,
        inputs=[(RECEIVE_0, 50_000_000)],
        outputs=[(external_address, 20_000_000), (CHANGE_0, 29_990_000)],
        fee=10_000,
        day=date(2024, 3, 1),
    )
    fake_backend.add(RECEIVE_0, received, sent)
    fake_backend.add(CHANGE_0, sent)
    return fake_backend


class TestAddWallet:
    def test_extended_key(self, service: WalletService, test_zpub: str) -> None:
        wallet = service.add_wallet(test_zpub, name="Savings")

        assert wallet.kind == WalletKind.EXTENDED_KEY
        assert wallet.network == NetworkType.MAINNET
        assert wallet.name == "Savings"
        assert service.list_wallets() == [wallet]

    def test_single_address_default_name(
        self, service: WalletService, external_address: str
    ) -> None:
        wallet = service.add_wallet(external_address.upper())

        assert wallet.kind == WalletKind.ADDRESS
        assert wallet.wallet_data == external_address
        assert wallet.name == "address bc1qw508..."

    def test_duplicate(self, service: WalletService, test_zpub: str) -> None:
        service.add_wallet(test_zpub)
        with pytest.raises(DuplicateWallet):
            service.add_wallet(f"  {test_zpub}  ")

    def test_key_network_conflict(self, service: WalletService, test_zpub: str) -> None:
        with pytest.raises(InvalidKeyFormat):
            service.add_wallet(test_zpub, network="testnet")

    def test_address_network_conflict(
        self, service: WalletService, external_address: str
    ) -> None:
        with pytest.raises(InvalidAddress):
            service.add_wallet(external_address, network=NetworkType.TESTNET)

    def test_unknown_wallet(self, service: WalletService) -> None:
        with pytest.raises(NotFound):
            service.get_wallet(7)


class TestArchiveWallet:
    def test_archive_hides_wallet_and_keeps_history(
        self, service: WalletService, wallet_id: int, add_stored_tx
    ) -> None:
        add_stored_tx(wallet_id, TxType.RECEIVED, "0.1", "5000")

        wallet, changed = service.archive_wallet(wallet_id)

        assert changed
        assert not wallet.is_active
        assert wallet.archived_at is not None
        assert service.list_wallets() == []
        assert service.list_wallets(include_archived=True) == [wallet]
        assert len(service.list_transactions(wallet_id)) == 1

    def test_archive_twice(self, service: WalletService, wallet_id: int) -> None:
        service.archive_wallet(wallet_id)
        wallet, changed = service.archive_wallet(wallet_id)
        assert not changed
        assert not wallet.is_active

    def test_archive_unknown_wallet(self, service: WalletService) -> None:
        with pytest.raises(NotFound):
            service.archive_wallet(42)

    def test_archived_wallet_still_counts_as_duplicate(
        self, service: WalletService, external_address: str
    ) -> None:
        wallet = service.add_wallet(external_address)
        service.archive_wallet(wallet.id)
        with pytest.raises(DuplicateWallet):
            service.add_wallet(external_address)

    @pytest.mark.asyncio
    async def test_archived_wallet_is_not_scanned(
        self, service: WalletService, funded_backend, test_zpub: str
    ) -> None:
        wallet = service.add_wallet(test_zpub)
        service.archive_wallet(wallet.id)

        with pytest.raises(WalletArchived):
            await service.fetch_transactions(wallet.id)
        with pytest.raises(WalletArchived):
            service.start_fetch(wallet.id)

        assert funded_backend.fetched == []
        assert service.get_wallet(wallet.id).last_scan is None


class TestFetchTransactions:
    @pytest.mark.asyncio
    async def test_import_classifies_values_and_creates_lots(
        self, service: WalletService, funded_backend, test_zpub: str
    ) -> None:
        wallet = service.add_wallet(test_zpub)

        stats = await service.fetch_transactions(wallet.id)

        assert (stats.fetched, stats.added, stats.skipped, stats.lots_created) == (2, 2, 0, 1)
        received, sent = service.list_transactions(wallet.id)
        assert received.tx_type == TxType.RECEIVED
        assert received.usd_value == Decimal("25000.00")
        assert sent.tx_type == TxType.SENT
        assert sent.amount_btc == Decimal("0.2")
        assert sent.fee_usd == Decimal("5.00")

        (lot,) = service.list_purchases(wallet.id)
        assert lot.amount_btc == Decimal("0.5")
        assert lot.cost_basis_usd == Decimal("25000.00")
        assert lot.source_txid == received.txid

        report = service.get_wallet(wallet.id).last_scan
        assert report.status == "completed"
        assert report.stats == stats

    @pytest.mark.asyncio
    async def test_rescan_is_idempotent(
        self, service: WalletService, funded_backend, test_zpub: str
    ) -> None:
        wallet = service.add_wallet(test_zpub)
        await service.fetch_transactions(wallet.id)

        stats = await service.fetch_transactions(wallet.id)

        assert (stats.fetched, stats.added, stats.skipped, stats.lots_created) == (2, 0, 2, 0)
        assert len(service.list_transactions(wallet.id)) == 2
        assert len(service.list_purchases(wallet.id)) == 1

    @pytest.mark.asyncio
    async def test_missing_rate_stores_nothing(
        self, service: WalletService, funded_backend, fake_rates, test_zpub: str
    ) -> None:
        wallet = service.add_wallet(test_zpub)
        fake_rates.missing.add(date(2024, 3, 1))

        with pytest.raises(ExchangeRateUnavailable):
            await service.fetch_transactions(wallet.id)

        assert service.list_transactions(wallet.id) == []
        assert service.list_purchases(wallet.id) == []
        report = service.get_wallet(wallet.id).last_scan
        assert report.status == "failed"
        assert "2024-03-01" in report.error

    @pytest.mark.asyncio
    async def test_auto_lots_disabled(
        self, service: WalletService, funded_backend, test_zpub: str
    ) -> None:
        service.auto_lots_from_received = False
        wallet = service.add_wallet(test_zpub)

        stats = await service.fetch_transactions(wallet.id)

        assert stats.lots_created == 0
        assert service.list_purchases() == []

    @pytest.mark.asyncio
    async def test_events_forwarded(
        self, service: WalletService, funded_backend, test_zpub: str
    ) -> None:
        wallet = service.add_wallet(test_zpub)
        events = ScanEventLog()

        await service.fetch_transactions(wallet.id, on_event=events)

        assert events.of_type(ScanEventType.SCAN_COMPLETED)

    @pytest.mark.asyncio
    async def test_start_fetch_coalesces(
        self, service: WalletService, funded_backend, test_zpub: str
    ) -> None:
        wallet = service.add_wallet(test_zpub)

        first = service.start_fetch(wallet.id)
        second = service.start_fetch(wallet.id)
        assert first is second

        stats = await first
        assert stats.added == 2
        # Finished tasks are forgotten, the next call starts a new scan
        await asyncio.sleep(0)
        third = service.start_fetch(wallet.id)
        assert third is not first
        assert (await third).added == 0

    @pytest.mark.asyncio
    async def test_start_fetch_unknown_wallet(self, service: WalletService) -> None:
        with pytest.raises(NotFound):
            service.start_fetch(99)


class TestImportFailures:
    @pytest.fixture
    def file_service(
        self, tmp_path: Path, funded_backend, fake_rates
    ) -> tuple[WalletService, LedgerStore]:
        store = LedgerStore(tmp_path / "ledger.json")
        service = WalletService(
            store=store,
            scanner=GapLimitScanner(funded_backend, gap_limit=5, batch_size=5),
            joiner=ValuationJoiner(fake_rates),
            ledger=CostBasisLedger(store, ShortfallPolicy.REJECT),
        )
        return service, store

    @pytest.mark.asyncio
    async def test_failed_save_leaves_no_partial_import_on_disk(
        self, file_service: tuple[WalletService, LedgerStore], test_zpub: str
    ) -> None:
        service, store = file_service
        wallet = service.add_wallet(test_zpub)
        real_save = store.save

        def save_fails_once_both_stored() -> None:
            if len(store.state.transactions) >= 2:
                raise OSError("No space left on device")
            real_save()

        with patch.object(store, "save", side_effect=save_fails_once_both_stored):
            with pytest.raises(OSError):
                await service.fetch_transactions(wallet.id)

        assert service.list_transactions(wallet.id) == []
        assert service.list_purchases() == []
        report = service.get_wallet(wallet.id).last_scan
        assert report.status == "failed"
        assert "No space left" in report.error

        reloaded = LedgerStore(store.path)
        assert reloaded.list_transactions() == []
        assert reloaded.list_lots() == []
        assert reloaded.get_wallet(wallet.id).last_scan.status == "failed"

    @pytest.mark.asyncio
    async def test_unexpected_error_marks_scan_failed(
        self, service: WalletService, funded_backend, test_zpub: str
    ) -> None:
        wallet = service.add_wallet(test_zpub)

        with patch(
            "chainbooks.service.classify_all", side_effect=RuntimeError("unexpected input")
        ):
            with pytest.raises(RuntimeError):
                await service.fetch_transactions(wallet.id)

        report = service.get_wallet(wallet.id).last_scan
        assert report.status == "failed"
        assert report.error == "unexpected input"
        assert report.finished_at is not None
        assert service.list_transactions(wallet.id) == []


class TestCostBasisAndPurchases:
    @pytest.mark.asyncio
    async def test_cost_basis_of_imported_send(
        self, service: WalletService, funded_backend, test_zpub: str
    ) -> None:
        wallet = service.add_wallet(test_zpub)
        await service.fetch_transactions(wallet.id)
        sent = service.list_transactions(wallet.id, tx_type=TxType.SENT)[0]

        result = await service.cost_basis(sent.id)

        # 0.2 of a 0.5 BTC lot bought for $25,000
        assert result.cost_basis_usd == Decimal("10000.00")
        assert result.sale_value_usd == Decimal("10000.00")
        assert result.gain_loss_usd == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_cost_basis_batch_skips_non_sent(
        self, service: WalletService, funded_backend, test_zpub: str
    ) -> None:
        wallet = service.add_wallet(test_zpub)
        await service.fetch_transactions(wallet.id)
        ids = [tx.id for tx in service.list_transactions(wallet.id)]

        results = await service.cost_basis_batch(ids + ids)

        assert len(results) == 1
        assert results[0].tx_type == TxType.SENT

    @pytest.mark.asyncio
    async def test_cost_basis_batch_skips_unknown_ids(
        self, service: WalletService, funded_backend, test_zpub: str
    ) -> None:
        wallet = service.add_wallet(test_zpub)
        await service.fetch_transactions(wallet.id)
        sent = service.list_transactions(wallet.id, tx_type=TxType.SENT)[0]

        results = await service.cost_basis_batch([999, sent.id])

        assert [r.transaction_id for r in results] == [sent.id]

    @pytest.mark.asyncio
    async def test_purchase_lifecycle(self, service: WalletService, wallet_id: int) -> None:
        lot = service.add_purchase(
            wallet_id, Decimal("0.1"), Decimal("4000"), date(2024, 2, 2), "exchange"
        )
        assert service.list_purchases(wallet_id) == [lot]

        edited = await service.update_purchase(lot.id, cost_basis_usd=Decimal("4100"))
        assert edited.lot.cost_basis_usd == Decimal("4100")

        await service.delete_purchase(lot.id)
        assert service.list_purchases(wallet_id) == []

    def test_update_transaction(
        self, service: WalletService, wallet_id: int, add_stored_tx
    ) -> None:
        tx = add_stored_tx(wallet_id, TxType.RECEIVED, "0.1", "5000", category="Gift")

        updated = service.update_transaction(tx.id, memo="birthday")
        assert (updated.category, updated.memo) == ("Gift", "birthday")

        cleared = service.update_transaction(tx.id, category="")
        assert cleared.category is None
        assert service.get_transaction(tx.id).memo == "birthday"


class TestExport:
    @pytest.mark.asyncio
    async def test_export_filters(
        self, service: WalletService, wallet_id: int, add_stored_tx
    ) -> None:
        add_stored_tx(wallet_id, TxType.RECEIVED, "0.1", "5000", day=date(2024, 1, 1))
        add_stored_tx(wallet_id, TxType.RECEIVED, "0.2", "9000", day=date(2024, 2, 1))

        text = await service.export(wallet_id=wallet_id, start=date(2024, 2, 1))

        assert len(text.strip().split("\n")) == 2
        assert "0.20000000" in text

    @pytest.mark.asyncio
    async def test_export_empty_range(self, service: WalletService, wallet_id: int) -> None:
        with pytest.raises(NothingToExport):
            await service.export(wallet_id=wallet_id)

    @pytest.mark.asyncio
    async def test_export_unknown_wallet(self, service: WalletService) -> None:
        with pytest.raises(NotFound):
            await service.export(wallet_id=5)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_close(self, service: WalletService, fake_backend, fake_rates) -> None:
        await service.close()
        assert fake_backend.closed
        assert fake_rates.closed

    @pytest.mark.asyncio
    async def test_from_settings(self, tmp_path, fake_backend, fake_rates) -> None:
        settings = ChainbooksSettings(data_dir=tmp_path)

        service = WalletService.from_settings(
            settings, backend=fake_backend, rate_provider=fake_rates
        )

        assert service.store.path == tmp_path / "ledger.json"
        assert service.scanner.gap_limit == settings.scan.gap_limit
        assert service.ledger.shortfall_policy == settings.ledger.shortfall_policy
        await service.close()
