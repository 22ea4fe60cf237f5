"""
Wallet accounting service.

Wires the pipeline together: scan -> classify -> value -> persist for
imports, and the cost basis ledger for disposals. Both the HTTP API and the
CLI go through this class.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

from loguru import logger

from chaincore.models import NetworkType
from chaincore.settings import ChainbooksSettings
from chainbooks.backends.base import BlockchainBackend
from chainbooks.backends.mempool import MempoolBackend
from chainbooks.classifier import classify_all
from chainbooks.errors import DuplicateWallet, InvalidKeyFormat, NotFound, WalletArchived
from chainbooks.events import EventSink, ScanEvent, ScanEventLog
from chainbooks.export import ExportFormat, export_transactions
from chainbooks.ledger import CostBasisLedger, CostBasisResult, LotEditResult
from chainbooks.rates import (
    CachedRateProvider,
    CoinbaseRateProvider,
    ExchangeRateProvider,
    ValuationJoiner,
)
from chainbooks.store import (
    FetchStats,
    LedgerStore,
    PurchaseLot,
    ScanReport,
    StoredTransaction,
    WalletKind,
    WalletRecord,
    open_store,
)
from chainbooks.wallet.address import parse_extended_key, validate_address
from chainbooks.wallet.bip32 import is_extended_key
from chainbooks.wallet.models import TxType
from chainbooks.wallet.sync import GapLimitScanner


class WalletService:
    def __init__(
        self,
        store: LedgerStore,
        scanner: GapLimitScanner,
        joiner: ValuationJoiner,
        ledger: CostBasisLedger,
        auto_lots_from_received: bool = True,
        default_network: NetworkType = NetworkType.MAINNET,
    ):
        self.store = store
        self.scanner = scanner
        self.joiner = joiner
        self.ledger = ledger
        self.auto_lots_from_received = auto_lots_from_received
        self.default_network = default_network
        self._scan_tasks: dict[int, asyncio.Task[FetchStats]] = {}

    @classmethod
    def from_settings(
        cls,
        settings: ChainbooksSettings,
        store: LedgerStore | None = None,
        backend: BlockchainBackend | None = None,
        rate_provider: ExchangeRateProvider | None = None,
    ) -> WalletService:
        store = store or open_store(settings.get_data_dir())
        backend = backend or MempoolBackend.from_settings(
            settings.indexer, concurrency=settings.scan.concurrency
        )
        rate_provider = rate_provider or CachedRateProvider(
            CoinbaseRateProvider.from_settings(settings.rates), store
        )
        return cls(
            store=store,
            scanner=GapLimitScanner.from_settings(backend, settings.scan),
            joiner=ValuationJoiner(rate_provider),
            ledger=CostBasisLedger(store, settings.ledger.shortfall_policy),
            auto_lots_from_received=settings.ledger.auto_lots_from_received,
            default_network=settings.network,
        )

    # =========================================================================
    # Wallets
    # =========================================================================

    def add_wallet(
        self,
        wallet_data: str,
        name: str | None = None,
        network: NetworkType | str | None = None,
    ) -> WalletRecord:
        """
        Register a single address or an account-level extended public key.

        For extended keys the network comes from the key's prefix; a
        conflicting explicit network is rejected.

        Raises:
            InvalidKeyFormat, InvalidAddress: If the input does not validate.
            DuplicateWallet: If the same input is already registered.
        """
        wallet_data = wallet_data.strip()
        requested = NetworkType(network) if network is not None else None

        if is_extended_key(wallet_data):
            key = parse_extended_key(wallet_data)
            if requested is not None and requested != key.network:
                raise InvalidKeyFormat(
                    f"'{key.version.prefix}' keys are {key.network.value} keys, "
                    f"not {requested.value}"
                )
            kind, resolved = WalletKind.EXTENDED_KEY, key.network
        else:
            info = validate_address(wallet_data, requested)
            wallet_data = info.address
            kind, resolved = WalletKind.ADDRESS, info.network

        if self.store.find_wallet(wallet_data) is not None:
            raise DuplicateWallet("This wallet is already registered")

        label = name or f"{kind.value.replace('_', ' ')} {wallet_data[:8]}..."
        wallet = self.store.add_wallet(label, wallet_data, kind, resolved)
        logger.info(f"Registered wallet {wallet.id} ({kind.value}, {resolved.value})")
        return wallet

    def list_wallets(self, include_archived: bool = False) -> list[WalletRecord]:
        return self.store.list_wallets(include_archived)

    def get_wallet(self, wallet_id: int) -> WalletRecord:
        return self.store.get_wallet(wallet_id)

    def archive_wallet(self, wallet_id: int) -> tuple[WalletRecord, bool]:
        """
        Archive a wallet: it stops being listed and scanned, but its
        transactions and lots stay in the ledger.

        Returns the wallet and whether this call archived it (False when it
        already was).
        """
        with self.store.transaction():
            wallet = self.store.get_wallet(wallet_id)
            if not wallet.is_active:
                return wallet, False
            wallet.is_active = False
            wallet.archived_at = datetime.now(UTC)
        logger.info(f"Archived wallet {wallet_id}")
        return wallet, True

    def _active_wallet(self, wallet_id: int) -> WalletRecord:
        wallet = self.store.get_wallet(wallet_id)
        if not wallet.is_active:
            raise WalletArchived(f"Wallet {wallet_id} is archived")
        return wallet

    # =========================================================================
    # Imports
    # =========================================================================

    async def fetch_transactions(
        self, wallet_id: int, on_event: EventSink | None = None
    ) -> FetchStats:
        """
        Scan a wallet and persist every transaction not stored yet.

        Classification and valuation happen before anything is written, and
        the new transactions and lots are saved in one store transaction, so
        a failure at any step leaves the stored ledger unchanged. The scan
        report is marked failed whatever the error was.

        Raises:
            WalletArchived: If the wallet has been archived.
        """
        wallet = self._active_wallet(wallet_id)
        report = ScanReport()
        self.store.set_scan_report(wallet_id, report)
        events = ScanEventLog()

        def record(event: ScanEvent) -> None:
            events(event)
            if on_event is not None:
                on_event(event)

        try:
            stats = await self._import(wallet, report, record)
        except (Exception, asyncio.CancelledError) as e:
            logger.error(f"Scan of wallet {wallet_id} failed: {e!r}")
            self._fail_scan(wallet_id, report, str(e) or type(e).__name__)
            raise

        logger.info(
            f"Wallet {wallet_id}: fetched {stats.fetched}, added {stats.added}, "
            f"skipped {stats.skipped}, {len(events)} scan events"
        )
        return stats

    async def _import(
        self, wallet: WalletRecord, report: ScanReport, on_event: EventSink
    ) -> FetchStats:
        result = await self.scanner.scan_wallet(
            wallet.wallet_data, wallet.network, on_event=on_event
        )
        parsed = classify_all(result.transactions, result.addresses)
        known = self.store.known_txids(wallet.id)
        new = [tx for tx in parsed if tx.txid not in known]
        valued = await self.joiner.attach_usd_values(new)

        stats = FetchStats(fetched=len(parsed))
        with self.store.transaction() as state:
            # Re-read inside the write in case another scan stored some meanwhile
            known = self.store.known_txids(wallet.id)
            for tx in valued:
                if tx.txid in known:
                    continue
                stored = StoredTransaction(
                    id=self.store.next_id("transaction"),
                    wallet_id=wallet.id,
                    **tx.model_dump(),
                )
                state.transactions.append(stored)
                known.add(tx.txid)
                stats.added += 1
                if self.auto_lots_from_received and stored.tx_type == TxType.RECEIVED:
                    if self.ledger.lot_from_received(stored) is not None:
                        stats.lots_created += 1
            stats.skipped = stats.fetched - stats.added

            self.store.get_wallet(wallet.id).last_scan = report.model_copy(
                update={
                    "status": "completed",
                    "finished_at": datetime.now(UTC),
                    "stats": stats,
                    "addresses_scanned": result.addresses_scanned,
                    "failed_addresses": result.failed_addresses,
                }
            )
        return stats

    def _fail_scan(self, wallet_id: int, report: ScanReport, error: str) -> None:
        failed = report.model_copy(
            update={"status": "failed", "finished_at": datetime.now(UTC), "error": error}
        )
        try:
            self.store.set_scan_report(wallet_id, failed)
        except OSError as e:
            # Memory only when the ledger file cannot be written
            logger.warning(f"Could not save the failed scan report of wallet {wallet_id}: {e}")
            self.store.get_wallet(wallet_id).last_scan = failed

    def start_fetch(self, wallet_id: int) -> asyncio.Task[FetchStats]:
        """
        Run a scan as a background task, or return the one already running
        for this wallet. The task outlives any caller that stops waiting.
        """
        task = self._scan_tasks.get(wallet_id)
        if task is not None and not task.done():
            return task

        self._active_wallet(wallet_id)
        task = asyncio.create_task(
            self.fetch_transactions(wallet_id), name=f"scan-wallet-{wallet_id}"
        )
        self._scan_tasks[wallet_id] = task
        task.add_done_callback(lambda t: self._scan_finished(wallet_id, t))
        return task

    def _scan_finished(self, wallet_id: int, task: asyncio.Task[FetchStats]) -> None:
        if self._scan_tasks.get(wallet_id) is task:
            del self._scan_tasks[wallet_id]
        if task.cancelled():
            logger.warning(f"Scan of wallet {wallet_id} was cancelled")
        elif task.exception() is not None:
            logger.debug(f"Background scan of wallet {wallet_id} ended with an error")

    # =========================================================================
    # Transactions and cost basis
    # =========================================================================

    def list_transactions(
        self,
        wallet_id: int | None = None,
        tx_type: TxType | None = None,
        start: date | None = None,
        end: date | None = None,
    ) -> list[StoredTransaction]:
        return self.store.list_transactions(wallet_id, tx_type, start, end)

    def get_transaction(self, transaction_id: int) -> StoredTransaction:
        return self.store.get_transaction(transaction_id)

    def update_transaction(
        self, transaction_id: int, category: str | None = None, memo: str | None = None
    ) -> StoredTransaction:
        with self.store.transaction():
            tx = self.store.get_transaction(transaction_id)
            if category is not None:
                tx.category = category or None
            if memo is not None:
                tx.memo = memo or None
        return tx

    async def cost_basis(self, transaction_id: int) -> CostBasisResult:
        return await self.ledger.compute_cost_basis(self.store.get_transaction(transaction_id))

    async def cost_basis_batch(self, transaction_ids: Iterable[int]) -> list[CostBasisResult]:
        """
        Cost basis for the requested transactions that are sends, in
        chronological order so older disposals consume older lots first.
        Unknown ids are skipped like non-sent transactions.
        """
        transactions: list[StoredTransaction] = []
        missing: list[int] = []
        for transaction_id in dict.fromkeys(transaction_ids):
            try:
                transactions.append(self.store.get_transaction(transaction_id))
            except NotFound:
                missing.append(transaction_id)
        if missing:
            logger.debug(f"Skipping unknown transactions {missing}")
        skipped = [tx.id for tx in transactions if tx.tx_type != TxType.SENT]
        if skipped:
            logger.debug(f"No cost basis for non-sent transactions {skipped}")
        return await self.ledger.compute_many(transactions)

    # =========================================================================
    # Purchase lots
    # =========================================================================

    def list_purchases(self, wallet_id: int | None = None) -> list[PurchaseLot]:
        return self.store.list_lots(wallet_id)

    def add_purchase(
        self,
        wallet_id: int,
        amount_btc: Decimal,
        cost_basis_usd: Decimal,
        purchase_date: date,
        source: str | None = None,
    ) -> PurchaseLot:
        return self.ledger.create_lot(wallet_id, amount_btc, cost_basis_usd, purchase_date, source)

    async def update_purchase(self, lot_id: int, **changes: Any) -> LotEditResult:
        return await self.ledger.edit_lot(lot_id, **changes)

    async def delete_purchase(self, lot_id: int, force: bool = False) -> None:
        await self.ledger.delete_lot(lot_id, force=force)

    # =========================================================================
    # Export
    # =========================================================================

    async def export(
        self,
        export_format: ExportFormat | str = ExportFormat.STANDARD,
        wallet_id: int | None = None,
        start: date | None = None,
        end: date | None = None,
    ) -> str:
        if wallet_id is not None:
            self.store.get_wallet(wallet_id)
        transactions = self.store.list_transactions(wallet_id, start=start, end=end)
        return await export_transactions(self.ledger, transactions, export_format)

    async def close(self) -> None:
        for task in list(self._scan_tasks.values()):
            task.cancel()
        await self.scanner.backend.close()
        await self.joiner.provider.close()

