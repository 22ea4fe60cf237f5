"""
JSON-file persistence for wallets, transactions, purchase lots and rates.

The whole ledger is a single pydantic model written atomically (temp file,
then rename). Mutations go through `LedgerStore.transaction()`, which either
saves all changes made inside the block or restores the previous state.
Nested blocks join the outermost one: nothing reaches the file until it ends.
"""

from __future__ import annotations

import json
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Literal

from loguru import logger
from pydantic import BaseModel, Field, ValidationError, model_validator

from chaincore.bitcoin import sats_to_btc
from chaincore.models import NetworkType
from chainbooks.errors import NotFound
from chainbooks.wallet.models import TxType


def _now() -> datetime:
    return datetime.now(UTC)


class WalletKind(str, Enum):
    ADDRESS = "address"
    EXTENDED_KEY = "extended_key"


class LotState(str, Enum):
    AVAILABLE = "available"
    PARTIALLY_CONSUMED = "partially_consumed"
    EXHAUSTED = "exhausted"


class FetchStats(BaseModel):
    fetched: int = 0
    added: int = 0
    skipped: int = 0
    lots_created: int = 0


class ScanReport(BaseModel):
    """Outcome of the most recent scan of a wallet."""

    status: Literal["running", "completed", "failed"] = "running"
    started_at: datetime = Field(default_factory=_now)
    finished_at: datetime | None = None
    stats: FetchStats | None = None
    addresses_scanned: int = 0
    failed_addresses: list[str] = Field(default_factory=list)
    error: str | None = None


class WalletRecord(BaseModel):
    id: int
    name: str
    wallet_data: str
    kind: WalletKind
    network: NetworkType
    created_at: datetime = Field(default_factory=_now)
    is_active: bool = True
    archived_at: datetime | None = None
    last_scan: ScanReport | None = None


class StoredTransaction(BaseModel):
    id: int
    wallet_id: int
    txid: str
    timestamp: datetime
    tx_type: TxType
    amount_sats: int
    fee_sats: int
    confirmations: int
    block_height: int | None = None
    usd_value: Decimal
    fee_usd: Decimal
    exchange_rate: Decimal
    category: str | None = None
    memo: str | None = None
    created_at: datetime = Field(default_factory=_now)

    @property
    def amount_btc(self) -> Decimal:
        return sats_to_btc(self.amount_sats)

    @property
    def fee_btc(self) -> Decimal:
        return sats_to_btc(self.fee_sats)


class PurchaseLot(BaseModel):
    """A quantity of BTC with a known USD cost basis."""

    id: int
    wallet_id: int
    amount_btc: Decimal
    cost_basis_usd: Decimal
    remaining_btc: Decimal
    purchase_date: date
    source: str | None = None
    source_txid: str | None = None
    created_at: datetime = Field(default_factory=_now)

    @model_validator(mode="after")
    def _check_remaining(self) -> PurchaseLot:
        if self.remaining_btc < 0 or self.remaining_btc > self.amount_btc:
            raise ValueError(
                f"remaining_btc {self.remaining_btc} outside "
                f"[0, {self.amount_btc}] for lot {self.id}"
            )
        return self

    @property
    def consumed_btc(self) -> Decimal:
        return self.amount_btc - self.remaining_btc

    @property
    def price_per_btc(self) -> Decimal:
        return self.cost_basis_usd / self.amount_btc

    @property
    def state(self) -> LotState:
        if self.remaining_btc == 0:
            return LotState.EXHAUSTED
        if self.remaining_btc < self.amount_btc:
            return LotState.PARTIALLY_CONSUMED
        return LotState.AVAILABLE


class LotConsumption(BaseModel):
    """BTC taken from one lot by one disposal."""

    transaction_id: int
    lot_id: int
    btc_used: Decimal
    cost_basis_used: Decimal
    created_at: datetime = Field(default_factory=_now)


class CostBasisRecord(BaseModel):
    """Disposal totals kept alongside the per-lot consumptions."""

    transaction_id: int
    uncovered_btc: Decimal = Decimal(0)


class LedgerState(BaseModel):
    version: int = 1
    next_ids: dict[str, int] = Field(default_factory=dict)
    wallets: list[WalletRecord] = Field(default_factory=list)
    transactions: list[StoredTransaction] = Field(default_factory=list)
    lots: list[PurchaseLot] = Field(default_factory=list)
    consumptions: list[LotConsumption] = Field(default_factory=list)
    cost_basis: list[CostBasisRecord] = Field(default_factory=list)
    rates: dict[str, Decimal] = Field(default_factory=dict)


class LedgerStore:
    """
    Ledger persistence. With `path=None` the store lives in memory only.
    """

    def __init__(self, path: Path | None = None):
        self.path = path
        self.state = LedgerState()
        self._lock = threading.RLock()
        self._depth = 0
        if path is not None:
            self.load()

    def load(self) -> None:
        if self.path is None or not self.path.exists():
            logger.debug(f"No ledger file at {self.path}, starting empty")
            self.state = LedgerState()
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            self.state = LedgerState.model_validate(data)
        except (json.JSONDecodeError, ValidationError) as e:
            logger.error(f"Failed to load ledger from {self.path}: {e}")
            raise
        logger.debug(
            f"Loaded ledger: {len(self.state.wallets)} wallets, "
            f"{len(self.state.transactions)} transactions, {len(self.state.lots)} lots"
        )

    def save(self) -> None:
        """Write the ledger atomically (write to temp, then rename)."""
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        try:
            tmp_path.write_text(self.state.model_dump_json(indent=2), encoding="utf-8")
            tmp_path.replace(self.path)
        except OSError as e:
            logger.error(f"Failed to save ledger: {e}")
            tmp_path.unlink(missing_ok=True)
            raise

    @contextmanager
    def transaction(self) -> Iterator[LedgerState]:
        """
        Group mutations: saved together on success, rolled back on any exception.

        Only the outermost block snapshots and saves. An exception inside a
        nested block propagates to it and rolls back the whole group.
        """
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self.state
                finally:
                    self._depth -= 1
                return

            snapshot = self.state.model_copy(deep=True)
            self._depth = 1
            try:
                yield self.state
                self.save()
            except BaseException:
                self.state = snapshot
                raise
            finally:
                self._depth = 0

    def next_id(self, kind: str) -> int:
        value = self.state.next_ids.get(kind, 1)
        self.state.next_ids[kind] = value + 1
        return value

    # Wallets

    def list_wallets(self, include_archived: bool = True) -> list[WalletRecord]:
        return [w for w in self.state.wallets if include_archived or w.is_active]

    def get_wallet(self, wallet_id: int) -> WalletRecord:
        for wallet in self.state.wallets:
            if wallet.id == wallet_id:
                return wallet
        raise NotFound(f"Wallet {wallet_id} not found")

    def find_wallet(self, wallet_data: str) -> WalletRecord | None:
        return next((w for w in self.state.wallets if w.wallet_data == wallet_data), None)

    def add_wallet(
        self, name: str, wallet_data: str, kind: WalletKind, network: NetworkType
    ) -> WalletRecord:
        with self.transaction():
            wallet = WalletRecord(
                id=self.next_id("wallet"),
                name=name,
                wallet_data=wallet_data,
                kind=kind,
                network=network,
            )
            self.state.wallets.append(wallet)
        return wallet

    def set_scan_report(self, wallet_id: int, report: ScanReport) -> None:
        with self.transaction():
            self.get_wallet(wallet_id).last_scan = report

    # Transactions

    def get_transaction(self, transaction_id: int) -> StoredTransaction:
        for tx in self.state.transactions:
            if tx.id == transaction_id:
                return tx
        raise NotFound(f"Transaction {transaction_id} not found")

    def list_transactions(
        self,
        wallet_id: int | None = None,
        tx_type: TxType | None = None,
        start: date | None = None,
        end: date | None = None,
    ) -> list[StoredTransaction]:
        result = [
            tx
            for tx in self.state.transactions
            if (wallet_id is None or tx.wallet_id == wallet_id)
            and (tx_type is None or tx.tx_type == tx_type)
            and (start is None or tx.timestamp.date() >= start)
            and (end is None or tx.timestamp.date() <= end)
        ]
        return sorted(result, key=lambda tx: (tx.timestamp, tx.id))

    def known_txids(self, wallet_id: int) -> set[str]:
        return {tx.txid for tx in self.state.transactions if tx.wallet_id == wallet_id}

    # Lots

    def get_lot(self, lot_id: int) -> PurchaseLot:
        for lot in self.state.lots:
            if lot.id == lot_id:
                return lot
        raise NotFound(f"Purchase lot {lot_id} not found")

    def list_lots(self, wallet_id: int | None = None) -> list[PurchaseLot]:
        lots = [lot for lot in self.state.lots if wallet_id is None or lot.wallet_id == wallet_id]
        return sorted(lots, key=lambda lot: (lot.purchase_date, lot.id))

    def lot_for_source(self, wallet_id: int, txid: str) -> PurchaseLot | None:
        return next(
            (
                lot
                for lot in self.state.lots
                if lot.wallet_id == wallet_id and lot.source_txid == txid
            ),
            None,
        )

    # Consumptions

    def consumptions_for(self, transaction_id: int) -> list[LotConsumption]:
        return [c for c in self.state.consumptions if c.transaction_id == transaction_id]

    def cost_basis_record(self, transaction_id: int) -> CostBasisRecord | None:
        return next(
            (r for r in self.state.cost_basis if r.transaction_id == transaction_id), None
        )

    # Rates

    def get_cached_rate(self, day: date) -> Decimal | None:
        return self.state.rates.get(day.isoformat())

    def set_cached_rate(self, day: date, rate: Decimal) -> None:
        with self.transaction():
            self.state.rates[day.isoformat()] = rate


def open_store(data_dir: Path) -> LedgerStore:
    """Open the ledger in a data directory."""
    from chaincore.paths import get_ledger_path

    return LedgerStore(get_ledger_path(data_dir))
