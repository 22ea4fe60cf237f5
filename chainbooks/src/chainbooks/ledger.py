"""
FIFO cost basis ledger.

Purchase lots move forward only: Available -> PartiallyConsumed -> Exhausted.
A disposal (sent transaction) consumes the oldest lots first, ordered by
(purchase_date, id). Consumption is planned in memory and committed in one
store transaction together with per-lot consumption records, so a computation
either happens completely or leaves no trace. Once committed, asking again
for the same transaction returns the recorded result.

All consumption and lot edits for a wallet are serialized by a per-wallet
asyncio.Lock.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from datetime import UTC, date
from decimal import Decimal

from loguru import logger
from pydantic import BaseModel

from chaincore.bitcoin import quantize_btc, quantize_usd
from chaincore.constants import MIN_BTC_AMOUNT
from chaincore.models import ShortfallPolicy
from chainbooks.errors import (
    InsufficientLots,
    InvalidLotEdit,
    LotLocked,
    NotADisposal,
)
from chainbooks.rates import utc_today
from chainbooks.store import (
    CostBasisRecord,
    LedgerStore,
    LotConsumption,
    LotState,
    PurchaseLot,
    StoredTransaction,
)
from chainbooks.wallet.models import TxType


class ConsumedLot(BaseModel):
    lot_id: int
    purchase_date: date | None
    btc_used: Decimal
    cost_basis_used: Decimal


class CostBasisResult(BaseModel):
    transaction_id: int
    txid: str
    tx_type: TxType
    amount_btc: Decimal
    sale_value_usd: Decimal
    cost_basis_usd: Decimal
    gain_loss_usd: Decimal
    lots: list[ConsumedLot]
    amount_matched_btc: Decimal
    uncovered_btc: Decimal = Decimal(0)
    insufficient_lots: bool = False


class LotEditResult(BaseModel):
    lot: PurchaseLot
    warning: str | None = None


class CostBasisLedger:
    def __init__(
        self,
        store: LedgerStore,
        shortfall_policy: ShortfallPolicy = ShortfallPolicy.REJECT,
        today: Callable[[], date] = utc_today,
    ):
        self.store = store
        self.shortfall_policy = ShortfallPolicy(shortfall_policy)
        self.today = today
        self._locks: dict[int, asyncio.Lock] = {}

    def _lock_for(self, wallet_id: int) -> asyncio.Lock:
        lock = self._locks.get(wallet_id)
        if lock is None:
            lock = self._locks[wallet_id] = asyncio.Lock()
        return lock

    # =========================================================================
    # Cost basis
    # =========================================================================

    async def compute_cost_basis(self, transaction: StoredTransaction) -> CostBasisResult:
        """
        Compute (or return the recorded) FIFO cost basis of a sent transaction.

        Raises:
            NotADisposal: If the transaction is not of type sent.
            InsufficientLots: Under the reject policy, when the wallet's lots
                cannot cover the amount. No lot is touched in that case.
        """
        if transaction.tx_type != TxType.SENT:
            raise NotADisposal(
                f"Transaction {transaction.id} is {transaction.tx_type.value}, not sent"
            )

        async with self._lock_for(transaction.wallet_id):
            if self.store.cost_basis_record(transaction.id) is not None:
                return self._recorded_result(transaction)

            need = transaction.amount_btc
            plan: list[tuple[PurchaseLot, Decimal, Decimal]] = []
            for lot in self.store.list_lots(transaction.wallet_id):
                if need <= 0:
                    break
                if lot.remaining_btc <= 0:
                    continue
                used = min(lot.remaining_btc, need)
                plan.append((lot, used, used * lot.price_per_btc))
                need -= used

            if need > 0:
                available = transaction.amount_btc - need
                if self.shortfall_policy == ShortfallPolicy.REJECT:
                    logger.warning(
                        f"Cannot cover transaction {transaction.id}: "
                        f"{need} BTC short of {transaction.amount_btc} BTC"
                    )
                    raise InsufficientLots(transaction.id, transaction.amount_btc, available)
                logger.warning(
                    f"Transaction {transaction.id}: {need} BTC not covered by lots, "
                    "using zero cost basis for the remainder"
                )

            with self.store.transaction() as state:
                for lot, used, cost in plan:
                    lot.remaining_btc -= used
                    state.consumptions.append(
                        LotConsumption(
                            transaction_id=transaction.id,
                            lot_id=lot.id,
                            btc_used=used,
                            cost_basis_used=cost,
                        )
                    )
                state.cost_basis.append(
                    CostBasisRecord(transaction_id=transaction.id, uncovered_btc=need)
                )

            result = self._recorded_result(transaction)
            logger.info(
                f"Cost basis for transaction {transaction.id}: ${result.cost_basis_usd} "
                f"from {len(plan)} lots, gain/loss ${result.gain_loss_usd}"
            )
            return result

    async def compute_many(
        self, transactions: Iterable[StoredTransaction]
    ) -> list[CostBasisResult]:
        """Cost basis for every sent transaction, oldest first; others are skipped."""
        sent = sorted(
            (tx for tx in transactions if tx.tx_type == TxType.SENT),
            key=lambda tx: (tx.timestamp, tx.id),
        )
        return [await self.compute_cost_basis(tx) for tx in sent]

    def _recorded_result(self, transaction: StoredTransaction) -> CostBasisResult:
        consumptions = self.store.consumptions_for(transaction.id)
        record = self.store.cost_basis_record(transaction.id)
        uncovered = record.uncovered_btc if record is not None else Decimal(0)

        lots = []
        for c in consumptions:
            purchase_date = next(
                (lot.purchase_date for lot in self.store.state.lots if lot.id == c.lot_id), None
            )
            lots.append(
                ConsumedLot(
                    lot_id=c.lot_id,
                    purchase_date=purchase_date,
                    btc_used=c.btc_used,
                    cost_basis_used=quantize_usd(c.cost_basis_used),
                )
            )

        cost_basis = quantize_usd(sum((c.cost_basis_used for c in consumptions), Decimal(0)))
        return CostBasisResult(
            transaction_id=transaction.id,
            txid=transaction.txid,
            tx_type=transaction.tx_type,
            amount_btc=transaction.amount_btc,
            sale_value_usd=transaction.usd_value,
            cost_basis_usd=cost_basis,
            gain_loss_usd=transaction.usd_value - cost_basis,
            lots=lots,
            amount_matched_btc=sum((c.btc_used for c in consumptions), Decimal(0)),
            uncovered_btc=uncovered,
            insufficient_lots=uncovered > 0,
        )

    # =========================================================================
    # Lot management
    # =========================================================================

    def _validate_lot_fields(
        self, amount_btc: Decimal, cost_basis_usd: Decimal, purchase_date: date
    ) -> None:
        if amount_btc < MIN_BTC_AMOUNT:
            raise InvalidLotEdit(f"Lot amount must be at least {MIN_BTC_AMOUNT} BTC")
        if cost_basis_usd < 0:
            raise InvalidLotEdit("Lot cost basis cannot be negative")
        if purchase_date > self.today():
            raise InvalidLotEdit(f"Purchase date {purchase_date} is in the future")

    def create_lot(
        self,
        wallet_id: int,
        amount_btc: Decimal,
        cost_basis_usd: Decimal,
        purchase_date: date,
        source: str | None = None,
        source_txid: str | None = None,
    ) -> PurchaseLot:
        self.store.get_wallet(wallet_id)
        amount_btc = quantize_btc(Decimal(amount_btc))
        cost_basis_usd = Decimal(cost_basis_usd)
        self._validate_lot_fields(amount_btc, cost_basis_usd, purchase_date)

        with self.store.transaction() as state:
            lot = PurchaseLot(
                id=self.store.next_id("lot"),
                wallet_id=wallet_id,
                amount_btc=amount_btc,
                cost_basis_usd=cost_basis_usd,
                remaining_btc=amount_btc,
                purchase_date=purchase_date,
                source=source,
                source_txid=source_txid,
            )
            state.lots.append(lot)
        logger.info(
            f"Created lot {lot.id}: {amount_btc} BTC for ${cost_basis_usd} on {purchase_date}"
        )
        return lot

    def lot_from_received(self, transaction: StoredTransaction) -> PurchaseLot | None:
        """
        Create the lot for a received transaction, valued at its USD value.

        Returns None when the transaction already produced a lot.
        """
        if transaction.tx_type != TxType.RECEIVED:
            raise ValueError(f"Transaction {transaction.id} is not a receive")
        if self.store.lot_for_source(transaction.wallet_id, transaction.txid) is not None:
            return None
        if transaction.amount_btc < MIN_BTC_AMOUNT:
            return None
        return self.create_lot(
            wallet_id=transaction.wallet_id,
            amount_btc=transaction.amount_btc,
            cost_basis_usd=transaction.usd_value,
            purchase_date=transaction.timestamp.astimezone(UTC).date(),
            source="received",
            source_txid=transaction.txid,
        )

    async def edit_lot(
        self,
        lot_id: int,
        *,
        amount_btc: Decimal | None = None,
        cost_basis_usd: Decimal | None = None,
        purchase_date: date | None = None,
        source: str | None = None,
    ) -> LotEditResult:
        """
        Edit a lot that has not been exhausted.

        Editing a partially consumed lot is allowed but returns a warning:
        results already computed from it keep the old values. A new amount
        keeps the consumed quantity, so it cannot drop below it.

        Raises:
            LotLocked: If the lot is exhausted.
            InvalidLotEdit: If the new values are invalid.
        """
        wallet_id = self.store.get_lot(lot_id).wallet_id
        async with self._lock_for(wallet_id):
            lot = self.store.get_lot(lot_id)
            if lot.state == LotState.EXHAUSTED:
                raise LotLocked(f"Lot {lot_id} is exhausted and can no longer be edited")

            consumed = lot.consumed_btc
            new_amount = lot.amount_btc
            if amount_btc is not None:
                new_amount = quantize_btc(Decimal(amount_btc))
            new_cost = lot.cost_basis_usd
            if cost_basis_usd is not None:
                new_cost = Decimal(cost_basis_usd)
            new_date = purchase_date or lot.purchase_date
            self._validate_lot_fields(new_amount, new_cost, new_date)
            if new_amount < consumed:
                raise InvalidLotEdit(
                    f"Lot {lot_id} already had {consumed} BTC consumed, "
                    f"amount cannot be set to {new_amount}"
                )

            warning = None
            if lot.state == LotState.PARTIALLY_CONSUMED:
                warning = (
                    f"Lot {lot_id} is partially consumed ({consumed} BTC); "
                    "cost basis already computed from it is not recalculated"
                )
                logger.warning(warning)

            updated = PurchaseLot.model_validate(
                {
                    **lot.model_dump(),
                    "amount_btc": new_amount,
                    "remaining_btc": new_amount - consumed,
                    "cost_basis_usd": new_cost,
                    "purchase_date": new_date,
                    "source": source if source is not None else lot.source,
                }
            )
            with self.store.transaction() as state:
                state.lots = [updated if item.id == lot_id else item for item in state.lots]
            return LotEditResult(lot=updated, warning=warning)

    async def delete_lot(self, lot_id: int, force: bool = False) -> None:
        """
        Delete a lot. Exhausted lots are never deleted; partially consumed
        lots only with `force`.
        """
        wallet_id = self.store.get_lot(lot_id).wallet_id
        async with self._lock_for(wallet_id):
            lot = self.store.get_lot(lot_id)
            if lot.state == LotState.EXHAUSTED:
                raise LotLocked(f"Lot {lot_id} is exhausted and cannot be deleted")
            if lot.state == LotState.PARTIALLY_CONSUMED and not force:
                raise LotLocked(
                    f"Lot {lot_id} is partially consumed; pass force to delete it anyway"
                )
            with self.store.transaction() as state:
                state.lots = [item for item in state.lots if item.id != lot_id]
            logger.info(f"Deleted lot {lot_id}")
