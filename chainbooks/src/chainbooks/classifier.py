"""
Transaction classification from a wallet's point of view.

A transaction spending wallet coins is either a payment (sent) or an
internal move (self). The heuristic below separates the two: an internal
move sends almost everything back to the wallet, losing only the fee.
"""

from __future__ import annotations

from collections.abc import Iterable, Set
from datetime import UTC, datetime

from loguru import logger

from chaincore.constants import (
    CONFIRMED_DEPTH,
    FEE_TOLERANCE_MULTIPLIER,
    MIN_FEE_TOLERANCE_SATS,
    SELF_TRANSFER_MAX_EXTERNAL_SHARE,
    SELF_TRANSFER_MIN_OUTPUT_RATIO,
)
from chainbooks.backends.base import RawTransaction
from chainbooks.errors import ClassificationError
from chainbooks.wallet.models import ParsedTransaction, TxType


def _is_self_transfer(
    total_in: int, total_out_wallet: int, total_out_external: int, fee: int
) -> bool:
    fee_tolerance = max(FEE_TOLERANCE_MULTIPLIER * fee, MIN_FEE_TOLERANCE_SATS)
    output_ratio = total_out_wallet / total_in if total_in > 0 else 0.0
    return (
        abs(total_in - total_out_wallet - fee) <= fee_tolerance
        and output_ratio > SELF_TRANSFER_MIN_OUTPUT_RATIO
        and total_out_external < SELF_TRANSFER_MAX_EXTERNAL_SHARE * total_out_wallet
    )


def classify(raw_tx: RawTransaction, wallet_addresses: Set[str]) -> ParsedTransaction:
    """
    Interpret a raw transaction against the wallet's full address set.

    Args:
        raw_tx: Transaction as returned by the indexer
        wallet_addresses: Every address of the wallet, both chains

    Returns:
        ParsedTransaction with type, amount (sats) and fee

    Raises:
        ClassificationError: If no input or output belongs to the wallet
    """
    wallet_inputs = [i for i in raw_tx.inputs if i.address in wallet_addresses]
    wallet_outputs = [o for o in raw_tx.outputs if o.address in wallet_addresses]
    external_outputs = [o for o in raw_tx.outputs if o.address not in wallet_addresses]

    is_sent = bool(wallet_inputs)
    is_received = bool(wallet_outputs)

    total_in = sum(i.value for i in wallet_inputs)
    total_out_wallet = sum(o.value for o in wallet_outputs)
    total_out_external = sum(o.value for o in external_outputs)
    fee = raw_tx.fee

    if is_sent and is_received:
        if _is_self_transfer(total_in, total_out_wallet, total_out_external, fee):
            tx_type, amount = TxType.SELF, 0
        elif total_out_external > 0:
            tx_type, amount = TxType.SENT, total_out_external
        else:
            tx_type, amount = TxType.SELF, abs(total_in - total_out_wallet - fee)
    elif is_sent:
        tx_type = TxType.SENT
        amount = total_out_external if total_out_external > 0 else total_in - fee
    elif is_received:
        tx_type, amount = TxType.RECEIVED, total_out_wallet
    else:
        raise ClassificationError(f"Transaction {raw_tx.txid} does not touch the wallet")

    if raw_tx.status.block_time is not None:
        timestamp = datetime.fromtimestamp(raw_tx.status.block_time, tz=UTC)
    else:
        logger.warning(f"Transaction {raw_tx.txid} has no block time, using current time")
        timestamp = datetime.now(UTC)

    return ParsedTransaction(
        txid=raw_tx.txid,
        timestamp=timestamp,
        tx_type=tx_type,
        amount_sats=amount,
        fee_sats=fee,
        confirmations=CONFIRMED_DEPTH if raw_tx.status.confirmed else 0,
        block_height=raw_tx.status.block_height,
    )


def classify_all(
    raw_txs: Iterable[RawTransaction], wallet_addresses: Set[str]
) -> list[ParsedTransaction]:
    parsed = [classify(tx, wallet_addresses) for tx in raw_txs]
    counts = {t: sum(1 for p in parsed if p.tx_type == t) for t in TxType}
    summary = ", ".join(f"{c} {t.value}" for t, c in counts.items())
    logger.debug(f"Classified {len(parsed)} transactions: {summary}")
    return parsed
