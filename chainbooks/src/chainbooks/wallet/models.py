"""
Wallet data models.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum, IntEnum

from pydantic import BaseModel, ConfigDict
from pydantic.dataclasses import dataclass

from chaincore.bitcoin import sats_to_btc
from chaincore.models import NetworkType


class Chain(IntEnum):
    """BIP32 branch below the account key."""

    EXTERNAL = 0  # receive addresses
    INTERNAL = 1  # change addresses


class TxType(str, Enum):
    SENT = "sent"
    RECEIVED = "received"
    SELF = "self"


@dataclass(frozen=True)
class DerivedAddress:
    """An address derived from an extended public key."""

    address: str
    network: NetworkType
    chain: Chain
    index: int

    @property
    def path(self) -> str:
        """Relative path below the account key (e.g. 0/5)."""
        return f"{int(self.chain)}/{self.index}"


class ParsedTransaction(BaseModel):
    """A confirmed transaction interpreted from the wallet's point of view."""

    model_config = ConfigDict(frozen=True)

    txid: str
    timestamp: datetime
    tx_type: TxType
    amount_sats: int
    fee_sats: int
    confirmations: int
    block_height: int | None = None

    @property
    def amount_btc(self) -> Decimal:
        return sats_to_btc(self.amount_sats)

    @property
    def fee_btc(self) -> Decimal:
        return sats_to_btc(self.fee_sats)


class ValuedTransaction(ParsedTransaction):
    """ParsedTransaction with USD values at the transaction date's rate."""

    usd_value: Decimal
    fee_usd: Decimal
    exchange_rate: Decimal
