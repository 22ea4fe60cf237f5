"""
Base blockchain backend interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from chaincore.models import NetworkType
from chainbooks.events import EventSink


@dataclass(frozen=True)
class TxInput:
    value: int
    address: str | None = None  # None for coinbase or non-standard prevouts


@dataclass(frozen=True)
class TxOutput:
    value: int
    address: str | None = None  # None for OP_RETURN and non-standard scripts


@dataclass(frozen=True)
class TxStatus:
    confirmed: bool
    block_height: int | None = None
    block_time: int | None = None


@dataclass(frozen=True)
class RawTransaction:
    """Transaction as reported by an Esplora-compatible indexer."""

    txid: str
    inputs: tuple[TxInput, ...]
    outputs: tuple[TxOutput, ...]
    fee: int
    status: TxStatus = field(default_factory=lambda: TxStatus(confirmed=False))

    @classmethod
    def from_esplora(cls, data: dict[str, Any]) -> RawTransaction:
        """Build from an Esplora `/address/{a}/txs` entry."""
        inputs = []
        for vin in data.get("vin", []):
            prevout = vin.get("prevout") or {}
            inputs.append(
                TxInput(
                    value=int(prevout.get("value", 0)),
                    address=prevout.get("scriptpubkey_address"),
                )
            )
        outputs = tuple(
            TxOutput(value=int(vout.get("value", 0)), address=vout.get("scriptpubkey_address"))
            for vout in data.get("vout", [])
        )
        status = data.get("status") or {}
        confirmed = bool(status.get("confirmed", False))
        return cls(
            txid=data["txid"],
            inputs=tuple(inputs),
            outputs=outputs,
            fee=int(data.get("fee", 0)),
            status=TxStatus(
                confirmed=confirmed,
                block_height=status.get("block_height") if confirmed else None,
                block_time=status.get("block_time") if confirmed else None,
            ),
        )


class BlockchainBackend(ABC):
    """
    Abstract read-only blockchain backend.
    Implementations return the confirmed transaction history of addresses.
    """

    @abstractmethod
    async def fetch_address_transactions(
        self,
        address: str,
        network: NetworkType,
        on_event: EventSink | None = None,
    ) -> list[RawTransaction]:
        """Get all confirmed transactions touching an address"""

    @abstractmethod
    async def fetch_address_batch(
        self,
        addresses: list[str],
        network: NetworkType,
        concurrency: int | None = None,
        on_event: EventSink | None = None,
    ) -> dict[str, list[RawTransaction]]:
        """Get transactions for many addresses; failed addresses map to []"""

    async def close(self) -> None:
        """Release network resources"""
