"""
Gap-limit address discovery for HD wallets.

Scans the receive chain and then the change chain of an account key,
fetching address histories in batches until `gap_limit` consecutive unused
addresses have been seen. All state of one scan lives in a ScanContext that
is created per call and dropped when the scan ends.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from loguru import logger

from chaincore.constants import (
    DEFAULT_FETCH_CONCURRENCY,
    DEFAULT_GAP_LIMIT,
    DEFAULT_MAX_ADDRESSES_PER_CHAIN,
    DEFAULT_SCAN_BATCH_SIZE,
)
from chaincore.models import NetworkType
from chaincore.settings import ScanSettings
from chainbooks.backends.base import BlockchainBackend, RawTransaction
from chainbooks.errors import InvalidKeyFormat
from chainbooks.events import EventSink, ScanEvent, ScanEventType, emit
from chainbooks.wallet.address import derive_addresses, parse_extended_key, validate_address
from chainbooks.wallet.bip32 import ExtendedPublicKey, is_extended_key
from chainbooks.wallet.models import Chain, DerivedAddress

AddressDeriver = Callable[[ExtendedPublicKey, int, int, Chain], list[DerivedAddress]]


@dataclass
class ChainScanStats:
    chain: Chain
    addresses_scanned: int = 0
    used_addresses: int = 0
    last_used_index: int | None = None
    hit_address_cap: bool = False


@dataclass
class ScanContext:
    """Mutable state owned by a single scan invocation."""

    on_event: EventSink | None = None
    transactions: dict[str, RawTransaction] = field(default_factory=dict)
    addresses: set[str] = field(default_factory=set)
    chains: list[ChainScanStats] = field(default_factory=list)
    failed_addresses: list[str] = field(default_factory=list)

    def record(self, event: ScanEvent) -> None:
        if event.event_type == ScanEventType.ADDRESS_FAILED and event.address:
            self.failed_addresses.append(event.address)
        if self.on_event is not None:
            self.on_event(event)

    def merge(self, transactions: list[RawTransaction]) -> None:
        for tx in transactions:
            self.transactions.setdefault(tx.txid, tx)


@dataclass(frozen=True)
class ScanResult:
    transactions: list[RawTransaction]
    addresses: frozenset[str]
    chains: list[ChainScanStats]
    failed_addresses: list[str]

    @property
    def addresses_scanned(self) -> int:
        return sum(c.addresses_scanned for c in self.chains) or len(self.addresses)


class GapLimitScanner:
    """
    Discovers the used addresses of a wallet and collects their transactions.
    """

    def __init__(
        self,
        backend: BlockchainBackend,
        gap_limit: int = DEFAULT_GAP_LIMIT,
        batch_size: int = DEFAULT_SCAN_BATCH_SIZE,
        max_addresses: int = DEFAULT_MAX_ADDRESSES_PER_CHAIN,
        concurrency: int = DEFAULT_FETCH_CONCURRENCY,
        derive: AddressDeriver = derive_addresses,
    ):
        self.backend = backend
        self.gap_limit = gap_limit
        self.batch_size = batch_size
        self.max_addresses = max_addresses
        self.concurrency = concurrency
        self.derive = derive

    @classmethod
    def from_settings(cls, backend: BlockchainBackend, settings: ScanSettings) -> GapLimitScanner:
        return cls(
            backend,
            gap_limit=settings.gap_limit,
            batch_size=settings.batch_size,
            max_addresses=settings.max_addresses,
            concurrency=settings.concurrency,
        )

    async def scan_wallet(
        self,
        wallet_data: str,
        network: NetworkType,
        on_event: EventSink | None = None,
    ) -> ScanResult:
        """
        Collect every confirmed transaction of a single address or an account key.

        Raises:
            InvalidKeyFormat: Malformed key, or a key for another network.
            InvalidAddress: Malformed single address.
            IndexerError: Only for single-address wallets; HD scans degrade
                failed addresses to empty histories instead.
        """
        ctx = ScanContext(on_event=on_event)
        wallet_data = wallet_data.strip()
        network = NetworkType(network)

        if is_extended_key(wallet_data):
            key = parse_extended_key(wallet_data)
            if key.network != network:
                raise InvalidKeyFormat(
                    f"'{key.version.prefix}' key belongs to {key.network.value}, "
                    f"not {network.value}"
                )
            emit(
                ctx.record,
                ScanEventType.SCAN_STARTED,
                f"Scanning {key.version.prefix} wallet on {network.value} "
                f"(gap limit {self.gap_limit}, batch {self.batch_size})",
            )
            for chain in (Chain.EXTERNAL, Chain.INTERNAL):
                await self._scan_chain(ctx, key, chain, network)
        else:
            validate_address(wallet_data, network)
            emit(ctx.record, ScanEventType.SCAN_STARTED, f"Scanning address {wallet_data}")
            ctx.addresses.add(wallet_data)
            ctx.merge(
                await self.backend.fetch_address_transactions(wallet_data, network, ctx.record)
            )

        transactions = sorted(
            ctx.transactions.values(),
            key=lambda tx: (tx.status.block_time or 0, tx.txid),
        )
        emit(
            ctx.record,
            ScanEventType.SCAN_COMPLETED,
            f"Scan complete: {len(transactions)} transactions across "
            f"{len(ctx.addresses)} addresses",
            data={"transactions": len(transactions), "addresses": len(ctx.addresses)},
        )
        return ScanResult(
            transactions=transactions,
            addresses=frozenset(ctx.addresses),
            chains=ctx.chains,
            failed_addresses=ctx.failed_addresses,
        )

    async def _scan_chain(
        self,
        ctx: ScanContext,
        key: ExtendedPublicKey,
        chain: Chain,
        network: NetworkType,
    ) -> None:
        stats = ChainScanStats(chain=chain)
        ctx.chains.append(stats)
        consecutive_empty = 0
        index = 0

        while consecutive_empty < self.gap_limit:
            if index >= self.max_addresses:
                stats.hit_address_cap = True
                emit(
                    ctx.record,
                    ScanEventType.ADDRESS_CAP_REACHED,
                    f"Chain {int(chain)} reached the {self.max_addresses} address cap, "
                    "later addresses are not scanned",
                    chain=int(chain),
                )
                break

            count = min(self.batch_size, self.max_addresses - index)
            derived = self.derive(key, count, index, chain)
            addresses = [d.address for d in derived]
            ctx.addresses.update(addresses)

            histories = await self.backend.fetch_address_batch(
                addresses, network, self.concurrency, ctx.record
            )

            # The gap counter runs through the whole batch; the limit is
            # checked only once the batch is done.
            for derived_address in derived:
                transactions = histories.get(derived_address.address, [])
                if transactions:
                    consecutive_empty = 0
                    stats.used_addresses += 1
                    stats.last_used_index = derived_address.index
                    ctx.merge(transactions)
                else:
                    consecutive_empty += 1

            index += count
            stats.addresses_scanned = index
            emit(
                ctx.record,
                ScanEventType.BATCH_COMPLETED,
                f"Chain {int(chain)}: scanned up to index {index - 1}, "
                f"{consecutive_empty} consecutive unused",
                chain=int(chain),
                data={"scanned": index, "consecutive_empty": consecutive_empty},
            )

        if consecutive_empty >= self.gap_limit:
            emit(
                ctx.record,
                ScanEventType.GAP_REACHED,
                f"Chain {int(chain)}: gap limit reached after {stats.addresses_scanned} addresses",
                chain=int(chain),
            )
        logger.debug(
            f"Chain {int(chain)}: {stats.used_addresses} used of {stats.addresses_scanned} scanned"
        )
