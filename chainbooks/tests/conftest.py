"""
Pytest configuration and fixtures for chainbooks tests.
"""

from __future__ import annotations

from collections.abc import Callable, Generator
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path

import pytest

from chaincore.bitcoin import btc_to_sats
from chaincore.models import NetworkType, ShortfallPolicy
from chaincore.settings import reset_settings
from chainbooks.backends.base import (
    BlockchainBackend,
    RawTransaction,
    TxInput,
    TxOutput,
    TxStatus,
)
from chainbooks.errors import ExchangeRateUnavailable, IndexerError
from chainbooks.events import EventSink
from chainbooks.ledger import CostBasisLedger
from chainbooks.rates import ExchangeRateProvider, ValuationJoiner
from chainbooks.service import WalletService
from chainbooks.store import LedgerStore, StoredTransaction, WalletKind
from chainbooks.wallet.models import TxType
from chainbooks.wallet.sync import GapLimitScanner

# BIP84 test vector account (m/84'/0'/0'), mnemonic "abandon ... about"
TEST_ZPUB = (
    "zpub6rFR7y4Q2AijBEqTUquhVz398htDFrtymD9xYYfG1m4wAcvPhXNfE3EfH1r1ADqtfSdVC"
    "ToUG868RvUUkgDKf31mGDtKsAYz2oz2AGutZYs"
)
# BIP49 test vector account (m/49'/1'/0'), same mnemonic
TEST_UPUB = (
    "upub5EFU65HtV5TeiSHmZZm7FUffBGy8UKeqp7vw43jYbvZPpoVsgU93oac7Wk3u6moKegAEW"
    "tGNF8DehrnHtv21XXEMYRUocHqguyjknFHYfgY"
)

# A fixed "today" keeps date validation and rate caching deterministic
TODAY = date(2024, 6, 1)

EXTERNAL_ADDRESS = "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4"


@pytest.fixture(autouse=True)
def reset_settings_fixture(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> Generator[None, None, None]:
    """Isolate every test from the user's data directory and config."""
    monkeypatch.setenv("CHAINBOOKS_DATA_DIR", str(tmp_path / "chainbooks-data"))
    monkeypatch.delenv("CHAINBOOKS_CONFIG_FILE", raising=False)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def test_zpub() -> str:
    return TEST_ZPUB


@pytest.fixture
def test_upub() -> str:
    return TEST_UPUB


@pytest.fixture
def external_address() -> str:
    """An address that never belongs to the test wallets."""
    return EXTERNAL_ADDRESS


@pytest.fixture
def today() -> date:
    return TODAY


def ts(day: date, hour: int = 12) -> int:
    return int(datetime(day.year, day.month, day.day, hour, tzinfo=UTC).timestamp())


RawTxFactory = Callable[..., RawTransaction]


@pytest.fixture
def make_raw_tx() -> RawTxFactory:
    """
    Build a confirmed RawTransaction.

    Inputs and outputs are (address, sats) pairs.
    """

    def _make(
        txid: str,
        inputs: list[tuple[str | None, int]] | None = None,
        outputs: list[tuple[str | None, int]] | None = None,
        fee: int = 0,
        day: date = date(2024, 3, 1),
        block_height: int = 830_000,
        confirmed: bool = True,
    ) -> RawTransaction:
        return RawTransaction(
            txid=txid,
            inputs=tuple(TxInput(value=v, address=a) for a, v in inputs or []),
            outputs=tuple(TxOutput(value=v, address=a) for a, v in outputs or []),
            fee=fee,
            status=TxStatus(
                confirmed=confirmed,
                block_height=block_height if confirmed else None,
                block_time=ts(day) if confirmed else None,
            ),
        )

    return _make


class FakeBackend(BlockchainBackend):
    """In-memory backend keyed by address."""

    def __init__(self) -> None:
        self.histories: dict[str, list[RawTransaction]] = {}
        self.failing: set[str] = set()
        self.fetched: list[str] = []
        self.closed = False

    def add(self, address: str, *txs: RawTransaction) -> None:
        self.histories.setdefault(address, []).extend(txs)

    async def fetch_address_transactions(
        self,
        address: str,
        network: NetworkType,
        on_event: EventSink | None = None,
    ) -> list[RawTransaction]:
        self.fetched.append(address)
        if address in self.failing:
            raise IndexerError(f"Indexer returned HTTP 500 for {address}")
        return list(self.histories.get(address, []))

    async def fetch_address_batch(
        self,
        addresses: list[str],
        network: NetworkType,
        concurrency: int | None = None,
        on_event: EventSink | None = None,
    ) -> dict[str, list[RawTransaction]]:
        results = {}
        for address in addresses:
            try:
                results[address] = await self.fetch_address_transactions(
                    address, network, on_event
                )
            except IndexerError:
                results[address] = []
        return results

    async def close(self) -> None:
        self.closed = True


class FakeRateProvider(ExchangeRateProvider):
    """Fixed or per-day BTC/USD rates; days listed in `missing` fail."""

    def __init__(self, default: Decimal = Decimal("50000")) -> None:
        self.default = default
        self.rates: dict[date, Decimal] = {}
        self.missing: set[date] = set()
        self.calls: list[date] = []
        self.closed = False

    async def get_rate(self, day: date) -> Decimal:
        self.calls.append(day)
        if day in self.missing:
            raise ExchangeRateUnavailable(f"No exchange rate for {day}")
        return self.rates.get(day, self.default)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def fake_rates() -> FakeRateProvider:
    return FakeRateProvider()


@pytest.fixture
def store() -> LedgerStore:
    """In-memory ledger store."""
    return LedgerStore()


@pytest.fixture
def ledger(store: LedgerStore) -> CostBasisLedger:
    return CostBasisLedger(store, ShortfallPolicy.REJECT, today=lambda: TODAY)


@pytest.fixture
def service(
    store: LedgerStore,
    fake_backend: FakeBackend,
    fake_rates: FakeRateProvider,
    ledger: CostBasisLedger,
) -> WalletService:
    """WalletService wired to in-memory fakes; scans use gap limit 5."""
    scanner = GapLimitScanner(fake_backend, gap_limit=5, batch_size=5, max_addresses=50)
    return WalletService(
        store=store,
        scanner=scanner,
        joiner=ValuationJoiner(fake_rates),
        ledger=ledger,
        auto_lots_from_received=True,
    )


@pytest.fixture
def wallet_id(store: LedgerStore) -> int:
    """A registered single-address wallet with no transactions."""
    wallet = store.add_wallet(
        "Test wallet", EXTERNAL_ADDRESS, WalletKind.ADDRESS, NetworkType.MAINNET
    )
    return wallet.id


StoredTxFactory = Callable[..., StoredTransaction]


@pytest.fixture
def add_stored_tx(store: LedgerStore) -> StoredTxFactory:
    """Insert an already valued transaction straight into the store."""

    def _add(
        wallet_id: int,
        tx_type: TxType,
        amount_btc: str,
        usd_value: str,
        day: date = date(2024, 3, 1),
        fee_sats: int = 0,
        category: str | None = None,
        memo: str | None = None,
    ) -> StoredTransaction:
        with store.transaction() as state:
            tx_id = store.next_id("transaction")
            tx = StoredTransaction(
                id=tx_id,
                wallet_id=wallet_id,
                txid=f"{tx_id:064x}",
                timestamp=datetime(day.year, day.month, day.day, 12, tzinfo=UTC),
                tx_type=tx_type,
                amount_sats=btc_to_sats(amount_btc),
                fee_sats=fee_sats,
                confirmations=6,
                block_height=830_000,
                usd_value=Decimal(usd_value),
                fee_usd=Decimal("0.00"),
                exchange_rate=Decimal("50000"),
                category=category,
                memo=memo,
            )
            state.transactions.append(tx)
        return tx

    return _add
