"""
BTC/USD exchange rates and transaction valuation.

Historical daily rates come from Coinbase's spot endpoint; today's rate is
taken from CoinGecko with Coinbase spot as fallback. Providers raise
ExchangeRateUnavailable for any failure, and the ValuationJoiner lets that
fail the whole batch so no transaction is ever stored without a value.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx
from loguru import logger

from chaincore.bitcoin import quantize_usd
from chaincore.settings import RatesSettings
from chainbooks.errors import ExchangeRateUnavailable
from chainbooks.store import LedgerStore
from chainbooks.wallet.models import ParsedTransaction, ValuedTransaction


def utc_today() -> date:
    return datetime.now(UTC).date()


def _positive_decimal(value: Any, source: str) -> Decimal:
    try:
        rate = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ExchangeRateUnavailable(f"{source} returned a non-numeric price: {value!r}") from e
    if not rate.is_finite() or rate <= 0:
        raise ExchangeRateUnavailable(f"{source} returned an invalid price: {value!r}")
    return rate


class ExchangeRateProvider(ABC):
    """Source of BTC/USD rates keyed by UTC calendar date."""

    @abstractmethod
    async def get_rate(self, day: date) -> Decimal:
        """USD per BTC on `day`; raises ExchangeRateUnavailable on failure"""

    async def close(self) -> None:
        """Release network resources"""


class CoinbaseRateProvider(ExchangeRateProvider):
    """
    Coinbase daily spot prices, CoinGecko for the current day.

    Requests are spaced at least `min_interval` seconds apart.
    """

    def __init__(
        self,
        coinbase_url: str = "https://api.coinbase.com/v2/prices/BTC-USD/spot",
        coingecko_url: str = "https://api.coingecko.com/api/v3/simple/price",
        coingecko_api_key: str | None = None,
        min_interval: float = 1.2,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        today: Callable[[], date] = utc_today,
    ):
        self.coinbase_url = coinbase_url
        self.coingecko_url = coingecko_url
        self.coingecko_api_key = coingecko_api_key
        self.min_interval = min_interval
        self.today = today
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._throttle_lock = asyncio.Lock()
        self._last_request = 0.0

    @classmethod
    def from_settings(
        cls, settings: RatesSettings, transport: httpx.AsyncBaseTransport | None = None
    ) -> CoinbaseRateProvider:
        api_key = settings.coingecko_api_key
        return cls(
            coinbase_url=settings.coinbase_url,
            coingecko_url=settings.coingecko_url,
            coingecko_api_key=api_key.get_secret_value() if api_key else None,
            min_interval=settings.min_interval,
            timeout=settings.timeout,
            transport=transport,
        )

    async def _throttle(self) -> None:
        async with self._throttle_lock:
            wait = self.min_interval - (time.monotonic() - self._last_request)
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_request = time.monotonic()

    async def _get_json(self, url: str, source: str, **kwargs: Any) -> Any:
        await self._throttle()
        try:
            response = await self.client.get(url, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            raise ExchangeRateUnavailable(f"{source} request failed: {e}") from e
        except ValueError as e:
            raise ExchangeRateUnavailable(f"{source} returned malformed JSON") from e

    async def _coinbase_price(self, day: date | None) -> Decimal:
        params = {"date": day.isoformat()} if day is not None else None
        data = await self._get_json(self.coinbase_url, "Coinbase", params=params)
        try:
            amount = data["data"]["amount"]
        except (KeyError, TypeError) as e:
            raise ExchangeRateUnavailable("Coinbase response has no data.amount") from e
        return _positive_decimal(amount, "Coinbase")

    async def _coingecko_price(self) -> Decimal:
        headers = {"x-cg-demo-api-key": self.coingecko_api_key} if self.coingecko_api_key else None
        data = await self._get_json(
            self.coingecko_url,
            "CoinGecko",
            params={"ids": "bitcoin", "vs_currencies": "usd"},
            headers=headers,
        )
        try:
            price = data["bitcoin"]["usd"]
        except (KeyError, TypeError) as e:
            raise ExchangeRateUnavailable("CoinGecko response has no bitcoin.usd") from e
        return _positive_decimal(price, "CoinGecko")

    async def get_rate(self, day: date) -> Decimal:
        today = self.today()
        if day > today:
            raise ExchangeRateUnavailable(f"No exchange rate for future date {day}")

        if day == today:
            try:
                return await self._coingecko_price()
            except ExchangeRateUnavailable as e:
                logger.warning(f"CoinGecko price unavailable ({e}), falling back to Coinbase spot")
                return await self._coinbase_price(None)

        rate = await self._coinbase_price(day)
        logger.debug(f"BTC/USD on {day}: {rate}")
        return rate

    async def close(self) -> None:
        await self.client.aclose()


class CachedRateProvider(ExchangeRateProvider):
    """
    Persistent per-date cache in front of another provider.

    Past dates are cached forever; today's rate is always fetched fresh.
    """

    def __init__(
        self,
        provider: ExchangeRateProvider,
        store: LedgerStore,
        today: Callable[[], date] = utc_today,
    ):
        self.provider = provider
        self.store = store
        self.today = today

    async def get_rate(self, day: date) -> Decimal:
        cached = self.store.get_cached_rate(day)
        if cached is not None:
            return cached
        rate = await self.provider.get_rate(day)
        if day < self.today():
            self.store.set_cached_rate(day, rate)
        return rate

    async def close(self) -> None:
        await self.provider.close()


class ValuationJoiner:
    """Attaches USD values to a batch of parsed transactions."""

    def __init__(self, provider: ExchangeRateProvider):
        self.provider = provider

    async def attach_usd_values(
        self, parsed_txs: Sequence[ParsedTransaction]
    ) -> list[ValuedTransaction]:
        """
        Value every transaction at its UTC date's rate, one lookup per date.

        Raises:
            ExchangeRateUnavailable: If any date has no rate. Nothing is
                returned for the batch in that case.
        """
        rates: dict[date, Decimal] = {}
        for day in sorted({tx.timestamp.astimezone(UTC).date() for tx in parsed_txs}):
            try:
                rates[day] = await self.provider.get_rate(day)
            except ExchangeRateUnavailable as e:
                logger.error(f"Valuation aborted, no BTC/USD rate for {day}: {e}")
                raise

        valued = []
        for tx in parsed_txs:
            rate = rates[tx.timestamp.astimezone(UTC).date()]
            valued.append(
                ValuedTransaction(
                    **tx.model_dump(),
                    usd_value=quantize_usd(tx.amount_btc * rate),
                    fee_usd=quantize_usd(tx.fee_btc * rate),
                    exchange_rate=rate,
                )
            )
        logger.debug(f"Valued {len(valued)} transactions using {len(rates)} daily rates")
        return valued
