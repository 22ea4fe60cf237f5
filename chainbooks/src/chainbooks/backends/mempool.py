"""
Mempool.space (Esplora) API blockchain backend.
Works with the public instance or a self-hosted one.
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
from loguru import logger

from chaincore.constants import DEFAULT_FETCH_CONCURRENCY, ESPLORA_PAGE_SIZE
from chaincore.models import NetworkType
from chaincore.settings import IndexerSettings
from chainbooks.backends.base import BlockchainBackend, RawTransaction
from chainbooks.errors import (
    RETRYABLE_INDEXER_ERRORS,
    IndexerError,
    RateLimited,
    RequestTimedOut,
    ServiceUnavailable,
)
from chainbooks.events import EventSink, ScanEventType, emit


class MempoolBackend(BlockchainBackend):
    """
    Blockchain backend using the Esplora REST API.

    Rate limiting (429) and maintenance (503) answers are retried with
    exponential backoff inside the request that hit them, so only the
    coroutine fetching that address waits.
    """

    def __init__(
        self,
        mainnet_url: str = "https://mempool.space/api",
        testnet_url: str = "https://mempool.space/testnet/api",
        timeout: float = 30.0,
        page_size: int = ESPLORA_PAGE_SIZE,
        page_delay: float = 0.15,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        batch_delay: float = 0.5,
        batch_retry_delay: float = 2.0,
        concurrency: int = DEFAULT_FETCH_CONCURRENCY,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_urls = {
            NetworkType.MAINNET: mainnet_url.rstrip("/"),
            NetworkType.TESTNET: testnet_url.rstrip("/"),
        }
        self.timeout = timeout
        self.page_size = page_size
        self.page_delay = page_delay
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.batch_delay = batch_delay
        self.batch_retry_delay = batch_retry_delay
        self.concurrency = concurrency
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @classmethod
    def from_settings(
        cls,
        settings: IndexerSettings,
        concurrency: int = DEFAULT_FETCH_CONCURRENCY,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> MempoolBackend:
        return cls(
            mainnet_url=settings.mainnet_url,
            testnet_url=settings.testnet_url,
            timeout=settings.timeout,
            page_size=settings.page_size,
            page_delay=settings.page_delay,
            max_retries=settings.max_retries,
            backoff_base=settings.backoff_base,
            batch_delay=settings.batch_delay,
            batch_retry_delay=settings.batch_retry_delay,
            concurrency=concurrency,
            transport=transport,
        )

    def base_url(self, network: NetworkType) -> str:
        return self.base_urls[NetworkType(network)]

    async def _get_page(
        self, url: str, address: str, on_event: EventSink | None
    ) -> list[dict[str, Any]] | None:
        """
        GET one page of transactions. Returns None when the indexer answers 404.
        """
        attempt = 0
        while True:
            try:
                response = await self.client.get(url)
            except httpx.TimeoutException as e:
                raise RequestTimedOut(
                    f"Request for {address} timed out after {self.timeout}s"
                ) from e
            except httpx.TransportError as e:
                raise ServiceUnavailable(
                    f"Indexer unreachable while fetching {address}: {e}"
                ) from e

            status = response.status_code
            if status == 404:
                logger.debug(f"No history for {address} (404)")
                return None

            if status in (429, 503):
                if attempt >= self.max_retries:
                    if status == 429:
                        raise RateLimited(
                            f"Rate limited fetching {address} after {self.max_retries} retries"
                        )
                    raise ServiceUnavailable(
                        f"Indexer unavailable fetching {address} after {self.max_retries} retries"
                    )
                delay = self.backoff_base * 2**attempt
                attempt += 1
                emit(
                    on_event,
                    ScanEventType.RETRY_ATTEMPTED,
                    f"HTTP {status} for {address}, "
                    f"retry {attempt}/{self.max_retries} in {delay:.1f}s",
                    address=address,
                    data={"status": status, "attempt": attempt, "delay": delay},
                )
                await asyncio.sleep(delay)
                continue

            if not response.is_success:
                raise IndexerError(f"Indexer returned HTTP {status} for {address}")

            try:
                data = response.json()
            except ValueError as e:
                raise IndexerError(f"Malformed JSON from indexer for {address}") from e
            if not isinstance(data, list):
                raise IndexerError(f"Unexpected response shape for {address}")
            return data

    async def fetch_address_transactions(
        self,
        address: str,
        network: NetworkType,
        on_event: EventSink | None = None,
    ) -> list[RawTransaction]:
        base = self.base_url(network)
        url = f"{base}/address/{address}/txs"
        transactions: list[RawTransaction] = []
        cursor: str | None = None

        while True:
            page = await self._get_page(url, address, on_event)
            if page is None:
                break

            try:
                parsed = [RawTransaction.from_esplora(item) for item in page]
            except (KeyError, TypeError, ValueError) as e:
                raise IndexerError(f"Malformed transaction data for {address}: {e}") from e
            transactions.extend(tx for tx in parsed if tx.status.confirmed)

            if len(page) < self.page_size:
                break
            last_txid = parsed[-1].txid
            if last_txid == cursor:
                break
            cursor = last_txid
            url = f"{base}/address/{address}/txs/chain/{cursor}"
            await asyncio.sleep(self.page_delay)

        logger.debug(f"Found {len(transactions)} confirmed transactions for {address}")
        return transactions

    async def fetch_address_batch(
        self,
        addresses: list[str],
        network: NetworkType,
        concurrency: int | None = None,
        on_event: EventSink | None = None,
    ) -> dict[str, list[RawTransaction]]:
        """
        Fetch many addresses through a bounded pool of request slots.

        Each slot stays taken for `batch_delay` after its request finishes.
        Rate-limited, unavailable and timed-out addresses get one more pass
        after `batch_retry_delay`; anything still failing maps to [].
        """
        semaphore = asyncio.Semaphore(concurrency or self.concurrency)
        results: dict[str, list[RawTransaction]] = {address: [] for address in addresses}
        retry_queue: set[str] = set()

        async def fetch_one(address: str) -> None:
            async with semaphore:
                try:
                    results[address] = await self.fetch_address_transactions(
                        address, network, on_event
                    )
                except RETRYABLE_INDEXER_ERRORS as e:
                    logger.warning(f"Deferring {address} to retry pass: {e}")
                    retry_queue.add(address)
                except IndexerError as e:
                    self._report_failure(address, e, on_event)
                finally:
                    await asyncio.sleep(self.batch_delay)

        await asyncio.gather(*(fetch_one(address) for address in results))

        if retry_queue:
            await asyncio.sleep(self.batch_retry_delay)
            for address in [a for a in results if a in retry_queue]:
                try:
                    results[address] = await self.fetch_address_transactions(
                        address, network, on_event
                    )
                except IndexerError as e:
                    self._report_failure(address, e, on_event)

        return results

    @staticmethod
    def _report_failure(address: str, error: Exception, on_event: EventSink | None) -> None:
        emit(
            on_event,
            ScanEventType.ADDRESS_FAILED,
            f"Giving up on {address}: {error}",
            address=address,
            data={"error": type(error).__name__},
        )

    async def close(self) -> None:
        await self.client.aclose()
