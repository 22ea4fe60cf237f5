"""
Exceptions raised across the chainbooks pipeline.

Network failures carry enough type information for callers to decide
whether a retry makes sense; ledger failures describe which invariant the
operation would have broken.
"""

from __future__ import annotations

from decimal import Decimal


class ChainbooksError(Exception):
    """Base class for all chainbooks errors."""


class InvalidKeyFormat(ChainbooksError):
    """Extended public key has an unknown prefix or a malformed payload."""


class InvalidAddress(ChainbooksError):
    """Address string does not decode for the expected network."""


class IndexerError(ChainbooksError):
    """The block explorer API returned an unexpected response."""


class RateLimited(IndexerError):
    """The indexer kept answering 429 after all retries."""


class ServiceUnavailable(IndexerError):
    """The indexer kept answering 503 after all retries."""


class RequestTimedOut(IndexerError):
    """A single indexer request exceeded the configured timeout."""


# Failures worth a second attempt at batch level
RETRYABLE_INDEXER_ERRORS: tuple[type[IndexerError], ...] = (
    RateLimited,
    ServiceUnavailable,
    RequestTimedOut,
)


class ClassificationError(ChainbooksError):
    """A transaction touches none of the wallet's addresses."""


class ExchangeRateUnavailable(ChainbooksError):
    """No BTC/USD rate could be obtained for a date."""


class LedgerError(ChainbooksError):
    """Base class for cost basis ledger errors."""


class InsufficientLots(LedgerError):
    """Available lots do not cover a disposal."""

    def __init__(self, transaction_id: int, requested: Decimal, available: Decimal) -> None:
        self.transaction_id = transaction_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient purchase lots for transaction {transaction_id}: "
            f"need {requested} BTC, only {available} BTC available"
        )


class LotLocked(LedgerError):
    """The lot's consumption state forbids the requested change."""


class InvalidLotEdit(LedgerError):
    """Lot fields fail validation or would break the lot invariant."""


class NotADisposal(LedgerError):
    """Cost basis was requested for a transaction that is not a send."""


class NotFound(ChainbooksError):
    """Requested wallet, transaction or lot does not exist."""


class DuplicateWallet(ChainbooksError):
    """A wallet with the same address or key is already registered."""


class WalletArchived(ChainbooksError):
    """The wallet is archived and no longer scanned."""


class NothingToExport(ChainbooksError):
    """No stored transaction matches the export filters."""
