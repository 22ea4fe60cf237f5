"""
Bitcoin wallet accounting: on-chain imports, USD valuation and FIFO cost basis.
"""

__version__ = "0.3.0"

from chainbooks.backends.base import BlockchainBackend  # noqa: E402
from chainbooks.service import WalletService  # noqa: E402

__all__ = ["BlockchainBackend", "WalletService", "__version__"]
