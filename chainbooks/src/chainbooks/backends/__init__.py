"""
Blockchain backends for fetching address history.
"""

from chainbooks.backends.base import (
    BlockchainBackend,
    RawTransaction,
    TxInput,
    TxOutput,
    TxStatus,
)
from chainbooks.backends.mempool import MempoolBackend

__all__ = [
    "BlockchainBackend",
    "MempoolBackend",
    "RawTransaction",
    "TxInput",
    "TxOutput",
    "TxStatus",
]
