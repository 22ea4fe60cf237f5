"""
Watch-only wallet components: key parsing, address derivation and discovery.
"""

from chainbooks.wallet.address import derive_addresses, validate_address
from chainbooks.wallet.bip32 import ExtendedPublicKey, is_extended_key
from chainbooks.wallet.models import Chain, DerivedAddress, ParsedTransaction, TxType
from chainbooks.wallet.sync import GapLimitScanner, ScanResult

__all__ = [
    "Chain",
    "DerivedAddress",
    "ExtendedPublicKey",
    "GapLimitScanner",
    "ParsedTransaction",
    "ScanResult",
    "TxType",
    "derive_addresses",
    "is_extended_key",
    "validate_address",
]
