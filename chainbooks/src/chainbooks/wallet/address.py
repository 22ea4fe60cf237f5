"""
Address derivation and validation for watch-only wallets.
"""

from __future__ import annotations

from chaincore.bitcoin import AddressInfo, decode_address
from chaincore.models import NetworkType
from chainbooks.errors import InvalidAddress
from chainbooks.wallet.bip32 import ExtendedPublicKey, is_extended_key
from chainbooks.wallet.models import Chain, DerivedAddress


def parse_extended_key(extended_key: str | ExtendedPublicKey) -> ExtendedPublicKey:
    if isinstance(extended_key, ExtendedPublicKey):
        return extended_key
    return ExtendedPublicKey.from_string(extended_key)


def derive_addresses(
    extended_key: str | ExtendedPublicKey,
    count: int,
    start_index: int = 0,
    chain: Chain | int = Chain.EXTERNAL,
) -> list[DerivedAddress]:
    """
    Derive `count` consecutive addresses on one chain of an account key.

    Addresses are `key/chain/index` for index in [start_index, start_index + count).
    The address type and network come from the key's prefix.

    Raises:
        InvalidKeyFormat: If the key cannot be parsed.
    """
    if count < 0 or start_index < 0:
        raise ValueError("count and start_index must be non-negative")

    account = parse_extended_key(extended_key)
    branch = account.derive(int(chain))

    return [
        DerivedAddress(
            address=branch.derive(index).address(),
            network=account.network,
            chain=Chain(chain),
            index=index,
        )
        for index in range(start_index, start_index + count)
    ]


def validate_address(address: str, network: NetworkType | str | None = None) -> AddressInfo:
    """
    Validate a single Bitcoin address, optionally against a network.

    Raises:
        InvalidAddress: If the address does not decode or belongs to another network.
    """
    try:
        info = decode_address(address)
    except ValueError as e:
        raise InvalidAddress(str(e)) from e

    if network is not None and info.network != NetworkType(network):
        raise InvalidAddress(
            f"Address {address} is a {info.network.value} address, "
            f"expected {NetworkType(network).value}"
        )
    return info


__all__ = [
    "derive_addresses",
    "is_extended_key",
    "parse_extended_key",
    "validate_address",
]
