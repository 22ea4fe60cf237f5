"""
Bitcoin utilities for chainbooks.

This module provides the Bitcoin primitives the accounting pipeline needs:
- Amount conversion between satoshis and Decimal BTC
- Hash functions (hash160, sha256)
- Address encoding for P2PKH, P2SH-P2WPKH and P2WPKH
- Address decoding/validation for every standard address type

Uses external libraries for encoding:
- bech32: BIP173/BIP350 bech32 encoding
- base58: Base58Check encoding
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

import base58
import bech32 as bech32_lib

from chaincore.constants import BTC_QUANTUM, SATS_PER_BTC, USD_QUANTUM
from chaincore.models import AddressType, NetworkType

# Network prefixes for address encoding
HRP_MAP = {
    NetworkType.MAINNET: "bc",
    NetworkType.TESTNET: "tb",
}

# Base58 version bytes
P2PKH_VERSION = {
    NetworkType.MAINNET: 0x00,
    NetworkType.TESTNET: 0x6F,
}

P2SH_VERSION = {
    NetworkType.MAINNET: 0x05,
    NetworkType.TESTNET: 0xC4,
}


# =============================================================================
# Amount Utilities
# =============================================================================


def btc_to_sats(btc: Decimal | str | int) -> int:
    """
    Convert a BTC amount to satoshis.

    Goes through Decimal so that values like 0.0003 never truncate to
    29999 sats.

    Args:
        btc: Amount in BTC

    Returns:
        Amount in satoshis
    """
    value = btc if isinstance(btc, Decimal) else Decimal(str(btc))
    return int((value * SATS_PER_BTC).to_integral_value(rounding=ROUND_HALF_UP))


def sats_to_btc(sats: int) -> Decimal:
    """
    Convert satoshis to an exact Decimal BTC amount.

    Args:
        sats: Amount in satoshis

    Returns:
        Amount in BTC with 8 fractional digits
    """
    return (Decimal(sats) / SATS_PER_BTC).quantize(BTC_QUANTUM)


def quantize_btc(value: Decimal) -> Decimal:
    """Round a BTC amount to whole satoshis."""
    return value.quantize(BTC_QUANTUM, rounding=ROUND_HALF_UP)


def quantize_usd(value: Decimal) -> Decimal:
    """Round a USD amount to cents."""
    return value.quantize(USD_QUANTUM, rounding=ROUND_HALF_UP)


# =============================================================================
# Hash Functions
# =============================================================================


def hash160(data: bytes) -> bytes:
    """
    RIPEMD160(SHA256(data)) - Used for Bitcoin addresses.

    Args:
        data: Input data to hash

    Returns:
        20-byte hash
    """
    return hashlib.new("ripemd160", hashlib.sha256(data).digest()).digest()


def sha256(data: bytes) -> bytes:
    """Single SHA256 hash."""
    return hashlib.sha256(data).digest()


# =============================================================================
# Address Encoding
# =============================================================================


def get_hrp(network: str | NetworkType) -> str:
    """
    Get bech32 human-readable part for network.

    Args:
        network: Network type (string or enum)

    Returns:
        HRP string (bc, tb)
    """
    if isinstance(network, str):
        network = NetworkType(network)
    return HRP_MAP[network]


def _as_pubkey_bytes(pubkey: bytes | str) -> bytes:
    if isinstance(pubkey, str):
        pubkey = bytes.fromhex(pubkey)
    if len(pubkey) != 33:
        raise ValueError(f"Invalid compressed pubkey length: {len(pubkey)}")
    return pubkey


def pubkey_to_p2pkh_address(pubkey: bytes | str, network: str | NetworkType = "mainnet") -> str:
    """
    Convert compressed public key to a legacy P2PKH address.

    Args:
        pubkey: 33-byte compressed public key (bytes or hex string)
        network: Network type

    Returns:
        Base58Check P2PKH address
    """
    pubkey = _as_pubkey_bytes(pubkey)
    payload = bytes([P2PKH_VERSION[NetworkType(network)]]) + hash160(pubkey)
    return base58.b58encode_check(payload).decode("ascii")


def pubkey_to_p2sh_p2wpkh_address(
    pubkey: bytes | str, network: str | NetworkType = "mainnet"
) -> str:
    """
    Convert compressed public key to a nested SegWit (P2SH-P2WPKH) address.

    The redeem script is the P2WPKH witness program OP_0 <20-byte-hash>.

    Args:
        pubkey: 33-byte compressed public key (bytes or hex string)
        network: Network type

    Returns:
        Base58Check P2SH address
    """
    pubkey = _as_pubkey_bytes(pubkey)
    redeem_script = bytes([0x00, 0x14]) + hash160(pubkey)
    payload = bytes([P2SH_VERSION[NetworkType(network)]]) + hash160(redeem_script)
    return base58.b58encode_check(payload).decode("ascii")


def pubkey_to_p2wpkh_address(pubkey: bytes | str, network: str | NetworkType = "mainnet") -> str:
    """
    Convert compressed public key to P2WPKH (native SegWit) address.

    Args:
        pubkey: 33-byte compressed public key (bytes or hex string)
        network: Network type

    Returns:
        Bech32 P2WPKH address
    """
    pubkey = _as_pubkey_bytes(pubkey)
    result = bech32_lib.encode(get_hrp(network), 0, hash160(pubkey))
    if result is None:
        raise ValueError("Failed to encode bech32 address")
    return result


def pubkey_to_address(
    pubkey: bytes | str,
    address_type: AddressType,
    network: str | NetworkType = "mainnet",
) -> str:
    """Encode a public key as the given address type."""
    if address_type == AddressType.P2PKH:
        return pubkey_to_p2pkh_address(pubkey, network)
    if address_type == AddressType.P2SH_P2WPKH:
        return pubkey_to_p2sh_p2wpkh_address(pubkey, network)
    return pubkey_to_p2wpkh_address(pubkey, network)


# =============================================================================
# Address Decoding
# =============================================================================


@dataclass(frozen=True)
class AddressInfo:
    """Result of decoding an address string."""

    address: str
    network: NetworkType
    kind: str  # p2pkh, p2sh, p2wpkh, p2wsh, p2tr


def decode_address(address: str) -> AddressInfo:
    """
    Decode and validate a Bitcoin address.

    Supports:
    - P2PKH (1..., m..., n...)
    - P2SH (3..., 2...)
    - P2WPKH / P2WSH (bc1q..., tb1q...)
    - P2TR (bc1p..., tb1p...)

    Args:
        address: Bitcoin address string

    Returns:
        AddressInfo with the network and output kind

    Raises:
        ValueError: If the address is malformed or of an unknown kind
    """
    address = address.strip()
    if not address:
        raise ValueError("Empty address")

    lowered = address.lower()
    for network, hrp in HRP_MAP.items():
        if not lowered.startswith(hrp + "1"):
            continue
        if address != lowered and address != address.upper():
            raise ValueError(f"Mixed-case bech32 address: {address}")
        witver, witprog = bech32_lib.decode(hrp, lowered)
        if witver is None or witprog is None:
            raise ValueError(f"Invalid bech32 address: {address}")
        if witver == 0 and len(witprog) == 20:
            return AddressInfo(lowered, network, "p2wpkh")
        if witver == 0 and len(witprog) == 32:
            return AddressInfo(lowered, network, "p2wsh")
        if witver == 1 and len(witprog) == 32:
            return AddressInfo(lowered, network, "p2tr")
        raise ValueError(f"Unsupported witness program (version {witver}): {address}")

    try:
        decoded = base58.b58decode_check(address)
    except ValueError as e:
        raise ValueError(f"Invalid base58 address: {address}") from e

    if len(decoded) != 21:
        raise ValueError(f"Invalid address payload length: {len(decoded)}")

    version = decoded[0]
    for network in NetworkType:
        if version == P2PKH_VERSION[network]:
            return AddressInfo(address, network, "p2pkh")
        if version == P2SH_VERSION[network]:
            return AddressInfo(address, network, "p2sh")

    raise ValueError(f"Unknown address version: {version}")
