"""
Core data models shared across chainbooks components.
"""

from __future__ import annotations

from enum import Enum


class NetworkType(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"


class AddressType(str, Enum):
    """Output script families that addresses are derived for."""

    P2PKH = "p2pkh"
    P2SH_P2WPKH = "p2sh-p2wpkh"
    P2WPKH = "p2wpkh"


class ShortfallPolicy(str, Enum):
    """What a disposal does when the wallet's lots cannot cover it."""

    REJECT = "reject"
    ZERO_BASIS = "zero_basis"
