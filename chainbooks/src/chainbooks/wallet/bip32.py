"""
BIP32 public key derivation for watch-only wallets.

Only extended public keys are handled, so only non-hardened children can be
derived. The SLIP-0132 version bytes (ypub/zpub and testnet equivalents)
select the address type the key's children are encoded as.
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass

import base58
from coincurve import PublicKey

from chaincore.bitcoin import hash160, pubkey_to_address
from chaincore.constants import HARDENED_OFFSET
from chaincore.models import AddressType, NetworkType
from chainbooks.errors import InvalidKeyFormat

# secp256k1 group order
CURVE_ORDER = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)

EXTENDED_KEY_LENGTH = 78


@dataclass(frozen=True)
class KeyVersion:
    """Serialization version of an extended public key."""

    prefix: str
    version: int
    network: NetworkType
    address_type: AddressType


KEY_VERSIONS: dict[str, KeyVersion] = {
    v.prefix: v
    for v in (
        KeyVersion("xpub", 0x0488B21E, NetworkType.MAINNET, AddressType.P2PKH),
        KeyVersion("ypub", 0x049D7CB2, NetworkType.MAINNET, AddressType.P2SH_P2WPKH),
        KeyVersion("zpub", 0x04B24746, NetworkType.MAINNET, AddressType.P2WPKH),
        KeyVersion("tpub", 0x043587CF, NetworkType.TESTNET, AddressType.P2PKH),
        KeyVersion("upub", 0x044A5262, NetworkType.TESTNET, AddressType.P2SH_P2WPKH),
        KeyVersion("vpub", 0x045F1CF6, NetworkType.TESTNET, AddressType.P2WPKH),
    )
}


def is_extended_key(text: str) -> bool:
    """True when the string carries one of the known extended public key prefixes."""
    return text.strip()[:4] in KEY_VERSIONS


class ExtendedPublicKey:
    """
    Extended public key (BIP32 node without the private half).
    """

    def __init__(
        self,
        public_key: bytes,
        chain_code: bytes,
        version: KeyVersion,
        depth: int = 0,
        parent_fingerprint: bytes = b"\x00\x00\x00\x00",
        child_number: int = 0,
    ):
        self.public_key = public_key
        self.chain_code = chain_code
        self.version = version
        self.depth = depth
        self.parent_fingerprint = parent_fingerprint
        self.child_number = child_number

    @classmethod
    def from_string(cls, key: str) -> ExtendedPublicKey:
        """
        Parse a base58check-encoded extended public key.

        Raises:
            InvalidKeyFormat: Unknown prefix, bad checksum, wrong length,
                version bytes not matching the prefix, or a public key that
                is not a valid curve point.
        """
        key = key.strip()
        version = KEY_VERSIONS.get(key[:4])
        if version is None:
            raise InvalidKeyFormat(
                f"Unsupported extended key prefix '{key[:4]}', "
                f"expected one of: {', '.join(KEY_VERSIONS)}"
            )

        try:
            payload = base58.b58decode_check(key)
        except ValueError as e:
            raise InvalidKeyFormat(f"Invalid base58 checksum in extended key: {e}") from e

        if len(payload) != EXTENDED_KEY_LENGTH:
            raise InvalidKeyFormat(
                f"Extended key payload must be {EXTENDED_KEY_LENGTH} bytes, got {len(payload)}"
            )

        if int.from_bytes(payload[0:4], "big") != version.version:
            raise InvalidKeyFormat(f"Version bytes do not match the '{version.prefix}' prefix")

        public_key = payload[45:78]
        if public_key[0] not in (0x02, 0x03):
            raise InvalidKeyFormat("Extended key does not hold a compressed public key")
        try:
            PublicKey(public_key)
        except ValueError as e:
            raise InvalidKeyFormat(f"Extended key is not a valid curve point: {e}") from e

        return cls(
            public_key=public_key,
            chain_code=payload[13:45],
            version=version,
            depth=payload[4],
            parent_fingerprint=payload[5:9],
            child_number=int.from_bytes(payload[9:13], "big"),
        )

    @property
    def network(self) -> NetworkType:
        return self.version.network

    @property
    def address_type(self) -> AddressType:
        return self.version.address_type

    @property
    def fingerprint(self) -> bytes:
        return hash160(self.public_key)[:4]

    def derive(self, index: int) -> ExtendedPublicKey:
        """
        Derive a non-hardened child key (CKDpub).

        Raises:
            ValueError: For hardened or negative indices, or in the
                negligible case where the index yields an invalid key.
        """
        if index < 0 or index >= HARDENED_OFFSET:
            raise ValueError(f"Cannot derive hardened or negative index {index} from a public key")

        data = self.public_key + index.to_bytes(4, "big")
        hmac_result = hmac.new(self.chain_code, data, hashlib.sha512).digest()
        tweak = hmac_result[:32]
        child_chain = hmac_result[32:]

        if int.from_bytes(tweak, "big") >= CURVE_ORDER:
            raise ValueError(f"Invalid child key at index {index}")

        # point(parent) + tweak*G; coincurve rejects the point at infinity
        child_key = PublicKey(self.public_key).add(tweak)

        return ExtendedPublicKey(
            public_key=child_key.format(compressed=True),
            chain_code=child_chain,
            version=self.version,
            depth=self.depth + 1,
            parent_fingerprint=self.fingerprint,
            child_number=index,
        )

    def derive_path(self, *indices: int) -> ExtendedPublicKey:
        key = self
        for index in indices:
            key = key.derive(index)
        return key

    def address(self) -> str:
        """Encode this node's public key as the address type implied by its version."""
        return pubkey_to_address(self.public_key, self.address_type, self.network)

    def to_string(self) -> str:
        payload = (
            self.version.version.to_bytes(4, "big")
            + bytes([self.depth])
            + self.parent_fingerprint
            + self.child_number.to_bytes(4, "big")
            + self.chain_code
            + self.public_key
        )
        return base58.b58encode_check(payload).decode("ascii")

    def __repr__(self) -> str:
        return f"ExtendedPublicKey({self.version.prefix}, depth={self.depth})"
