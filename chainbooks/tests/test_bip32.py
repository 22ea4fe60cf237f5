"""
Tests for BIP32 extended public key parsing and CKDpub derivation.
"""

from __future__ import annotations

import base58
import pytest

from chaincore.models import AddressType, NetworkType
from chainbooks.errors import InvalidKeyFormat
from chainbooks.wallet.bip32 import KEY_VERSIONS, ExtendedPublicKey, is_extended_key


def _with_version(key: str, prefix: str) -> str:
    """Re-serialize an extended key under another SLIP-132 version."""
    payload = base58.b58decode_check(key)
    version = KEY_VERSIONS[prefix].version.to_bytes(4, "big")
    return base58.b58encode_check(version + payload[4:]).decode("ascii")


class TestParsing:
    """Parsing of serialized extended public keys."""

    def test_parse_zpub(self, test_zpub: str) -> None:
        key = ExtendedPublicKey.from_string(test_zpub)

        assert key.network == NetworkType.MAINNET
        assert key.address_type == AddressType.P2WPKH
        assert key.depth == 3
        assert len(key.chain_code) == 32
        assert key.public_key[0] in (2, 3)

    def test_parse_upub(self, test_upub: str) -> None:
        key = ExtendedPublicKey.from_string(test_upub)

        assert key.network == NetworkType.TESTNET
        assert key.address_type == AddressType.P2SH_P2WPKH

    def test_round_trip_serialization(self, test_zpub: str) -> None:
        assert ExtendedPublicKey.from_string(test_zpub).to_string() == test_zpub

    def test_surrounding_whitespace_ignored(self, test_zpub: str) -> None:
        key = ExtendedPublicKey.from_string(f"  {test_zpub}\n")
        assert key.to_string() == test_zpub

    def test_unknown_prefix(self) -> None:
        with pytest.raises(InvalidKeyFormat, match="Unsupported extended key prefix"):
            ExtendedPublicKey.from_string("Zpub6rFR7y4Q2AijBEqTUquhVz398htDFrtymD9xYYfG1m4wAc")

    def test_private_key_rejected(self) -> None:
        with pytest.raises(InvalidKeyFormat, match="prefix 'xprv'"):
            ExtendedPublicKey.from_string(
                "xprv9s21ZrQH143K3QTDL4LXw2F7HEK3wJUD2nW2nRk4stbPy6cq3jPPqjiChkVvvNKmPGJxWUtg"
                "6LnF5kejMRNNU3TGtRBeJgk33yuGBxrMPHi"
            )

    def test_bad_checksum(self, test_zpub: str) -> None:
        corrupted = test_zpub[:-1] + ("t" if test_zpub[-1] != "t" else "u")
        with pytest.raises(InvalidKeyFormat, match="checksum"):
            ExtendedPublicKey.from_string(corrupted)

    def test_wrong_length(self, test_zpub: str) -> None:
        payload = base58.b58decode_check(test_zpub)
        short = base58.b58encode_check(payload[:-1]).decode("ascii")
        with pytest.raises(InvalidKeyFormat):
            ExtendedPublicKey.from_string(short)

    def test_invalid_public_key_prefix_byte(self, test_zpub: str) -> None:
        payload = bytearray(base58.b58decode_check(test_zpub))
        payload[45] = 0x04
        broken = base58.b58encode_check(bytes(payload)).decode("ascii")
        with pytest.raises(InvalidKeyFormat, match="compressed public key"):
            ExtendedPublicKey.from_string(broken)

    def test_is_extended_key(self, test_zpub: str) -> None:
        assert is_extended_key(test_zpub)
        assert is_extended_key(" tpubD6NzVbkrYhZ4")
        assert not is_extended_key("bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu")
        assert not is_extended_key("")


class TestDerivation:
    """Non-hardened child derivation."""

    def test_bip84_first_receive_pubkey(self, test_zpub: str) -> None:
        child = ExtendedPublicKey.from_string(test_zpub).derive_path(0, 0)

        assert child.public_key.hex() == (
            "0330d54fd0dd420a6e5f8d3624f5f3482cae350f79d5f0753bf5beef9c2d91af3c"
        )
        assert child.address() == "bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu"

    def test_child_metadata(self, test_zpub: str) -> None:
        account = ExtendedPublicKey.from_string(test_zpub)
        branch = account.derive(1)

        assert branch.depth == account.depth + 1
        assert branch.child_number == 1
        assert branch.parent_fingerprint == account.fingerprint
        assert branch.version == account.version

    def test_derivation_is_deterministic(self, test_zpub: str) -> None:
        first = ExtendedPublicKey.from_string(test_zpub).derive_path(0, 7)
        second = ExtendedPublicKey.from_string(test_zpub).derive_path(0, 7)
        assert first.public_key == second.public_key
        assert first.chain_code == second.chain_code

    def test_hardened_index_rejected(self, test_zpub: str) -> None:
        key = ExtendedPublicKey.from_string(test_zpub)
        with pytest.raises(ValueError, match="hardened"):
            key.derive(0x80000000)
        with pytest.raises(ValueError):
            key.derive(-1)

    def test_version_selects_address_encoding(self, test_zpub: str) -> None:
        """The same node encodes as P2PKH under xpub and P2WPKH under zpub."""
        segwit = ExtendedPublicKey.from_string(test_zpub).derive_path(0, 0)
        legacy = ExtendedPublicKey.from_string(_with_version(test_zpub, "xpub")).derive_path(0, 0)
        nested = ExtendedPublicKey.from_string(_with_version(test_zpub, "ypub")).derive_path(0, 0)

        assert legacy.public_key == segwit.public_key
        assert legacy.address().startswith("1")
        assert nested.address().startswith("3")
        # Same hash160 behind both encodings
        assert base58.b58decode_check(legacy.address())[1:].hex() == (
            "c0cebcd6c3d3ca8c75dc5ec62ebe55330ef910e2"
        )

    def test_bip49_testnet_first_receive(self, test_upub: str) -> None:
        child = ExtendedPublicKey.from_string(test_upub).derive_path(0, 0)
        assert child.address() == "2Mww8dCYPUpKHofjgcXcBCEGmniw9CoaiD2"
