"""
Tests for the wallet layer — HD derivation, addresses, storage backends.
"""

from __future__ import annotations

import json
import os
import stat
import sys

import pytest

from ledgerstamp.wallet.address import (
    AddressError,
    decode_address,
    encode_address,
    network_prefix,
    pay_to_address_script,
)
from ledgerstamp.wallet.hd import (
    HDNode,
    KeyDerivation,
    derive_private_key,
    mnemonic_to_seed,
    validate_mnemonic,
)
from ledgerstamp.wallet.storage import FileStorage, MemoryStorage, StorageError

# Check if secp256k1 C bindings are available
try:
    import secp256k1
    HAS_SECP256K1 = True
except ImportError:
    HAS_SECP256K1 = False

requires_secp256k1 = pytest.mark.skipif(
    not HAS_SECP256K1,
    reason="secp256k1 C bindings not installed (pip install secp256k1)",
)

ABANDON = " ".join(["abandon"] * 11 + ["about"])
BIP32_SEED = bytes.fromhex("000102030405060708090a0b0c0d0e0f")


# ---------------------------------------------------------------------------
# HD derivation
# ---------------------------------------------------------------------------

class TestMnemonic:
    def test_word_counts(self):
        assert validate_mnemonic(ABANDON)
        assert validate_mnemonic(" ".join(["abandon"] * 24))
        assert not validate_mnemonic(" ".join(["abandon"] * 13))
        assert not validate_mnemonic("")

    def test_bip39_vector(self):
        seed = mnemonic_to_seed(ABANDON, "TREZOR")
        assert seed.hex() == (
            "c55257c360c07c72029aebc1b53c05ed0362ada38ead3e3e9efa3708e5349553"
            "1f09a6987599d18264c1e1c92f2cf141630c7a3c4ab7c81b2f001698e7463b04"
        )

    def test_whitespace_normalized(self):
        assert mnemonic_to_seed("  " + ABANDON.replace(" ", "   ") + "\n") == mnemonic_to_seed(ABANDON)

    def test_passphrase_changes_seed(self):
        assert mnemonic_to_seed(ABANDON, "") != mnemonic_to_seed(ABANDON, "x")


class TestKeyDerivation:
    def test_receive_path(self):
        assert KeyDerivation().path == "m/44'/111111'/0'/0/0"

    def test_change_path(self):
        assert KeyDerivation(2, 7, is_receive=False).path == "m/44'/111111'/2'/1/7"

    def test_rejects_bad_indices(self):
        with pytest.raises(ValueError):
            KeyDerivation(-1)
        with pytest.raises(ValueError):
            KeyDerivation(0, 2**31)
        with pytest.raises(ValueError):
            KeyDerivation(True)  # type: ignore[arg-type]


@requires_secp256k1
class TestHDNode:
    def test_bip32_master(self):
        node = HDNode.from_seed(BIP32_SEED)
        assert node.private_key.hex() == "e8f32e723decf4051aefac8e2c93c9c5b214313817cdb01a1494b917c8436b35"

    def test_bip32_hardened_child(self):
        node = HDNode.from_seed(BIP32_SEED).derive_path("m/0'")
        assert node.private_key.hex() == "edb2e14f9ee77d26dd93b4ecede8d16ed408ce149b6cd80b0715a2d911a0afea"
        assert node.depth == 1

    def test_bip32_normal_child(self):
        node = HDNode.from_seed(BIP32_SEED).derive_path("m/0h/1")
        assert node.private_key.hex() == "3c6cb8d0f6a264c91ea8b5030fadaa8e538b020f0a387421a12de9319dc93368"

    def test_invalid_path(self):
        node = HDNode.from_seed(BIP32_SEED)
        with pytest.raises(ValueError):
            node.derive_path("m/abc")
        assert node.derive_path("m") is node

    def test_repr_redacted(self):
        assert BIP32_SEED.hex() not in repr(HDNode.from_seed(BIP32_SEED))


@requires_secp256k1
class TestDeterministicDerivation:
    seed = mnemonic_to_seed(ABANDON)

    def test_repeatable(self):
        first = derive_private_key(self.seed, KeyDerivation(0, 3))
        second = derive_private_key(self.seed, KeyDerivation(0, 3))
        assert first == second
        assert len(first) == 32

    def test_matches_path(self):
        expected = HDNode.from_seed(self.seed).derive_path("m/44'/111111'/0'/0/0").private_key
        assert bytes(derive_private_key(self.seed, KeyDerivation())) == expected

    def test_address_index_changes_key(self):
        assert derive_private_key(self.seed, KeyDerivation(0, 0)) != derive_private_key(self.seed, KeyDerivation(0, 1))

    def test_receive_and_change_differ(self):
        receive = derive_private_key(self.seed, KeyDerivation(0, 0, is_receive=True))
        change = derive_private_key(self.seed, KeyDerivation(0, 0, is_receive=False))
        assert receive != change

    def test_account_changes_key(self):
        assert derive_private_key(self.seed, KeyDerivation(0, 0)) != derive_private_key(self.seed, KeyDerivation(1, 0))


# ---------------------------------------------------------------------------
# Addresses
# ---------------------------------------------------------------------------

class TestAddress:
    def test_prefixes(self):
        assert network_prefix("mainnet") == "kaspa"
        assert network_prefix("testnet-10") == "kaspatest"
        assert network_prefix("kaspa-testnet-11") == "kaspatest"
        assert network_prefix("simnet") == "kaspasim"
        assert network_prefix("devnet") == "kaspadev"
        with pytest.raises(AddressError):
            network_prefix("bitcoin")

    def test_round_trip_versions(self):
        for version, size in ((0, 32), (1, 33), (8, 32)):
            payload = bytes(range(size))
            address = encode_address(payload, "testnet-10", version)
            assert address.startswith("kaspatest:")
            assert decode_address(address) == ("kaspatest", version, payload)

    def test_uppercase_accepted(self):
        address = encode_address(b"\x07" * 32, "mainnet")
        assert decode_address(address.upper())[2] == b"\x07" * 32

    def test_mixed_case_rejected(self):
        address = encode_address(b"\x07" * 32, "mainnet")
        i = next(i for i, c in enumerate(address) if i > 6 and c.isalpha())
        mixed = address[:i] + address[i].upper() + address[i + 1:]
        with pytest.raises(AddressError):
            decode_address(mixed)

    def test_checksum_detects_single_change(self):
        address = encode_address(b"\x07" * 32, "mainnet")
        last = address[-1]
        swapped = address[:-1] + ("q" if last != "q" else "p")
        with pytest.raises(AddressError):
            decode_address(swapped)

    def test_prefix_is_checksummed(self):
        body = encode_address(b"\x07" * 32, "mainnet").split(":", 1)[1]
        with pytest.raises(AddressError):
            decode_address("kaspatest:" + body)

    def test_payload_size_checked(self):
        with pytest.raises(AddressError):
            encode_address(b"\x00" * 31, "mainnet", 0)
        with pytest.raises(AddressError):
            encode_address(b"\x00" * 32, "mainnet", 3)

    def test_scripts(self):
        key = b"\x11" * 32
        assert pay_to_address_script(encode_address(key, "mainnet", 0)) == "20" + key.hex() + "ac"
        ecdsa = b"\x02" + b"\x22" * 32
        assert pay_to_address_script(encode_address(ecdsa, "mainnet", 1)) == "21" + ecdsa.hex() + "ab"
        assert pay_to_address_script(encode_address(key, "mainnet", 8)) == "aa20" + key.hex() + "87"

    @requires_secp256k1
    def test_address_from_private_key(self):
        from ledgerstamp.wallet.address import address_from_private_key
        from ledgerstamp.wallet.hd import xonly_public_key

        priv = bytes.fromhex("e8f32e723decf4051aefac8e2c93c9c5b214313817cdb01a1494b917c8436b35")
        address = address_from_private_key(priv, "mainnet")
        assert decode_address(address) == ("kaspa", 0, xonly_public_key(priv))


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

class TestMemoryStorage:
    def test_basic(self):
        s = MemoryStorage()
        assert s.get_item("a") is None
        s.set_item("a", "1")
        assert s.get_item("a") == "1"
        assert len(s) == 1
        s.remove_item("a")
        s.remove_item("a")
        assert s.get_item("a") is None


class TestFileStorage:
    def test_persists_across_instances(self, tmp_path):
        FileStorage(tmp_path).set_item("main.enclave", "abcd")
        assert FileStorage(tmp_path).get_item("main.enclave") == "abcd"
        assert FileStorage(tmp_path).keys() == ["main.enclave"]

    def test_remove(self, tmp_path):
        s = FileStorage(tmp_path)
        s.set_item("a", "1")
        s.set_item("b", "2")
        s.remove_item("a")
        assert json.loads(s.path.read_text()) == {"b": "2"}

    def test_creates_directory(self, tmp_path):
        s = FileStorage(tmp_path / "nested" / "home")
        s.set_item("k", "v")
        assert s.path.is_file()

    def test_no_temp_files_left(self, tmp_path):
        s = FileStorage(tmp_path)
        for i in range(5):
            s.set_item(f"k{i}", "v")
        assert [p.name for p in tmp_path.iterdir()] == ["wallets.json"]

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_file_mode(self, tmp_path):
        s = FileStorage(tmp_path)
        s.set_item("k", "v")
        assert stat.S_IMODE(os.stat(s.path).st_mode) == 0o600

    def test_corrupt_file(self, tmp_path):
        (tmp_path / "wallets.json").write_text("{not json")
        with pytest.raises(StorageError):
            FileStorage(tmp_path).get_item("k")

    def test_non_object_file(self, tmp_path):
        (tmp_path / "wallets.json").write_text("[1, 2]")
        with pytest.raises(StorageError):
            FileStorage(tmp_path).get_item("k")
