"""
Hierarchical deterministic key derivation (BIP-39 seed, BIP-32 children).

Path layout: m/44'/111111'/account'/{0 receive | 1 change}/address

Requires secp256k1 (C bindings) for public keys and child tweaks. Will raise
ImportError if the library is unavailable — install with:
pip install ledgerstamp
"""

from __future__ import annotations

import hashlib
import hmac
import struct
import unicodedata
from dataclasses import dataclass

from ledgerstamp import COIN_TYPE

HARDENED = 0x80000000
_MASTER_HMAC_KEY = b"Bitcoin seed"
_VALID_WORD_COUNTS = (12, 15, 18, 21, 24)


def _import_secp256k1():
    """Import secp256k1 C bindings. Raises ImportError if unavailable."""
    try:
        import secp256k1
        return secp256k1
    except ImportError:
        raise ImportError(
            "secp256k1 is required for key derivation and signing. "
            "Install with: pip install ledgerstamp"
        )


def _normalize(text: str) -> str:
    return unicodedata.normalize("NFKD", " ".join(text.split()))


def validate_mnemonic(mnemonic: str) -> bool:
    """Basic validation of mnemonic word count."""
    return len(mnemonic.split()) in _VALID_WORD_COUNTS


def mnemonic_to_seed(mnemonic: str, passphrase: str = "") -> bytes:
    """Convert a mnemonic phrase to a 64-byte seed (BIP-39)."""
    salt = ("mnemonic" + _normalize(passphrase)).encode("utf-8")
    return hashlib.pbkdf2_hmac(
        "sha512", _normalize(mnemonic).encode("utf-8"), salt, 2048, dklen=64,
    )


def compressed_public_key(private_key: bytes) -> bytes:
    """33-byte SEC1 compressed public key."""
    lib = _import_secp256k1()
    return lib.PrivateKey(bytes(private_key)).pubkey.serialize(compressed=True)


def xonly_public_key(private_key: bytes) -> bytes:
    """32-byte x-only public key (Schnorr)."""
    return compressed_public_key(private_key)[1:]


class HDNode:
    """A private extended key: 32-byte key plus 32-byte chain code."""

    __slots__ = ("private_key", "chain_code", "depth")

    def __init__(self, private_key: bytes, chain_code: bytes, depth: int = 0) -> None:
        self.private_key = private_key
        self.chain_code = chain_code
        self.depth = depth

    def __repr__(self) -> str:
        return f"HDNode(depth={self.depth}, <redacted>)"

    @classmethod
    def from_seed(cls, seed: bytes) -> HDNode:
        """Create master node from a BIP-39 seed."""
        digest = hmac.new(_MASTER_HMAC_KEY, seed, hashlib.sha512).digest()
        # Validates the key is in range
        _import_secp256k1().PrivateKey(digest[:32])
        return cls(digest[:32], digest[32:])

    def derive_child(self, index: int) -> HDNode:
        """Derive a child node. ``index >= HARDENED`` selects hardened derivation."""
        if not 0 <= index <= 0xFFFFFFFF:
            raise ValueError(f"Child index out of range: {index}")
        if index >= HARDENED:
            data = b"\x00" + self.private_key + struct.pack(">I", index)
        else:
            data = compressed_public_key(self.private_key) + struct.pack(">I", index)

        digest = hmac.new(self.chain_code, data, hashlib.sha512).digest()
        lib = _import_secp256k1()
        try:
            child_key = lib.PrivateKey(self.private_key).tweak_add(digest[:32])
        except Exception as e:
            # Probability below 2^-127; BIP-32 says use the next index
            raise ValueError(f"Invalid child key at index {index}: {e}") from e
        return HDNode(child_key, digest[32:], self.depth + 1)

    def derive_path(self, path: str) -> HDNode:
        """Derive from a path string like ``m/44'/111111'/0'/0/0``."""
        if path in ("m", ""):
            return self
        if path.startswith("m/"):
            path = path[2:]

        node = self
        for component in path.split("/"):
            hardened = component.endswith("'") or component.endswith("h")
            digits = component[:-1] if hardened else component
            if not digits.isdigit():
                raise ValueError(f"Invalid path component: {component!r}")
            index = int(digits)
            if index >= HARDENED:
                raise ValueError(f"Path index too large: {component!r}")
            node = node.derive_child(index + HARDENED if hardened else index)
        return node


@dataclass(frozen=True)
class KeyDerivation:
    """Which key to derive under the wallet's BIP-44 account tree."""

    account_index: int = 0
    address_index: int = 0
    is_receive: bool = True

    def __post_init__(self) -> None:
        for name in ("account_index", "address_index"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"{name} must be an integer")
            if not 0 <= value < HARDENED:
                raise ValueError(f"{name} out of range: {value}")

    @property
    def path(self) -> str:
        chain = 0 if self.is_receive else 1
        return f"m/44'/{COIN_TYPE}'/{self.account_index}'/{chain}/{self.address_index}"


def derive_private_key(seed: bytes, derivation: KeyDerivation) -> bytearray:
    """Private key for ``derivation``. Returned as a bytearray so callers can wipe it."""
    return bytearray(HDNode.from_seed(seed).derive_path(derivation.path).private_key)
