"""
Wallet layer — key custody and address handling.

Modules:
    hd        — BIP-39 seeds and BIP-32 derivation (m/44'/111111'/...)
    address   — Bech32-style ledger address codec
    storage   — key-value persistence for enclave blobs
    enclave   — SigningEnclave: password-wrapped mnemonic, signing, wallet-key encryption

Requires ``secp256k1`` and ``cryptography``.
"""

from ledgerstamp.wallet.enclave import EnclaveStatus, SigningEnclave
from ledgerstamp.wallet.hd import KeyDerivation
from ledgerstamp.wallet.storage import FileStorage, MemoryStorage

__all__ = [
    "EnclaveStatus",
    "FileStorage",
    "KeyDerivation",
    "MemoryStorage",
    "SigningEnclave",
]
