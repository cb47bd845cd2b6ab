"""
Envelope encryption for private-mode chunks.

- Key derivation: HKDF-SHA256 over a 32-byte wallet private key, salted with
  the artifact's group id, info = ``ledgerstamp/envelope/v1``
- Password keys: PBKDF2-HMAC-SHA256 (stdlib), used to wrap the mnemonic
- Encryption: AES-256-GCM, output ``nonce(12) || ciphertext || tag(16)``

A derived key lives only inside an ``EnvelopeKey``; the raw bytes are never
stored on it and the object cannot be pickled.

Each group id must be used to encrypt exactly one plaintext per wallet key;
the signing enclave enforces this.
"""

from __future__ import annotations

import hashlib
import os

from ledgerstamp import (
    ENVELOPE_HKDF_INFO,
    ENVELOPE_KEY_SIZE,
    ENVELOPE_NONCE_SIZE,
    ENVELOPE_TAG_SIZE,
)
from ledgerstamp.errors import EncodingError, IntegrityError


def _import_cryptography():
    """Import the cryptography primitives used here.

    Raises ImportError with a helpful message if not installed.
    """
    try:
        from cryptography.exceptions import InvalidTag
        from cryptography.hazmat.primitives import hashes
        from cryptography.hazmat.primitives.ciphers.aead import AESGCM
        from cryptography.hazmat.primitives.kdf.hkdf import HKDF

        return AESGCM, HKDF, hashes, InvalidTag
    except ImportError:
        raise ImportError(
            "cryptography is required for envelope encryption. "
            "Install with: pip install ledgerstamp"
        )


def _wipe(buf: bytearray) -> None:
    # Best-effort key zeroing
    for i in range(len(buf)):
        buf[i] = 0


class EnvelopeKey:
    """Opaque AES-256-GCM key. Only encrypt/decrypt can use it."""

    __slots__ = ("_aead",)

    def __init__(self, key_material: bytes | bytearray) -> None:
        if len(key_material) != ENVELOPE_KEY_SIZE:
            raise ValueError(f"Key must be {ENVELOPE_KEY_SIZE} bytes")
        AESGCM, _, _, _ = _import_cryptography()
        self._aead = AESGCM(bytes(key_material))

    def __repr__(self) -> str:
        return "EnvelopeKey(<redacted>)"

    def __reduce__(self):
        raise TypeError("EnvelopeKey cannot be serialized")


def derive_envelope_key(private_key: bytes | bytearray, salt: str) -> EnvelopeKey:
    """Derive the AES key for one artifact group from a wallet private key.

    Args:
        private_key: 32-byte secp256k1 private key (input keying material).
        salt: Unique per artifact, normally the chunk group id.
    """
    if len(private_key) != 32:
        raise ValueError("Private key must be 32 bytes")
    if not salt:
        raise ValueError("Salt must be a non-empty string")

    _, HKDF, hashes, _ = _import_cryptography()
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=ENVELOPE_KEY_SIZE,
        salt=salt.encode("utf-8"),
        info=ENVELOPE_HKDF_INFO,
    )
    key = bytearray(hkdf.derive(bytes(private_key)))
    try:
        return EnvelopeKey(key)
    finally:
        _wipe(key)


def derive_password_key(password: str, salt: bytes, iterations: int) -> EnvelopeKey:
    """Derive a wrapping key from a password using PBKDF2-HMAC-SHA256."""
    key = bytearray(hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt,
        iterations,
        dklen=ENVELOPE_KEY_SIZE,
    ))
    try:
        return EnvelopeKey(key)
    finally:
        _wipe(key)


def encrypt(plaintext: bytes, key: EnvelopeKey) -> bytes:
    """Encrypt with a fresh random nonce. Returns nonce || ciphertext || tag."""
    nonce = os.urandom(ENVELOPE_NONCE_SIZE)
    return nonce + key._aead.encrypt(nonce, bytes(plaintext), None)


def decrypt(blob: bytes, key: EnvelopeKey) -> bytes:
    """Decrypt nonce || ciphertext || tag.

    Raises EncodingError if the blob cannot hold a nonce, IntegrityError on
    authentication failure (tampered data or wrong key).
    """
    if len(blob) < ENVELOPE_NONCE_SIZE:
        raise EncodingError(
            f"Encrypted data too short: {len(blob)} bytes "
            f"(need at least {ENVELOPE_NONCE_SIZE}-byte nonce)"
        )
    _, _, _, InvalidTag = _import_cryptography()
    nonce = bytes(blob[:ENVELOPE_NONCE_SIZE])
    try:
        return key._aead.decrypt(nonce, bytes(blob[ENVELOPE_NONCE_SIZE:]), None)
    except InvalidTag:
        raise IntegrityError("Decryption failed: wrong key or tampered ciphertext")


def sealed_size(plaintext_length: int) -> int:
    """Length of ``encrypt`` output for a plaintext of the given length."""
    return ENVELOPE_NONCE_SIZE + plaintext_length + ENVELOPE_TAG_SIZE
