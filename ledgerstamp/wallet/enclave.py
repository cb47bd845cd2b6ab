"""
Signing enclave — custody of the wallet mnemonic.

The mnemonic is stored only in wrapped form (PBKDF2 password key, AES-GCM).
While unlocked the enclave holds the wrapping key, never the mnemonic; each
signing or encryption call unwraps the mnemonic, derives what it needs and
wipes the intermediate buffers before returning.

States:
    uninitialized --store_mnemonic--> locked --unlock--> unlocked
    unlocked --lock / auto-lock deadline--> locked
    any --clear--> uninitialized

Persisted blob (hex, under ``<wallet_id>.enclave``):
    [1 byte: version = 1]
    [2 bytes: salt length, little-endian]   [salt]
    [4 bytes: cipher length, little-endian] [nonce || ciphertext || tag]
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
import struct
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol, Sequence

from ledgerstamp import (
    AUTO_DISCOVERY_SCAN,
    DEFAULT_AUTO_LOCK_MS,
    ENCLAVE_BLOB_VERSION,
    ENCLAVE_KDF_ITERATIONS,
    ENCLAVE_MIN_PASSWORD,
    ENCLAVE_SALT_SIZE,
    ENCLAVE_STORAGE_SUFFIX,
)
from ledgerstamp import envelope
from ledgerstamp.errors import (
    AuthenticationError,
    EnclaveLockedError,
    EncodingError,
    IntegrityError,
    KeyNotFoundError,
    NoMnemonicError,
    SaltReuseError,
)
from ledgerstamp.wallet.address import address_from_private_key
from ledgerstamp.wallet.hd import (
    KeyDerivation,
    derive_private_key,
    mnemonic_to_seed,
    validate_mnemonic,
)
from ledgerstamp.wallet.storage import KeyValueStorage

log = logging.getLogger(__name__)

_VERSION_STRUCT = struct.Struct("<BH")  # version, salt length
_LENGTH_STRUCT = struct.Struct("<I")  # cipher length


class SignableTransaction(Protocol):
    """What the enclave needs from a constructed transaction."""

    def addresses(self) -> Sequence[Any]: ...

    def sign(self, private_keys: Sequence[bytearray]) -> Any: ...


@dataclass(frozen=True)
class EnclaveStatus:
    is_locked: bool
    has_mnemonic: bool
    auto_lock_ms: int | None
    time_until_lock: int | None  # milliseconds, None when locked or no auto-lock


def pack_enclave_blob(salt: bytes, encrypted: bytes) -> bytes:
    if len(salt) > 0xFFFF:
        raise ValueError("Salt too long for enclave blob")
    return (
        _VERSION_STRUCT.pack(ENCLAVE_BLOB_VERSION, len(salt))
        + salt
        + _LENGTH_STRUCT.pack(len(encrypted))
        + encrypted
    )


def unpack_enclave_blob(data: bytes) -> tuple[bytes, bytes]:
    """Parse an enclave blob. Returns (salt, encrypted)."""
    if len(data) < _VERSION_STRUCT.size:
        raise EncodingError("Enclave blob too short")
    version, salt_len = _VERSION_STRUCT.unpack_from(data, 0)
    if version != ENCLAVE_BLOB_VERSION:
        raise EncodingError(f"Unknown enclave blob version: {version}")
    offset = _VERSION_STRUCT.size
    salt = data[offset : offset + salt_len]
    offset += salt_len
    if len(salt) != salt_len or len(data) < offset + _LENGTH_STRUCT.size:
        raise EncodingError("Enclave blob truncated in salt")
    (enc_len,) = _LENGTH_STRUCT.unpack_from(data, offset)
    offset += _LENGTH_STRUCT.size
    encrypted = data[offset : offset + enc_len]
    if len(encrypted) != enc_len:
        raise EncodingError("Enclave blob truncated in cipher data")
    return bytes(salt), bytes(encrypted)


def _wipe(buf: bytearray) -> None:
    for i in range(len(buf)):
        buf[i] = 0


class _Vault:
    """Secret state. Only the owning enclave holds a reference."""

    __slots__ = (
        "salt", "encrypted", "passphrase", "wrap_key", "deadline",
        "auto_lock_ms", "timer", "key_cache", "used_salts",
    )

    def __init__(self) -> None:
        self.salt: bytes | None = None
        self.encrypted: bytes | None = None
        self.passphrase = ""
        self.wrap_key: envelope.EnvelopeKey | None = None
        self.deadline: float | None = None
        self.auto_lock_ms: int | None = None
        self.timer: asyncio.TimerHandle | None = None
        self.key_cache: dict[str, envelope.EnvelopeKey] = {}
        self.used_salts: set[str] = set()


class SigningEnclave:
    """Capability object for signing and wallet-key encryption.

    Exposes operations only; no method returns the mnemonic, the seed or a
    private key.

    Usage:
        enclave = SigningEnclave(FileStorage(), wallet_id="main")
        await enclave.store_mnemonic(words, password)
        await enclave.unlock(password)
        await enclave.sign(pending_tx)
        enclave.lock()
    """

    __slots__ = ("_storage", "_storage_key", "_iterations", "_clock", "_op_lock", "__vault")

    def __init__(
        self,
        storage: KeyValueStorage | None = None,
        wallet_id: str | None = None,
        *,
        kdf_iterations: int = ENCLAVE_KDF_ITERATIONS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if kdf_iterations < 1:
            raise ValueError("kdf_iterations must be positive")
        self._storage = storage
        self._storage_key = f"{wallet_id}{ENCLAVE_STORAGE_SUFFIX}" if wallet_id else None
        self._iterations = kdf_iterations
        self._clock = clock
        self._op_lock = asyncio.Lock()
        self.__vault = _Vault()
        self._load()

    def __repr__(self) -> str:
        state = "locked" if self.is_locked() else "unlocked"
        return f"SigningEnclave({state}, key={self._storage_key!r})"

    def __reduce__(self):
        raise TypeError("SigningEnclave cannot be serialized")

    # -- persistence -------------------------------------------------------

    def _load(self) -> None:
        if self._storage is None or self._storage_key is None:
            return
        stored = self._storage.get_item(self._storage_key)
        if not stored:
            return
        try:
            salt, encrypted = unpack_enclave_blob(bytes.fromhex(stored))
        except (EncodingError, ValueError) as e:
            log.warning("Ignoring unreadable enclave blob %s: %s", self._storage_key, e)
            return
        self.__vault.salt = salt
        self.__vault.encrypted = encrypted
        log.debug("Loaded enclave blob %s", self._storage_key)

    def _save(self) -> None:
        v = self.__vault
        if self._storage is None or self._storage_key is None:
            return
        blob = pack_enclave_blob(v.salt, v.encrypted)
        self._storage.set_item(self._storage_key, blob.hex())
        log.debug("Saved enclave blob %s (%d bytes)", self._storage_key, len(blob))

    # -- state -------------------------------------------------------------

    def has_mnemonic(self) -> bool:
        return self.__vault.encrypted is not None

    def is_locked(self) -> bool:
        v = self.__vault
        if v.wrap_key is None:
            return True
        if v.deadline is not None and self._clock() >= v.deadline:
            self._expire()
            return True
        return False

    def get_status(self) -> EnclaveStatus:
        locked = self.is_locked()
        v = self.__vault
        remaining = None
        if not locked and v.deadline is not None:
            remaining = max(0, int((v.deadline - self._clock()) * 1000))
        return EnclaveStatus(
            is_locked=locked,
            has_mnemonic=self.has_mnemonic(),
            auto_lock_ms=None if locked else v.auto_lock_ms,
            time_until_lock=remaining,
        )

    def lock(self) -> None:
        """Discard the wrapping key, cached keys and the auto-lock timer."""
        v = self.__vault
        was_unlocked = v.wrap_key is not None
        if v.timer is not None:
            v.timer.cancel()
        v.timer = None
        v.wrap_key = None
        v.deadline = None
        v.auto_lock_ms = None
        v.key_cache.clear()
        if was_unlocked:
            log.info("Enclave locked")

    def clear(self) -> None:
        """Lock and forget the stored mnemonic, including the persisted blob."""
        self.lock()
        v = self.__vault
        v.salt = None
        v.encrypted = None
        v.passphrase = ""
        v.used_salts.clear()
        if self._storage is not None and self._storage_key is not None:
            self._storage.remove_item(self._storage_key)
        log.info("Enclave cleared")

    def _expire(self) -> None:
        log.info("Enclave auto-lock deadline reached")
        self.lock()

    def _require_unlocked(self) -> None:
        v = self.__vault
        if v.wrap_key is None:
            if v.encrypted is None:
                raise EnclaveLockedError("Signing enclave is locked: no mnemonic stored")
            raise EnclaveLockedError("Signing enclave is locked. Call unlock() first.")
        if v.deadline is not None and self._clock() >= v.deadline:
            self._expire()
            raise EnclaveLockedError("Signing enclave auto-locked: unlock window expired")

    # -- mnemonic ----------------------------------------------------------

    async def store_mnemonic(self, mnemonic: str, password: str, passphrase: str = "") -> None:
        """Wrap ``mnemonic`` with ``password`` and persist it. Leaves the enclave locked."""
        if not mnemonic or not mnemonic.strip():
            raise ValueError("Mnemonic cannot be empty")
        if not validate_mnemonic(mnemonic):
            raise ValueError("Invalid mnemonic: expected 12/15/18/21/24 words")
        if len(password) < ENCLAVE_MIN_PASSWORD:
            raise ValueError(f"Password must be at least {ENCLAVE_MIN_PASSWORD} characters")

        async with self._op_lock:
            salt = os.urandom(ENCLAVE_SALT_SIZE)
            key = await asyncio.to_thread(
                envelope.derive_password_key, password, salt, self._iterations
            )
            encrypted = envelope.encrypt(" ".join(mnemonic.split()).encode("utf-8"), key)

            self.lock()
            v = self.__vault
            v.salt = salt
            v.encrypted = encrypted
            v.passphrase = passphrase
            v.used_salts.clear()
            self._save()
            log.info("Mnemonic stored (%d words)", len(mnemonic.split()))

    async def unlock(
        self,
        password: str,
        auto_lock_ms: int = DEFAULT_AUTO_LOCK_MS,
        passphrase: str | None = None,
    ) -> None:
        """Verify ``password`` and open the unlock window.

        ``auto_lock_ms <= 0`` disables the deadline. Unlocking an unlocked
        enclave restarts the window. ``passphrase`` re-supplies the BIP-39
        passphrase after the enclave was reloaded from storage.
        """
        async with self._op_lock:
            v = self.__vault
            if v.encrypted is None:
                raise NoMnemonicError("No mnemonic stored. Call store_mnemonic() first.")

            key = await asyncio.to_thread(
                envelope.derive_password_key, password, v.salt, self._iterations
            )
            try:
                plain = bytearray(envelope.decrypt(v.encrypted, key))
            except (IntegrityError, EncodingError):
                raise AuthenticationError("Invalid password or corrupted data") from None
            _wipe(plain)

            self.lock()
            v.wrap_key = key
            if passphrase is not None:
                v.passphrase = passphrase
            if auto_lock_ms > 0:
                v.auto_lock_ms = auto_lock_ms
                v.deadline = self._clock() + auto_lock_ms / 1000
                try:
                    loop = asyncio.get_running_loop()
                    v.timer = loop.call_later(auto_lock_ms / 1000, self._expire)
                except RuntimeError:
                    v.timer = None
            log.info(
                "Enclave unlocked (auto-lock %s)",
                f"in {auto_lock_ms // 1000}s" if auto_lock_ms > 0 else "disabled",
            )

    def _seed(self) -> bytearray:
        """Unwrap the mnemonic and return the BIP-39 seed. Caller wipes."""
        v = self.__vault
        mnemonic = bytearray(envelope.decrypt(v.encrypted, v.wrap_key))
        try:
            return bytearray(mnemonic_to_seed(mnemonic.decode("utf-8"), v.passphrase))
        finally:
            _wipe(mnemonic)

    # -- signing -----------------------------------------------------------

    @staticmethod
    async def _apply_signature(transaction: SignableTransaction, keys: list[bytearray]) -> None:
        result = transaction.sign(keys)
        if inspect.isawaitable(result):
            await result

    async def sign(
        self,
        transaction: SignableTransaction,
        derivation: KeyDerivation | None = None,
    ) -> None:
        """Sign with the key at ``derivation`` (default account 0, receive 0)."""
        await self.sign_multiple(transaction, [derivation or KeyDerivation()])

    async def sign_multiple(
        self,
        transaction: SignableTransaction,
        derivations: Sequence[KeyDerivation],
    ) -> None:
        """Sign with every key in ``derivations``."""
        if not derivations:
            raise ValueError("No key derivations specified")
        async with self._op_lock:
            self._require_unlocked()
            seed = self._seed()
            keys: list[bytearray] = []
            try:
                keys = [derive_private_key(bytes(seed), d) for d in derivations]
                await self._apply_signature(transaction, keys)
            finally:
                _wipe(seed)
                for k in keys:
                    _wipe(k)
            log.debug("Signed transaction with %d key(s)", len(derivations))

    async def sign_with_auto_discovery(
        self,
        transaction: SignableTransaction,
        network: str,
        account_index: int = 0,
        scan_limit: int = AUTO_DISCOVERY_SCAN,
    ) -> None:
        """Find keys for the transaction's input addresses, then sign.

        Scans receive then change indices ``0..scan_limit-1`` of the account.
        """
        needed = {str(a) for a in transaction.addresses()}
        if not needed:
            raise ValueError("Transaction has no addresses to sign")

        async with self._op_lock:
            self._require_unlocked()
            seed = self._seed()
            found: dict[str, bytearray] = {}
            try:
                for is_receive in (True, False):
                    for index in range(scan_limit):
                        if len(found) == len(needed):
                            break
                        key = derive_private_key(
                            bytes(seed), KeyDerivation(account_index, index, is_receive)
                        )
                        address = address_from_private_key(bytes(key), network)
                        if address in needed and address not in found:
                            found[address] = key
                        else:
                            _wipe(key)

                missing = sorted(needed - found.keys())
                if missing:
                    raise KeyNotFoundError(
                        f"Could not find private keys for addresses: {', '.join(missing)}"
                    )
                await self._apply_signature(transaction, list(found.values()))
            finally:
                _wipe(seed)
                for k in found.values():
                    _wipe(k)
            log.debug("Auto-discovery signed %d address(es)", len(found))

    async def derive_address(
        self, network: str, derivation: KeyDerivation | None = None
    ) -> str:
        """Public address for a derivation path."""
        async with self._op_lock:
            self._require_unlocked()
            seed = self._seed()
            key = bytearray()
            try:
                key = derive_private_key(bytes(seed), derivation or KeyDerivation())
                return address_from_private_key(bytes(key), network)
            finally:
                _wipe(seed)
                _wipe(key)

    # -- wallet-key encryption ---------------------------------------------

    def _group_key(self, group_id: str, account_index: int) -> envelope.EnvelopeKey:
        v = self.__vault
        cache_key = f"{group_id}:{account_index}"
        key = v.key_cache.get(cache_key)
        if key is None:
            seed = self._seed()
            private = bytearray()
            try:
                private = derive_private_key(bytes(seed), KeyDerivation(account_index, 0, True))
                key = envelope.derive_envelope_key(private, group_id)
            finally:
                _wipe(seed)
                _wipe(private)
            v.key_cache[cache_key] = key
        return key

    async def encrypt_with_wallet_key(
        self, data: bytes, group_id: str, account_index: int = 0
    ) -> bytes:
        """Encrypt ``data`` under the wallet key salted with ``group_id``.

        A salt encrypts exactly one plaintext per enclave session; a second
        call with the same ``group_id`` raises SaltReuseError.
        """
        if not group_id:
            raise ValueError("group_id is required")
        async with self._op_lock:
            self._require_unlocked()
            v = self.__vault
            marker = f"{group_id}:{account_index}"
            if marker in v.used_salts:
                raise SaltReuseError(f"Salt already used for encryption: {group_id}")
            blob = envelope.encrypt(data, self._group_key(group_id, account_index))
            v.used_salts.add(marker)
            log.debug("Encrypted %d bytes for group %s", len(data), group_id[:8])
            return blob

    async def decrypt_with_wallet_key(
        self, data: bytes, group_id: str, account_index: int = 0
    ) -> bytes:
        if not group_id:
            raise ValueError("group_id is required")
        async with self._op_lock:
            self._require_unlocked()
            return envelope.decrypt(data, self._group_key(group_id, account_index))
