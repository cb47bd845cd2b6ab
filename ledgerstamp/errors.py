"""
Error taxonomy shared across the stamping engine.

    EncodingError   malformed input (hex, lengths, UTF-8, JSON, records)
    IntegrityError  tampering or wrong key (AEAD tag, digest, separator)
    CustodyError    enclave refused (locked, bad password, no mnemonic)
    CapacityError   transaction mass over the network limit
    NetworkError    collaborator failures, including a broken UTXO chain
"""

from __future__ import annotations


class StampError(Exception):
    """Base class for all ledgerstamp errors."""


class EncodingError(StampError, ValueError):
    """Input could not be parsed. Never guessed-and-continued."""


class IntegrityError(StampError):
    """Data failed an authenticity or digest check."""


class CustodyError(StampError):
    """The signing enclave refused an operation."""


class EnclaveLockedError(CustodyError):
    """Operation requires an unlocked enclave."""


class AuthenticationError(CustodyError):
    """Password did not unwrap the stored mnemonic."""


class NoMnemonicError(CustodyError):
    """No mnemonic has been stored in the enclave."""


class KeyNotFoundError(CustodyError):
    """No derived key matches an address that needs a signature."""


class SaltReuseError(CustodyError):
    """An encryption salt was used twice under the same wallet key."""


class CapacityError(StampError):
    """Transaction mass exceeds what the network accepts."""

    def __init__(self, message: str, mass: int = 0, limit: int = 0) -> None:
        super().__init__(message)
        self.mass = mass
        self.limit = limit


class NetworkError(StampError):
    """A network-facing collaborator failed or timed out."""


class ChainError(NetworkError):
    """The transaction chain cannot continue from the last submission.

    ``submitted_transaction_ids`` are already on the ledger; ``failed_index``
    is the position of the payload that was not stamped.
    """

    def __init__(
        self,
        message: str,
        submitted_transaction_ids: list[str] | None = None,
        failed_index: int | None = None,
    ) -> None:
        super().__init__(message)
        self.submitted_transaction_ids = list(submitted_transaction_ids or [])
        self.failed_index = failed_index
