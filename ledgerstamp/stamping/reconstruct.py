"""
Rebuild a stamped artifact from its receipt and the on-ledger payloads.

Reverses the stamping pipeline: decode each payload, unwrap the chunk record,
reassemble in index order, decrypt (private mode), gunzip, then compare the
SHA-256 against the receipt.
"""

from __future__ import annotations

import base64
import binascii
import gzip
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from ledgerstamp.chunking import Chunk, reassemble, sha256_hex
from ledgerstamp.errors import EnclaveLockedError, EncodingError, IntegrityError
from ledgerstamp.payload import decode_payload, deserialize_chunk_record
from ledgerstamp.stamping.receipt import ENCRYPTED_PLACEHOLDER, StampingReceipt
from ledgerstamp.wallet.enclave import SigningEnclave

log = logging.getLogger(__name__)

PayloadFetcher = Callable[[str], Awaitable[Any]]


@dataclass(frozen=True)
class ReconstructionResult:
    data: bytes
    file_name: str
    group_id: str
    mode: str
    chunk_count: int
    hash_verified: bool


def _b64(text: str, what: str) -> bytes:
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as e:
        raise EncodingError(f"{what} is not valid base64: {e}") from e


async def _open_sealed_json(
    enclave: SigningEnclave, text: str, salt: str, account_index: int, what: str
) -> Any:
    plain = await enclave.decrypt_with_wallet_key(_b64(text, what), salt, account_index)
    try:
        return json.loads(plain.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise EncodingError(f"{what} did not decrypt to JSON: {e}") from e


async def reconstruct_artifact(
    receipt: StampingReceipt | dict[str, Any],
    fetch_payload: PayloadFetcher,
    enclave: SigningEnclave | None = None,
    account_index: int = 0,
) -> ReconstructionResult:
    """Fetch every payload named by ``receipt`` and rebuild the artifact.

    ``fetch_payload(txid)`` returns the transaction payload as bytes or hex.
    Private receipts need an unlocked ``enclave`` holding the same wallet.

    Raises IntegrityError when a separator, a digest or the final hash does
    not match, EncodingError for malformed payloads.
    """
    if isinstance(receipt, dict):
        receipt = StampingReceipt.from_dict(receipt)
    gid = receipt.group_id
    needs_enclave = (
        receipt.encrypted or receipt.transaction_ids_encrypted or receipt.encrypted_metadata
    )
    if needs_enclave and enclave is None:
        raise EnclaveLockedError("Private receipt requires an unlocked signing enclave")

    tx_ids = receipt.transaction_ids
    if receipt.transaction_ids_encrypted:
        tx_ids = await _open_sealed_json(
            enclave, str(tx_ids), f"{gid}:transaction-ids", account_index, "transactionIds"
        )
    if not isinstance(tx_ids, list) or not tx_ids:
        raise EncodingError("Receipt lists no transaction ids")

    file_name, expected_hash = receipt.file_name, receipt.hash
    if receipt.encrypted_metadata:
        meta = await _open_sealed_json(
            enclave, receipt.encrypted_metadata, f"{gid}:metadata", account_index, "encryptedMetadata"
        )
        file_name = str(meta.get("fileName", file_name))
        expected_hash = str(meta.get("hash", expected_hash))

    chunks = []
    for txid in tx_ids:
        decoded = decode_payload(await fetch_payload(txid))
        if not decoded.valid_separator:
            raise IntegrityError(f"Payload of {txid[:12]} has a corrupt separator")
        if decoded.metadata.get("groupId") != gid:
            raise IntegrityError(
                f"Transaction {txid[:12]} belongs to group {decoded.metadata.get('groupId')!r}, not {gid!r}"
            )
        record = deserialize_chunk_record(decoded.chunk_data)
        chunks.append(Chunk(gid, record.chunk_index, record.total_chunks, record.chunk_data, record.digest))
        log.debug("Fetched chunk %d/%d from %s", record.chunk_index + 1, record.total_chunks, txid[:12])

    expected = {ref.index: ref.digest for ref in receipt.chunks}
    for chunk in chunks:
        if chunk.index in expected and expected[chunk.index] != chunk.digest:
            raise IntegrityError(f"Chunk {chunk.index} digest differs from the receipt")

    data = reassemble(chunks)
    if receipt.encrypted:
        data = await enclave.decrypt_with_wallet_key(data, gid, account_index)
    if receipt.compressed:
        try:
            data = gzip.decompress(data)
        except (OSError, EOFError) as e:
            raise EncodingError(f"Artifact is not valid gzip: {e}") from e

    verified = False
    if expected_hash and expected_hash != ENCRYPTED_PLACEHOLDER:
        if sha256_hex(data) != expected_hash:
            raise IntegrityError("Reconstructed artifact hash does not match the receipt")
        verified = True

    log.info("Reconstructed %s (%d bytes, %d chunks)", file_name, len(data), len(chunks))
    return ReconstructionResult(
        data=data,
        file_name=file_name,
        group_id=gid,
        mode=receipt.mode,
        chunk_count=len(chunks),
        hash_verified=verified,
    )
