"""
Transaction batcher — estimate and stamp a set of artifacts.

Per artifact:
    gzip (kept only if smaller) -> wallet-key encryption (private mode)
    -> split into chunks -> chunk record -> envelope payload

Estimation asks the chain transaction service about each payload and never
broadcasts. Commit spends the largest UTXO and then chains every following
payload off the previous change output, one transaction at a time. Partial
progress is reported in the BatchResult, never discarded.
"""

from __future__ import annotations

import asyncio
import base64
import gzip
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Sequence

from ledgerstamp import DEFAULT_CHUNK_SIZE, MASS_LIMIT
from ledgerstamp.chunking import Chunk, sha256_hex, split_artifact
from ledgerstamp.envelope import sealed_size
from ledgerstamp.errors import (
    CapacityError,
    ChainError,
    EnclaveLockedError,
    NetworkError,
    StampError,
)
from ledgerstamp.payload import (
    ChunkRecord,
    EncodedPayload,
    StampingEnvelope,
    encode_payload,
    serialize_chunk_record,
)
from ledgerstamp.stamping.chain import (
    ChainedTransaction,
    SubmissionError,
    call_with_retry,
    describe,
    submit_chained_transaction,
)
from ledgerstamp.stamping.receipt import (
    ENCRYPTED_PLACEHOLDER,
    MODES,
    ChunkRef,
    StampingReceipt,
)
from ledgerstamp.stamping.records import (
    AddressProvider,
    ChainTransactionService,
    TransactionEstimate,
    TransactionRequest,
    UtxoEntry,
)
from ledgerstamp.wallet.enclave import SigningEnclave

log = logging.getLogger(__name__)

Encryptor = Callable[[bytes, str], Awaitable[bytes]]


@dataclass(frozen=True)
class Artifact:
    """A file or text to stamp."""

    name: str
    data: bytes

    @classmethod
    def from_path(cls, path: str | Path) -> Artifact:
        p = Path(path)
        return cls(name=p.name, data=p.read_bytes())

    @classmethod
    def from_text(cls, text: str, name: str = "text.txt") -> Artifact:
        return cls(name=name, data=text.encode("utf-8"))


@dataclass
class PreparedArtifact:
    artifact: Artifact
    mode: str
    group_id: str
    original_digest: str
    compressed: bool
    encrypted: bool
    timestamp: str
    chunks: list[Chunk]
    payloads: list[EncodedPayload]

    @property
    def payload_bytes(self) -> int:
        return sum(len(p.payload) for p in self.payloads)


def compress_if_smaller(data: bytes) -> tuple[bytes, bool]:
    """gzip ``data``; return the original when compression does not help."""
    packed = gzip.compress(data, mtime=0)
    if len(packed) < len(data):
        return packed, True
    return data, False


async def prepare_artifact(
    artifact: Artifact,
    mode: str,
    *,
    group_id: str | None = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    compression: bool = True,
    encryptor: Encryptor | None = None,
    timestamp: str | None = None,
) -> PreparedArtifact:
    """Turn an artifact into encoded payloads.

    In private mode without an ``encryptor`` the ciphertext is replaced by a
    zero-filled placeholder of the exact sealed size; the payloads are then
    only good for size and fee estimation.
    """
    if mode not in MODES:
        raise ValueError(f"mode must be one of {', '.join(MODES)}, got {mode!r}")

    gid = group_id or str(uuid.uuid4())
    stamp_time = timestamp or datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    digest = sha256_hex(artifact.data)

    data, compressed = (
        compress_if_smaller(artifact.data) if compression else (artifact.data, False)
    )

    encrypted = False
    if mode == "private":
        if encryptor is not None:
            data = await encryptor(data, gid)
            encrypted = True
        else:
            data = bytes(sealed_size(len(data)))

    chunks = split_artifact(data, chunk_size=chunk_size, group_id=gid)
    file_name = artifact.name if mode == "public" else ENCRYPTED_PLACEHOLDER
    payloads = []
    for chunk in chunks:
        record = ChunkRecord(
            file_name=file_name,
            chunk_index=chunk.index,
            total_chunks=chunk.total,
            digest=chunk.digest,
            timestamp=stamp_time,
            chunk_data=chunk.data,
        )
        envelope = StampingEnvelope(
            metadata={"groupId": gid, "mode": mode},
            chunk_data=serialize_chunk_record(record),
        )
        payloads.append(encode_payload(envelope))

    log.debug(
        "Prepared %s group=%s chunks=%d compressed=%s mode=%s",
        artifact.name, gid[:8], len(chunks), compressed, mode,
    )
    return PreparedArtifact(
        artifact=artifact,
        mode=mode,
        group_id=gid,
        original_digest=digest,
        compressed=compressed,
        encrypted=encrypted,
        timestamp=stamp_time,
        chunks=chunks,
        payloads=payloads,
    )


def static_estimate(payload: EncodedPayload, priority_fee: int = 0) -> TransactionEstimate:
    """Offline estimate from the codec mass, for when no service answer is available."""
    mass = payload.mass_estimate.total_estimate
    # Minimum relay fee is 1 sompi per gram of mass
    return TransactionEstimate(transaction_count=1, fees=mass + priority_fee, mass=mass, utxo_count=1)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ArtifactEstimate:
    name: str
    group_id: str
    chunk_count: int
    payload_bytes: int
    transaction_count: int
    fees: int
    mass: int
    max_transaction_mass: int
    within_limit: bool
    source: str  # "service" or "static"


@dataclass(frozen=True)
class StampingEstimation:
    artifacts: list[ArtifactEstimate]
    # Artifacts that could not be prepared; they are not counted above
    failures: list[ArtifactFailure] = field(default_factory=list)

    @property
    def transaction_count(self) -> int:
        return sum(a.transaction_count for a in self.artifacts)

    @property
    def chunk_count(self) -> int:
        return sum(a.chunk_count for a in self.artifacts)

    @property
    def total_fees(self) -> int:
        return sum(a.fees for a in self.artifacts)

    @property
    def total_mass(self) -> int:
        return sum(a.mass for a in self.artifacts)

    @property
    def within_limit(self) -> bool:
        return not self.failures and all(a.within_limit for a in self.artifacts)

    @property
    def source(self) -> str:
        sources = {a.source for a in self.artifacts}
        if len(sources) > 1:
            return "mixed"
        return sources.pop() if sources else "static"


@dataclass
class ArtifactFailure:
    """An artifact that was not (fully) stamped.

    ``submitted_transaction_ids`` are already on the ledger and cannot be
    rolled back.
    """

    artifact: str
    group_id: str | None
    error: str
    error_type: str
    submitted_transaction_ids: list[str] = field(default_factory=list)
    failed_chunk_index: int | None = None
    attempted: bool = True


@dataclass
class BatchResult:
    receipts: list[StampingReceipt] = field(default_factory=list)
    failures: list[ArtifactFailure] = field(default_factory=list)
    # Every broadcast transaction in submission order, including partial artifacts
    transaction_ids: list[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def complete(self) -> bool:
        return not self.failures and not self.cancelled


def _failure(artifact: Artifact, group_id: str | None, error: BaseException | str, **kwargs: Any) -> ArtifactFailure:
    if isinstance(error, BaseException):
        return ArtifactFailure(artifact.name, group_id, describe(error), type(error).__name__, **kwargs)
    return ArtifactFailure(artifact.name, group_id, error, "Cancelled", **kwargs)


# ---------------------------------------------------------------------------
# Batcher
# ---------------------------------------------------------------------------

class TransactionBatcher:
    """Estimate and commit stamping transactions for one wallet account.

    Usage:
        batcher = TransactionBatcher(service, provider, enclave, network="testnet-10")
        estimate = await batcher.estimate([Artifact.from_path("a.pdf")], "public")
        result = await batcher.commit([Artifact.from_path("a.pdf")], "public")
    """

    def __init__(
        self,
        service: ChainTransactionService,
        provider: AddressProvider,
        enclave: SigningEnclave,
        *,
        network: str,
        account_index: int = 0,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        priority_fee: int = 0,
        compression: bool = True,
        request_timeout: float | None = 30.0,
        max_retries: int = 3,
        retry_backoff: float = 0.5,
    ) -> None:
        if priority_fee < 0:
            raise ValueError("priority_fee must be non-negative")
        self.service = service
        self.provider = provider
        self.enclave = enclave
        self.network = network
        self.account_index = account_index
        self.chunk_size = chunk_size
        self.priority_fee = priority_fee
        self.compression = compression
        self.request_timeout = request_timeout
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self._commit_lock = asyncio.Lock()

    @classmethod
    def from_config(
        cls,
        config: dict[str, Any],
        service: ChainTransactionService,
        provider: AddressProvider,
        enclave: SigningEnclave,
    ) -> TransactionBatcher:
        return cls(
            service, provider, enclave,
            network=config["network"],
            chunk_size=int(config["chunk_size"]),
            priority_fee=int(config["priority_fee"]),
            compression=bool(config["compression"]),
            request_timeout=float(config["request_timeout"]),
            max_retries=int(config["max_retries"]),
        )

    async def _retry(self, factory: Callable[[], Awaitable[Any]], what: str) -> Any:
        return await call_with_retry(
            factory,
            what=what,
            timeout=self.request_timeout,
            attempts=self.max_retries,
            backoff=self.retry_backoff,
        )

    async def _fetch_utxos(self) -> list[UtxoEntry]:
        records = await self._retry(self.provider.get_utxos, "UTXO query")
        return [UtxoEntry.from_record(r) for r in records]

    async def _encrypt(self, data: bytes, group_id: str) -> bytes:
        return await self.enclave.encrypt_with_wallet_key(data, group_id, self.account_index)

    async def _sign(self, pending: Any) -> None:
        await self.enclave.sign_with_auto_discovery(pending, self.network, self.account_index)

    # -- estimate ----------------------------------------------------------

    def _static_estimate(self, payload: EncodedPayload) -> TransactionEstimate:
        return static_estimate(payload, self.priority_fee)

    async def estimate(self, artifacts: Sequence[Artifact], mode: str = "public") -> StampingEstimation:
        """Estimate transactions, fees and mass. Never broadcasts."""
        if mode not in MODES:
            raise ValueError(f"mode must be one of {', '.join(MODES)}, got {mode!r}")
        try:
            utxos: list[UtxoEntry] | None = await self._fetch_utxos()
        except NetworkError as e:
            log.warning("UTXO query failed, using static estimates: %s", e)
            utxos = None

        results = []
        failures = []
        for artifact in artifacts:
            try:
                prepared = await prepare_artifact(
                    artifact, mode, chunk_size=self.chunk_size, compression=self.compression,
                )
            except (StampError, ValueError) as e:
                log.warning("Could not prepare %s for estimation: %s", artifact.name, e)
                failures.append(_failure(artifact, None, e))
                continue
            source = "service" if utxos is not None else "static"
            per_payload: list[TransactionEstimate] = []
            for payload in prepared.payloads:
                if source == "service":
                    request = TransactionRequest(
                        outputs=[],
                        change_address=self.provider.change_address,
                        utxo_entries=list(utxos),
                        payload=payload.payload,
                        priority_fee=self.priority_fee,
                        network_id=self.network,
                    )
                    try:
                        record = await self._retry(
                            lambda: self.service.estimate(request), "Fee estimation"
                        )
                        per_payload.append(TransactionEstimate.from_record(record))
                        continue
                    except NetworkError as e:
                        log.warning("Estimation failed for %s, using static estimate: %s", artifact.name, e)
                        source = "static"
                per_payload.append(self._static_estimate(payload))

            codec_ok = all(p.mass_estimate.within_limit for p in prepared.payloads)
            max_mass = max(e.mass for e in per_payload)
            results.append(ArtifactEstimate(
                name=artifact.name,
                group_id=prepared.group_id,
                chunk_count=len(prepared.chunks),
                payload_bytes=prepared.payload_bytes,
                transaction_count=sum(e.transaction_count for e in per_payload),
                fees=sum(e.fees for e in per_payload),
                mass=sum(e.mass for e in per_payload),
                max_transaction_mass=max_mass,
                within_limit=codec_ok and max_mass <= MASS_LIMIT,
                source=source,
            ))
        estimation = StampingEstimation(results, failures)
        log.info(
            "Estimated %d artifact(s): %d transactions, %d sompi fees (%s)",
            len(results), estimation.transaction_count, estimation.total_fees, estimation.source,
        )
        return estimation

    # -- commit ------------------------------------------------------------

    async def commit(
        self,
        artifacts: Sequence[Artifact],
        mode: str = "public",
        *,
        cancel: asyncio.Event | None = None,
    ) -> BatchResult:
        """Stamp ``artifacts``, one transaction per chunk, strictly in order.

        Raises EnclaveLockedError before doing anything when the wallet is
        locked, and NetworkError/ChainError when no UTXO can be obtained.
        Everything after the first broadcast is reported in the result.
        """
        if mode not in MODES:
            raise ValueError(f"mode must be one of {', '.join(MODES)}, got {mode!r}")
        if self.enclave.is_locked():
            raise EnclaveLockedError("Wallet must be unlocked to stamp")

        async with self._commit_lock:
            utxos = await self._fetch_utxos()
            if not utxos:
                raise ChainError(f"No spendable UTXOs for {self.provider.change_address}")
            current = [max(utxos, key=lambda u: u.amount)]
            log.info("Committing %d artifact(s) from UTXO of %d sompi", len(artifacts), current[0].amount)

            result = BatchResult()
            broken: str | None = None
            for artifact in artifacts:
                if broken is not None:
                    result.failures.append(_failure(artifact, None, ChainError(broken), attempted=False))
                    continue
                if cancel is not None and cancel.is_set():
                    result.cancelled = True
                    result.failures.append(_failure(artifact, None, "Cancelled before start", attempted=False))
                    continue

                outcome = await self._commit_artifact(artifact, mode, current, result, cancel)
                if outcome is None:
                    continue
                current, broken = outcome
            return result

    async def _commit_artifact(
        self,
        artifact: Artifact,
        mode: str,
        utxos: list[UtxoEntry],
        result: BatchResult,
        cancel: asyncio.Event | None,
    ) -> tuple[list[UtxoEntry], str | None] | None:
        """Stamp one artifact. Returns the next UTXOs and a chain-break reason.

        Returns None when nothing was broadcast and the chain is unchanged.
        """
        try:
            prepared = await prepare_artifact(
                artifact, mode,
                chunk_size=self.chunk_size,
                compression=self.compression,
                encryptor=self._encrypt if mode == "private" else None,
            )
        except (StampError, ValueError) as e:
            log.warning("Could not prepare %s: %s", artifact.name, e)
            result.failures.append(_failure(artifact, None, e))
            return None

        gid = prepared.group_id
        for i, payload in enumerate(prepared.payloads):
            mass = payload.mass_estimate
            if not mass.within_limit:
                err = CapacityError(
                    f"Chunk {i} estimated mass {mass.total_estimate} exceeds limit {mass.mass_limit}",
                    mass=mass.total_estimate, limit=mass.mass_limit,
                )
                result.failures.append(_failure(artifact, gid, err, failed_chunk_index=i))
                return None

        submitted: list[ChainedTransaction] = []

        def fail(error: BaseException | str, index: int) -> None:
            result.failures.append(_failure(
                artifact, gid, error,
                submitted_transaction_ids=[t.transaction_id for t in submitted],
                failed_chunk_index=index,
            ))

        for i, payload in enumerate(prepared.payloads):
            if cancel is not None and cancel.is_set():
                result.cancelled = True
                fail("Cancelled", i)
                return utxos, None
            try:
                tx = await submit_chained_transaction(
                    self.service, self._sign, utxos, payload.payload,
                    change_address=self.provider.change_address,
                    network_id=self.network,
                    priority_fee=self.priority_fee,
                    timeout=self.request_timeout,
                )
            except SubmissionError as e:
                log.error("Broadcast failed for %s chunk %d: %s", artifact.name, i, e)
                fail(e, i)
                return utxos, f"Chain stopped after failed broadcast: {e}"
            except Exception as e:
                # Nothing was broadcast for this chunk; the UTXO is still ours
                log.error("Transaction for %s chunk %d failed: %s", artifact.name, i, describe(e))
                fail(e, i)
                return utxos, None

            submitted.append(tx)
            result.transaction_ids.append(tx.transaction_id)
            if tx.virtual_utxo is None:
                reason = f"No change output found for transaction {tx.transaction_id[:12]} - cannot continue chain"
                if i < len(prepared.payloads) - 1:
                    fail(ChainError(reason), i + 1)
                    return utxos, reason
                utxos, broken = [], reason
                break
            utxos = [tx.virtual_utxo]
        else:
            broken = None

        try:
            receipt = await self._build_receipt(prepared, submitted)
        except StampError as e:
            # Transactions are on the ledger; hand back their ids
            log.error("Receipt for %s could not be sealed: %s", artifact.name, e)
            fail(e, len(submitted))
            return utxos, broken
        result.receipts.append(receipt)
        log.info("Stamped %s in %d transaction(s)", artifact.name, len(submitted))
        return utxos, broken

    async def _build_receipt(
        self, prepared: PreparedArtifact, submitted: list[ChainedTransaction]
    ) -> StampingReceipt:
        gid = prepared.group_id
        tx_ids = [t.transaction_id for t in submitted]
        receipt = StampingReceipt(
            id=tx_ids[0] if tx_ids else "",
            group_id=gid,
            mode=prepared.mode,
            chunks=[ChunkRef(c.index, c.total, c.digest) for c in prepared.chunks],
            transaction_ids=tx_ids,
            network=self.network,
            timestamp=prepared.timestamp,
            file_name=prepared.artifact.name,
            file_size=len(prepared.artifact.data),
            hash=prepared.original_digest,
            compressed=prepared.compressed,
            encrypted=prepared.encrypted,
            total_fees=sum(t.fees for t in submitted),
            total_mass=sum(t.mass for t in submitted),
        )
        if prepared.mode == "private":
            sealed_ids = await self.enclave.encrypt_with_wallet_key(
                json.dumps(tx_ids).encode("utf-8"), f"{gid}:transaction-ids", self.account_index
            )
            meta = {
                "fileName": prepared.artifact.name,
                "fileSize": len(prepared.artifact.data),
                "hash": prepared.original_digest,
            }
            sealed_meta = await self.enclave.encrypt_with_wallet_key(
                json.dumps(meta).encode("utf-8"), f"{gid}:metadata", self.account_index
            )
            receipt.transaction_ids = base64.b64encode(sealed_ids).decode("ascii")
            receipt.transaction_ids_encrypted = True
            receipt.encrypted_metadata = base64.b64encode(sealed_meta).decode("ascii")
            receipt.file_name = ENCRYPTED_PLACEHOLDER
            receipt.file_size = 0
            receipt.hash = ENCRYPTED_PLACEHOLDER
        return receipt
