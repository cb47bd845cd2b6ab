"""
Chunk splitting — partition artifact bytes into digest-tagged slices.

Each chunk carries the SHA-256 of its own byte range, so corruption can be
pinned to a single transaction when the artifact is reassembled.
"""

from __future__ import annotations

import hashlib
import math
import uuid
from dataclasses import dataclass

from ledgerstamp import DEFAULT_CHUNK_SIZE
from ledgerstamp.errors import EncodingError, IntegrityError


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


@dataclass(frozen=True)
class Chunk:
    """One slice of an artifact.

    Attributes:
        group_id: Identifier shared by every chunk of one artifact.
        index: Position in ``[0, total)``.
        total: Number of chunks in the group.
        data: The slice bytes.
        digest: SHA-256 hex of ``data``.
    """

    group_id: str
    index: int
    total: int
    data: bytes
    digest: str

    def verify(self) -> bool:
        """Recompute the digest and compare."""
        return sha256_hex(self.data) == self.digest


def _check_size(name: str, value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an integer, got {value!r}")
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")


def split_artifact(
    data: bytes,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    group_id: str | None = None,
    min_chunks: int = 1,
) -> list[Chunk]:
    """Split ``data`` into ordered chunks.

    Small inputs (``len(data) <= chunk_size`` with ``min_chunks <= 1``) give a
    single chunk. Otherwise the count is ``max(min_chunks, ceil(len/size))``
    and slices past the end of the data are empty.

    Raises ValueError for non-positive sizes.
    """
    _check_size("chunk_size", chunk_size)
    _check_size("min_chunks", min_chunks)
    data = bytes(data)
    gid = group_id or str(uuid.uuid4())

    if len(data) <= chunk_size and min_chunks <= 1:
        return [Chunk(gid, 0, 1, data, sha256_hex(data))]

    total = max(min_chunks, math.ceil(len(data) / chunk_size))
    chunks = []
    for i in range(total):
        piece = data[i * chunk_size : (i + 1) * chunk_size]
        chunks.append(Chunk(gid, i, total, piece, sha256_hex(piece)))
    return chunks


def reassemble(chunks: list[Chunk]) -> bytes:
    """Join chunks of one group back into the artifact bytes.

    Checks group id, total, index coverage and every digest.
    """
    if not chunks:
        raise EncodingError("No chunks to reassemble")

    ordered = sorted(chunks, key=lambda c: c.index)
    first = ordered[0]
    for c in ordered:
        if c.group_id != first.group_id:
            raise EncodingError(
                f"Mixed chunk groups: {first.group_id} and {c.group_id}"
            )
        if c.total != first.total:
            raise EncodingError(
                f"Inconsistent chunk total: {first.total} and {c.total}"
            )

    indices = [c.index for c in ordered]
    if indices != list(range(first.total)):
        raise EncodingError(
            f"Chunk indices {indices} do not cover 0..{first.total - 1}"
        )

    for c in ordered:
        if not c.verify():
            raise IntegrityError(f"Chunk {c.index} digest mismatch")

    return b"".join(c.data for c in ordered)
