"""
Payload codec — the binary envelope carried in each transaction payload.

Wire format:
    [4 bytes: metadata length, little-endian uint32]
    [N bytes: metadata, UTF-8 JSON object]
    [4 bytes: separator, 00 00 00 00]
    [rest:    chunk bytes]

The same layout is used one level down for the per-chunk record
(file name, chunk index/total, digest, timestamp + chunk bytes) that a
stamping envelope carries as its chunk data.

Mass figures produced here assume a single consolidated input and are
advisory; the chain transaction service computes the exact mass.
"""

from __future__ import annotations

import json
import re
import struct
from dataclasses import dataclass, field
from typing import Any

from ledgerstamp import (
    BASE_TX_MASS,
    DEBUG_PREVIEW_BYTES,
    INPUT_MASS,
    MASS_LIMIT,
    METADATA_MAX_BYTES,
    OUTPUT_MASS,
    PAYLOAD_HEADER_SIZE,
    PAYLOAD_MIN_SIZE,
    PAYLOAD_PREVIEW_BYTES,
    PAYLOAD_SEPARATOR,
)
from ledgerstamp.errors import EncodingError, IntegrityError

HEADER_STRUCT = struct.Struct("<I")  # little-endian uint32 metadata length
SEPARATOR_SIZE = len(PAYLOAD_SEPARATOR)

_HEX_RE = re.compile(r"^[0-9a-fA-F]*$")
_WS_RE = re.compile(r"\s+")


@dataclass
class StampingEnvelope:
    """Metadata plus chunk bytes, destined for one transaction."""

    metadata: dict[str, Any]
    chunk_data: bytes = b""


@dataclass(frozen=True)
class PayloadStructure:
    metadata_length: int
    metadata_bytes: int
    separator_bytes: int
    chunk_data_bytes: int
    total_bytes: int
    header_bytes: int = PAYLOAD_HEADER_SIZE


@dataclass(frozen=True)
class MassEstimate:
    base_transaction: int
    inputs: int
    outputs: int
    payload_mass: int
    total_estimate: int
    mass_limit: int
    within_limit: bool


@dataclass(frozen=True)
class EncodedPayload:
    payload: bytes
    structure: PayloadStructure
    mass_estimate: MassEstimate
    debug: dict[str, str] = field(default_factory=dict)

    @property
    def hex(self) -> str:
        return self.payload.hex()


@dataclass(frozen=True)
class DecodedPayload:
    """Result of parsing a payload.

    ``valid_separator`` is False when the four bytes after the metadata are
    not all zero; the rest of the structure is still returned so the caller
    can decide whether to trust it.
    """

    metadata: dict[str, Any]
    metadata_json: str
    metadata_length: int
    valid_separator: bool
    chunk_data: bytes
    structure: PayloadStructure
    estimated_mass: int
    within_mass_limit: bool

    @property
    def chunk_data_preview(self) -> bytes:
        return self.chunk_data[:PAYLOAD_PREVIEW_BYTES]

    def to_dict(self) -> dict[str, Any]:
        return {
            "metadata": self.metadata,
            "metadataLength": self.metadata_length,
            "validSeparator": self.valid_separator,
            "chunkDataBytes": len(self.chunk_data),
            "chunkDataPreviewHex": self.chunk_data_preview.hex(),
            "structure": {
                "headerBytes": self.structure.header_bytes,
                "metadataBytes": self.structure.metadata_bytes,
                "separatorBytes": self.structure.separator_bytes,
                "chunkDataBytes": self.structure.chunk_data_bytes,
                "totalBytes": self.structure.total_bytes,
            },
            "estimatedMass": self.estimated_mass,
            "withinMassLimit": self.within_mass_limit,
        }


def _metadata_bytes(metadata: dict[str, Any]) -> bytes:
    if not isinstance(metadata, dict):
        raise EncodingError("Metadata must be a JSON object")
    try:
        text = json.dumps(metadata, separators=(",", ":"), ensure_ascii=False)
        raw = text.encode("utf-8")
    except (TypeError, ValueError) as e:
        raise EncodingError(f"Metadata cannot be encoded as UTF-8 JSON: {e}") from e
    if len(raw) > METADATA_MAX_BYTES:
        raise EncodingError(
            f"Metadata too large: {len(raw)} bytes (max {METADATA_MAX_BYTES})"
        )
    return raw


def _pack(metadata: dict[str, Any], data: bytes) -> tuple[bytes, bytes]:
    meta = _metadata_bytes(metadata)
    return HEADER_STRUCT.pack(len(meta)) + meta + PAYLOAD_SEPARATOR + bytes(data), meta


def estimate_mass(payload_length: int) -> MassEstimate:
    """Heuristic upper bound for a one-input, one-change-output transaction."""
    total = BASE_TX_MASS + INPUT_MASS + OUTPUT_MASS + payload_length
    return MassEstimate(
        base_transaction=BASE_TX_MASS,
        inputs=INPUT_MASS,
        outputs=OUTPUT_MASS,
        payload_mass=payload_length,
        total_estimate=total,
        mass_limit=MASS_LIMIT,
        within_limit=total < MASS_LIMIT,
    )


def encode_payload(envelope: StampingEnvelope) -> EncodedPayload:
    """Serialize an envelope to payload bytes with structure and mass info.

    Raises EncodingError if the metadata is not a JSON object or exceeds
    the 10 000 byte limit.
    """
    payload, meta = _pack(envelope.metadata, envelope.chunk_data)
    structure = PayloadStructure(
        metadata_length=len(meta),
        metadata_bytes=len(meta),
        separator_bytes=SEPARATOR_SIZE,
        chunk_data_bytes=len(envelope.chunk_data),
        total_bytes=len(payload),
    )
    debug = {
        "metadata_json": meta.decode("utf-8"),
        "metadata_length_hex": payload[:PAYLOAD_HEADER_SIZE].hex(),
        "separator_hex": PAYLOAD_SEPARATOR.hex(),
        "payload_preview_hex": payload[:DEBUG_PREVIEW_BYTES].hex(),
    }
    return EncodedPayload(
        payload=payload,
        structure=structure,
        mass_estimate=estimate_mass(len(payload)),
        debug=debug,
    )


def parse_hex(text: str) -> bytes:
    """Parse a hex string, tolerating whitespace and a ``0x`` prefix."""
    clean = _WS_RE.sub("", text)
    if clean[:2].lower() == "0x":
        clean = clean[2:]
    if not _HEX_RE.match(clean):
        raise EncodingError("Invalid hex string: contains non-hex characters")
    if len(clean) % 2:
        raise EncodingError("Invalid hex string: odd length")
    return bytes.fromhex(clean)


def _split(data: bytes) -> tuple[dict[str, Any], str, int, bool, bytes]:
    if len(data) < PAYLOAD_MIN_SIZE:
        raise EncodingError(
            "Payload too short: must be at least 8 bytes (header + separator)"
        )

    (meta_len,) = HEADER_STRUCT.unpack_from(data, 0)
    if meta_len > METADATA_MAX_BYTES:
        raise EncodingError(
            f"Invalid metadata length: {meta_len} (expected 0-{METADATA_MAX_BYTES})"
        )
    meta_end = PAYLOAD_HEADER_SIZE + meta_len
    if meta_end + SEPARATOR_SIZE > len(data):
        raise EncodingError(
            f"Payload truncated: metadata length {meta_len} needs "
            f"{meta_end + SEPARATOR_SIZE} bytes, got {len(data)}"
        )

    try:
        meta_json = data[PAYLOAD_HEADER_SIZE:meta_end].decode("utf-8")
    except UnicodeDecodeError as e:
        raise EncodingError(f"Failed to decode metadata as UTF-8: {e}") from e
    try:
        metadata = json.loads(meta_json)
    except json.JSONDecodeError as e:
        raise EncodingError(f"Failed to parse metadata JSON: {e}") from e
    if not isinstance(metadata, dict):
        raise EncodingError("Failed to parse metadata JSON: not an object")

    separator = data[meta_end : meta_end + SEPARATOR_SIZE]
    return (
        metadata,
        meta_json,
        meta_len,
        separator == PAYLOAD_SEPARATOR,
        data[meta_end + SEPARATOR_SIZE :],
    )


def decode_payload(payload: str | bytes) -> DecodedPayload:
    """Parse payload bytes (or their hex form) back into an envelope.

    Raises EncodingError on malformed hex, short or truncated input, an
    out-of-range metadata length, or metadata that is not UTF-8 JSON.
    A non-zero separator is reported via ``valid_separator``.
    """
    data = parse_hex(payload) if isinstance(payload, str) else bytes(payload)
    metadata, meta_json, meta_len, valid_sep, chunk_data = _split(data)

    structure = PayloadStructure(
        metadata_length=meta_len,
        metadata_bytes=meta_len,
        separator_bytes=SEPARATOR_SIZE,
        chunk_data_bytes=len(chunk_data),
        total_bytes=len(data),
    )
    mass = BASE_TX_MASS + len(data)
    return DecodedPayload(
        metadata=metadata,
        metadata_json=meta_json,
        metadata_length=meta_len,
        valid_separator=valid_sep,
        chunk_data=chunk_data,
        structure=structure,
        estimated_mass=mass,
        within_mass_limit=mass <= MASS_LIMIT,
    )


# ---------------------------------------------------------------------------
# Chunk records (the inner layer carried as envelope chunk data)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChunkRecord:
    file_name: str
    chunk_index: int
    total_chunks: int
    digest: str
    timestamp: str
    chunk_data: bytes = b""

    def metadata(self) -> dict[str, Any]:
        return {
            "fileName": self.file_name,
            "chunkIndex": self.chunk_index,
            "totalChunks": self.total_chunks,
            "digest": self.digest,
            "timestamp": self.timestamp,
        }


def serialize_chunk_record(record: ChunkRecord) -> bytes:
    payload, _ = _pack(record.metadata(), record.chunk_data)
    return payload


def deserialize_chunk_record(data: bytes) -> ChunkRecord:
    """Parse a chunk record. A corrupt separator raises IntegrityError."""
    metadata, _, _, valid_sep, chunk_data = _split(bytes(data))
    if not valid_sep:
        raise IntegrityError("Chunk record separator is not 00000000")
    try:
        return ChunkRecord(
            file_name=str(metadata["fileName"]),
            chunk_index=int(metadata["chunkIndex"]),
            total_chunks=int(metadata["totalChunks"]),
            digest=str(metadata["digest"]),
            timestamp=str(metadata["timestamp"]),
            chunk_data=chunk_data,
        )
    except (KeyError, TypeError, ValueError) as e:
        raise EncodingError(f"Chunk record metadata incomplete: {e}") from e
