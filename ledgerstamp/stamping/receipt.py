"""
Stamping receipts — the portable record that links an artifact's chunk
digests to the transactions carrying them.

JSON shape (camelCase, forward-extensible; unknown keys are kept in
``extra`` and written back unchanged):

    {
      "id": "<first txid>",
      "groupId": "...", "mode": "public" | "private",
      "chunks": [{"index": 0, "total": 2, "digest": "<sha256>"}, ...],
      "transactionIds": ["<txid>", ...] | "<base64 ciphertext>",
      "network": "testnet-10", "timestamp": "2026-01-01T00:00:00+00:00",
      "fileName": "...", "fileSize": 123, "hash": "<sha256>",
      "compressed": true, "encrypted": false,
      "transactionIdsEncrypted": false, "encryptedMetadata": null,
      "totalFees": 12345, "totalMass": 45678
    }

Receipts can be shared as a compact token: gzip(JSON), base64url.
"""

from __future__ import annotations

import base64
import binascii
import gzip
import json
import re
import zlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from urllib.parse import urlparse

from ledgerstamp.errors import EncodingError

MODES = ("public", "private")
ENCRYPTED_PLACEHOLDER = "[encrypted]"

_HEX64_RE = re.compile(r"^[0-9a-f]{64}$")

# Upper bounds for sanity checks
MAX_FILE_SIZE = 10 * 1024 * 1024 * 1024  # 10 GB
MAX_CHUNKS = 100_000
MAX_FILENAME_LENGTH = 255
MAX_STRING_LENGTH = 10_000

DANGEROUS_EXTENSIONS = frozenset({
    ".exe", ".dll", ".bat", ".cmd", ".com", ".scr", ".pif",
    ".app", ".dmg", ".pkg", ".sh", ".bash", ".zsh", ".ps1", ".psm1",
    ".vbs", ".vbe", ".js", ".jse", ".wsf", ".wsh", ".msi", ".msp",
    ".jar", ".apk", ".deb", ".rpm",
})

SUSPICIOUS_PATTERNS = (
    re.compile(r"<script[^>]*>", re.I),
    re.compile(r"javascript:", re.I),
    re.compile(r"on\w+\s*=", re.I),
    re.compile(r"data:text/html", re.I),
    re.compile(r"vbscript:", re.I),
    re.compile(r"<iframe[^>]*>", re.I),
    re.compile(r"\.\.[\\/]"),
    re.compile(r"[<>'\"]"),
)

_KNOWN_KEYS = frozenset({
    "id", "groupId", "mode", "chunks", "transactionIds", "network", "timestamp",
    "fileName", "fileSize", "hash", "compressed", "encrypted",
    "transactionIdsEncrypted", "encryptedMetadata", "totalFees", "totalMass",
    "chunkCount",
})


@dataclass(frozen=True)
class ChunkRef:
    index: int
    total: int
    digest: str

    def to_dict(self) -> dict[str, Any]:
        return {"index": self.index, "total": self.total, "digest": self.digest}


@dataclass
class StampingReceipt:
    group_id: str
    mode: str
    chunks: list[ChunkRef]
    transaction_ids: list[str] | str
    network: str
    timestamp: str
    file_name: str = ""
    file_size: int = 0
    hash: str = ""
    compressed: bool = False
    encrypted: bool = False
    transaction_ids_encrypted: bool = False
    encrypted_metadata: str | None = None
    total_fees: int = 0
    total_mass: int = 0
    id: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def chunk_count(self) -> int:
        return len(self.chunks)

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.extra)
        data.update({
            "id": self.id,
            "groupId": self.group_id,
            "mode": self.mode,
            "chunks": [c.to_dict() for c in self.chunks],
            "chunkCount": self.chunk_count,
            "transactionIds": (
                list(self.transaction_ids)
                if isinstance(self.transaction_ids, list)
                else self.transaction_ids
            ),
            "transactionIdsEncrypted": self.transaction_ids_encrypted,
            "network": self.network,
            "timestamp": self.timestamp,
            "fileName": self.file_name,
            "fileSize": self.file_size,
            "hash": self.hash,
            "compressed": self.compressed,
            "encrypted": self.encrypted,
            "encryptedMetadata": self.encrypted_metadata,
            "totalFees": self.total_fees,
            "totalMass": self.total_mass,
        })
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StampingReceipt:
        """Build a receipt from its JSON form. Raises EncodingError on bad shape."""
        if not isinstance(data, dict):
            raise EncodingError("Receipt must be a JSON object")
        try:
            chunks = [
                ChunkRef(int(c["index"]), int(c["total"]), str(c["digest"]))
                for c in data.get("chunks", [])
            ]
            tx_ids = data["transactionIds"]
            if not isinstance(tx_ids, str):
                tx_ids = [str(t) for t in tx_ids]
            return cls(
                id=str(data.get("id", "")),
                group_id=str(data["groupId"]),
                mode=str(data["mode"]),
                chunks=chunks,
                transaction_ids=tx_ids,
                network=str(data.get("network", "")),
                timestamp=str(data.get("timestamp", "")),
                file_name=str(data.get("fileName", "")),
                file_size=int(data.get("fileSize", 0)),
                hash=str(data.get("hash", "")),
                compressed=bool(data.get("compressed", False)),
                encrypted=bool(data.get("encrypted", False)),
                transaction_ids_encrypted=bool(data.get("transactionIdsEncrypted", False)),
                encrypted_metadata=data.get("encryptedMetadata"),
                total_fees=int(data.get("totalFees", 0)),
                total_mass=int(data.get("totalMass", 0)),
                extra={k: v for k, v in data.items() if k not in _KNOWN_KEYS},
            )
        except (KeyError, TypeError, ValueError) as e:
            raise EncodingError(f"Malformed receipt: {e}") from e

    def to_json(self, indent: int | None = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_json(cls, text: str) -> StampingReceipt:
        try:
            return cls.from_dict(json.loads(text))
        except json.JSONDecodeError as e:
            raise EncodingError(f"Receipt is not valid JSON: {e}") from e


# ---------------------------------------------------------------------------
# Compact tokens
# ---------------------------------------------------------------------------

def encode_receipt_token(receipt: StampingReceipt) -> str:
    """gzip + base64url (unpadded) form of the receipt JSON."""
    raw = json.dumps(receipt.to_dict(), separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(gzip.compress(raw)).rstrip(b"=").decode("ascii")


def _inflate(data: bytes) -> bytes:
    for attempt in (gzip.decompress, zlib.decompress, lambda d: zlib.decompress(d, -15)):
        try:
            return attempt(data)
        except (OSError, EOFError, zlib.error):
            continue
    return data


def decode_receipt_token(text: str) -> dict[str, Any]:
    """Decode a receipt from a token, a URL ending in a token, or plain JSON."""
    text = text.strip()
    if text.startswith("{"):
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise EncodingError(f"Receipt is not valid JSON: {e}") from e

    if "://" in text:
        text = urlparse(text).path.rstrip("/").rsplit("/", 1)[-1]
    padded = text + "=" * (-len(text) % 4)
    try:
        blob = base64.urlsafe_b64decode(padded.replace("+", "-").replace("/", "_"))
    except (binascii.Error, ValueError) as e:
        raise EncodingError(f"Receipt token is not base64url: {e}") from e

    try:
        data = json.loads(_inflate(blob).decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise EncodingError(f"Receipt token does not contain JSON: {e}") from e
    if not isinstance(data, dict):
        raise EncodingError("Receipt token does not contain a JSON object")
    return data


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

@dataclass
class ValidationResult:
    valid: bool = True
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def error(self, message: str) -> None:
        self.errors.append(message)
        self.valid = False


def _check_string(result: ValidationResult, value: Any, name: str,
                  max_length: int = MAX_STRING_LENGTH) -> None:
    if not isinstance(value, str):
        result.error(f"{name} must be a string")
        return
    if len(value) > max_length:
        result.error(f"{name} exceeds maximum length ({max_length})")
    for pattern in SUSPICIOUS_PATTERNS:
        if pattern.search(value):
            result.warnings.append(f"{name} contains suspicious pattern: {pattern.pattern}")


def _check_chunks(result: ValidationResult, chunks: Any) -> None:
    if not isinstance(chunks, list):
        result.error("chunks must be a list")
        return
    if len(chunks) > MAX_CHUNKS:
        result.error(f"chunks exceeds maximum count ({MAX_CHUNKS})")
        return
    totals = set()
    indices = []
    for i, chunk in enumerate(chunks):
        if not isinstance(chunk, dict):
            result.error(f"chunks[{i}] must be an object")
            continue
        index, total, digest = chunk.get("index"), chunk.get("total"), chunk.get("digest")
        if not isinstance(index, int) or isinstance(index, bool) or index < 0:
            result.error(f"chunks[{i}].index must be a non-negative integer")
        else:
            indices.append(index)
        if not isinstance(total, int) or isinstance(total, bool) or total < 1:
            result.error(f"chunks[{i}].total must be a positive integer")
        else:
            totals.add(total)
        if not isinstance(digest, str) or not _HEX64_RE.match(digest):
            result.error(f"chunks[{i}].digest must be a 64-char hex SHA-256")
    if len(totals) > 1:
        result.error("chunks disagree on total")
    elif totals and sorted(indices) != list(range(totals.pop())):
        result.error("chunk indices do not cover 0..total-1 exactly once")


def validate_receipt(data: Any) -> ValidationResult:
    """Check a receipt's structure and content before using it."""
    result = ValidationResult()
    if not isinstance(data, dict):
        result.error("Receipt must be a JSON object")
        return result

    for name in ("groupId", "mode", "chunks", "transactionIds", "network", "timestamp"):
        if name not in data:
            result.error(f"Missing required field: {name}")
    if not result.valid:
        return result

    _check_string(result, data["groupId"], "groupId", 128)
    if data["mode"] not in MODES:
        result.error(f"mode must be one of {', '.join(MODES)}")
    _check_string(result, data["network"], "network", 64)

    try:
        datetime.fromisoformat(str(data["timestamp"]).replace("Z", "+00:00"))
    except ValueError:
        result.error("timestamp must be ISO 8601")

    _check_chunks(result, data["chunks"])

    tx_ids = data["transactionIds"]
    if data.get("transactionIdsEncrypted"):
        if not isinstance(tx_ids, str) or not tx_ids:
            result.error("encrypted transactionIds must be a non-empty string")
    elif not isinstance(tx_ids, list):
        result.error("transactionIds must be a list")
    else:
        if len(tx_ids) > MAX_CHUNKS:
            result.error(f"transactionIds exceeds maximum count ({MAX_CHUNKS})")
        for i, txid in enumerate(tx_ids):
            if not isinstance(txid, str) or not _HEX64_RE.match(txid):
                result.error(f"transactionIds[{i}] must be a 64-char hex id")
        if isinstance(data["chunks"], list) and len(tx_ids) != len(data["chunks"]):
            result.warnings.append(
                f"{len(tx_ids)} transaction ids for {len(data['chunks'])} chunks"
            )

    file_name = data.get("fileName")
    if file_name is not None:
        _check_string(result, file_name, "fileName", MAX_FILENAME_LENGTH)
        if isinstance(file_name, str) and "." in file_name:
            ext = "." + file_name.lower().rsplit(".", 1)[-1]
            if ext in DANGEROUS_EXTENSIONS:
                result.warnings.append(
                    f"fileName has potentially dangerous extension: {ext}"
                )

    file_size = data.get("fileSize", 0)
    if not isinstance(file_size, int) or isinstance(file_size, bool) or not 0 <= file_size <= MAX_FILE_SIZE:
        result.error(f"fileSize must be an integer between 0 and {MAX_FILE_SIZE}")

    digest = data.get("hash")
    if digest and digest != ENCRYPTED_PLACEHOLDER and not _HEX64_RE.match(str(digest)):
        result.error("hash must be a 64-char hex SHA-256")

    return result
