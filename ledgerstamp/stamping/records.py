"""
Boundary types for the chain transaction service and the address provider.

Records arriving from external SDKs are loosely typed (amounts as numeric
strings, camelCase or snake_case keys, nested ``utxoEntry`` objects). They
are converted here, once, into frozen dataclasses with integer amounts.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, Sequence

from ledgerstamp import VIRTUAL_DAA_SCORE
from ledgerstamp.errors import EncodingError

_INT_RE = re.compile(r"^\s*\d+\s*$")
_TXID_RE = re.compile(r"^[0-9a-f]{64}$")
U64_MAX = 2**64 - 1


def to_amount(value: Any, name: str = "amount") -> int:
    """Normalize an integer or numeric string to a non-negative u64."""
    if isinstance(value, bool):
        raise EncodingError(f"{name} must be an integer, got {value!r}")
    if isinstance(value, int):
        result = value
    elif isinstance(value, str) and _INT_RE.match(value):
        result = int(value)
    elif isinstance(value, float) and value.is_integer():
        result = int(value)
    else:
        raise EncodingError(f"{name} must be a non-negative integer, got {value!r}")
    if not 0 <= result <= U64_MAX:
        raise EncodingError(f"{name} out of range: {result}")
    return result


def _pick(record: Mapping[str, Any], *names: str, default: Any = None) -> Any:
    for name in names:
        if name in record and record[name] is not None:
            return record[name]
    return default


def _as_mapping(record: Any, what: str) -> Mapping[str, Any]:
    if isinstance(record, Mapping):
        return record
    if hasattr(record, "__dict__"):
        return vars(record)
    raise EncodingError(f"{what} must be a mapping, got {type(record).__name__}")


def script_hex(value: Any) -> str:
    """Normalize a script public key (hex string or {version, script}) to hex."""
    if isinstance(value, Mapping):
        value = _pick(value, "script", "scriptPublicKey")
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    if not isinstance(value, str):
        raise EncodingError(f"Invalid script public key: {value!r}")
    text = value.strip().lower()
    if len(text) % 2 or not re.match(r"^[0-9a-f]*$", text):
        raise EncodingError(f"Invalid script public key hex: {value!r}")
    return text


@dataclass(frozen=True)
class Outpoint:
    transaction_id: str
    index: int


@dataclass(frozen=True)
class UtxoEntry:
    """The fields of a spendable output that stamping needs."""

    outpoint: Outpoint
    amount: int
    script_public_key: str
    block_daa_score: int = 0
    is_coinbase: bool = False
    address: str | None = None

    @property
    def is_virtual(self) -> bool:
        """True for an unconfirmed change output chained from our own submission."""
        return self.block_daa_score == VIRTUAL_DAA_SCORE

    @classmethod
    def from_record(cls, record: Any) -> UtxoEntry:
        """Convert an SDK or node record.

        Accepts the node shape ``{address, outpoint, utxoEntry: {...}}`` as
        well as a flat record.
        """
        outer = _as_mapping(record, "UTXO entry")
        inner = outer.get("utxoEntry") or outer.get("entry") or outer
        inner = _as_mapping(inner, "UTXO entry")
        outpoint = _as_mapping(_pick(outer, "outpoint", default=inner.get("outpoint")) or {}, "outpoint")

        txid = _pick(outpoint, "transactionId", "transaction_id")
        if not isinstance(txid, str) or not _TXID_RE.match(txid.lower()):
            raise EncodingError(f"Invalid outpoint transaction id: {txid!r}")
        address = _pick(outer, "address", default=inner.get("address"))
        return cls(
            outpoint=Outpoint(txid.lower(), to_amount(_pick(outpoint, "index", default=0), "index")),
            amount=to_amount(_pick(inner, "amount", "value"), "amount"),
            script_public_key=script_hex(_pick(inner, "scriptPublicKey", "script_public_key")),
            block_daa_score=to_amount(
                _pick(inner, "blockDaaScore", "block_daa_score", default=0), "blockDaaScore"
            ),
            is_coinbase=bool(_pick(inner, "isCoinbase", "is_coinbase", default=False)),
            address=str(address) if address is not None else None,
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "outpoint": {
                "transactionId": self.outpoint.transaction_id,
                "index": self.outpoint.index,
            },
            "amount": self.amount,
            "scriptPublicKey": self.script_public_key,
            "blockDaaScore": self.block_daa_score,
            "isCoinbase": self.is_coinbase,
        }


@dataclass(frozen=True)
class TransactionOutput:
    value: int
    script_public_key: str

    @classmethod
    def from_record(cls, record: Any) -> TransactionOutput:
        data = _as_mapping(record, "transaction output")
        return cls(
            value=to_amount(_pick(data, "value", "amount"), "value"),
            script_public_key=script_hex(_pick(data, "scriptPublicKey", "script_public_key")),
        )


@dataclass(frozen=True)
class TransactionEstimate:
    """Service-side estimate for one payload."""

    transaction_count: int
    fees: int
    mass: int
    utxo_count: int = 0
    final_amount: int | None = None

    @property
    def needs_batching(self) -> bool:
        return self.transaction_count > 1

    @classmethod
    def from_record(cls, record: Any) -> TransactionEstimate:
        data = _as_mapping(record, "estimate")
        if "summary" in data and isinstance(data["summary"], Mapping):
            data = data["summary"]
        final = _pick(data, "finalAmount", "final_amount")
        return cls(
            transaction_count=to_amount(
                _pick(data, "transactionCount", "transaction_count", "transactions", default=1),
                "transactionCount",
            ),
            fees=to_amount(_pick(data, "fees", "totalFees", default=0), "fees"),
            mass=to_amount(_pick(data, "mass", "totalMass", default=0), "mass"),
            utxo_count=to_amount(_pick(data, "utxoCount", "utxo_count", "utxos", default=0), "utxoCount"),
            final_amount=to_amount(final, "finalAmount") if final is not None else None,
        )


@dataclass
class TransactionRequest:
    """Input for the chain transaction service."""

    outputs: list[dict[str, Any]]
    change_address: str
    utxo_entries: list[UtxoEntry]
    payload: bytes
    priority_fee: int
    network_id: str
    extra: dict[str, Any] = field(default_factory=dict)


class PendingTransaction(Protocol):
    """A constructed, unsigned transaction from the service."""

    outputs: Sequence[Any]
    fees: Any
    mass: Any

    def addresses(self) -> Sequence[Any]: ...

    def sign(self, private_keys: Sequence[bytearray]) -> Any: ...

    async def submit(self) -> str: ...


class ChainTransactionService(Protocol):
    async def estimate(self, request: TransactionRequest) -> Any: ...

    async def create(self, request: TransactionRequest) -> Sequence[PendingTransaction]: ...


class AddressProvider(Protocol):
    @property
    def receive_address(self) -> str: ...

    @property
    def change_address(self) -> str: ...

    async def get_utxos(self) -> Sequence[Any]: ...
