"""
UTXO chaining — submit payload transactions one after another.

Each transaction spends the change output of the previous one. The change
output is turned into a *virtual* UTXO (block DAA score = u64::MAX) so the
next transaction can be built before the first is confirmed.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Sequence

from ledgerstamp import MASS_LIMIT, VIRTUAL_DAA_SCORE
from ledgerstamp.errors import CapacityError, ChainError, NetworkError
from ledgerstamp.stamping.records import (
    ChainTransactionService,
    Outpoint,
    PendingTransaction,
    TransactionOutput,
    TransactionRequest,
    UtxoEntry,
    to_amount,
)
from ledgerstamp.wallet.address import pay_to_address_script

log = logging.getLogger(__name__)

Signer = Callable[[PendingTransaction], Awaitable[None]]

# Failures worth retrying on idempotent calls
RETRYABLE = (asyncio.TimeoutError, ConnectionError, OSError, NetworkError)


def describe(error: BaseException | None) -> str:
    """Message for an exception, falling back to its class name."""
    if error is None:
        return "unknown error"
    return str(error) or type(error).__name__


class SubmissionError(ChainError):
    """Broadcast failed; the spent UTXO state is unknown."""


@dataclass(frozen=True)
class ChainedTransaction:
    transaction_id: str
    fees: int
    mass: int
    virtual_utxo: UtxoEntry | None


async def call_with_retry(
    factory: Callable[[], Awaitable[Any]],
    *,
    what: str,
    timeout: float | None = None,
    attempts: int = 3,
    backoff: float = 0.5,
) -> Any:
    """Await ``factory()`` with a timeout, retrying network-class failures.

    Only for idempotent calls (estimation, UTXO queries). Other exceptions
    propagate immediately.
    """
    attempts = max(1, attempts)
    last: BaseException | None = None
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(factory(), timeout)
        except RETRYABLE as e:
            last = e
            log.warning("%s failed (attempt %d/%d): %s", what, attempt, attempts, describe(e))
            if attempt < attempts:
                await asyncio.sleep(backoff * attempt)
    raise NetworkError(f"{what} failed after {attempts} attempts: {describe(last)}") from last


def find_change_output(outputs: Sequence[Any], change_address: str) -> tuple[int, TransactionOutput] | None:
    """Locate the output paying to ``change_address``."""
    change_script = pay_to_address_script(change_address)
    for i, raw in enumerate(outputs):
        out = TransactionOutput.from_record(raw)
        if out.script_public_key == change_script:
            return i, out
    return None


async def submit_chained_transaction(
    service: ChainTransactionService,
    signer: Signer,
    utxos: Sequence[UtxoEntry],
    payload: bytes,
    *,
    change_address: str,
    network_id: str,
    receive_address: str | None = None,
    output_amount: int = 0,
    priority_fee: int = 0,
    timeout: float | None = None,
    mass_limit: int = MASS_LIMIT,
) -> ChainedTransaction:
    """Build, sign and broadcast one payload transaction.

    Raises CapacityError when the service's exact mass exceeds ``mass_limit``
    (nothing is broadcast), SubmissionError when the broadcast itself fails.
    """
    outputs = []
    if output_amount > 0:
        if not receive_address:
            raise ValueError("receive_address is required when output_amount > 0")
        outputs.append({"address": receive_address, "amount": output_amount})

    request = TransactionRequest(
        outputs=outputs,
        change_address=change_address,
        utxo_entries=list(utxos),
        payload=payload,
        priority_fee=priority_fee,
        network_id=network_id,
    )
    log.debug(
        "Creating transaction: payload=%d bytes inputs=%d virtual=%s",
        len(payload), len(utxos), bool(utxos) and utxos[0].is_virtual,
    )
    transactions = await asyncio.wait_for(service.create(request), timeout)
    if not transactions:
        raise ChainError("Transaction service produced no transactions")
    pending = transactions[0]

    mass = to_amount(pending.mass, "mass")
    if mass > mass_limit:
        raise CapacityError(
            f"Transaction mass {mass} exceeds limit {mass_limit}", mass=mass, limit=mass_limit
        )
    fees = to_amount(pending.fees, "fees")

    await signer(pending)

    try:
        txid = await asyncio.wait_for(pending.submit(), timeout)
    except Exception as e:
        raise SubmissionError(f"Broadcast failed: {describe(e)}") from e
    log.info("Transaction submitted %s (fees=%d mass=%d)", str(txid)[:12], fees, mass)

    virtual = None
    found = find_change_output(pending.outputs, change_address)
    if found is not None:
        index, out = found
        virtual = UtxoEntry(
            outpoint=Outpoint(str(txid), index),
            amount=out.value,
            script_public_key=out.script_public_key,
            block_daa_score=VIRTUAL_DAA_SCORE,
            is_coinbase=False,
            address=change_address,
        )
    else:
        log.warning("No change output in %s; chain cannot continue from it", str(txid)[:12])

    return ChainedTransaction(transaction_id=str(txid), fees=fees, mass=mass, virtual_utxo=virtual)


async def submit_transaction_chain(
    service: ChainTransactionService,
    signer: Signer,
    initial_utxos: Sequence[UtxoEntry],
    payloads: Sequence[bytes],
    *,
    change_address: str,
    network_id: str,
    priority_fee: int = 0,
    timeout: float | None = None,
    cancel: asyncio.Event | None = None,
) -> list[ChainedTransaction]:
    """Submit ``payloads`` in order, each spending the previous change output.

    Stops (without error) when ``cancel`` is set between transactions.
    Raises ChainError when a non-final transaction leaves no change output,
    and SubmissionError when a broadcast fails. Either way the error carries
    the ids already on the ledger and the index of the failed payload. Any
    other failure after the first broadcast is re-raised as ChainError so
    those ids are not lost.
    """
    results: list[ChainedTransaction] = []
    utxos = list(initial_utxos)
    for i, payload in enumerate(payloads):
        if cancel is not None and cancel.is_set():
            log.info("Chain cancelled after %d/%d transactions", i, len(payloads))
            break
        submitted = [r.transaction_id for r in results]
        try:
            result = await submit_chained_transaction(
                service, signer, utxos, payload,
                change_address=change_address,
                network_id=network_id,
                priority_fee=priority_fee,
                timeout=timeout,
            )
        except ChainError as e:
            e.submitted_transaction_ids = submitted
            e.failed_index = i
            raise
        except Exception as e:
            if not results:
                raise
            raise ChainError(
                f"Chain stopped at transaction {i + 1}: {describe(e)}",
                submitted_transaction_ids=submitted,
                failed_index=i,
            ) from e
        results.append(result)
        if i < len(payloads) - 1:
            if result.virtual_utxo is None:
                raise ChainError(
                    f"No change output found for transaction {i + 1} - cannot continue chain",
                    submitted_transaction_ids=[r.transaction_id for r in results],
                    failed_index=i + 1,
                )
            utxos = [result.virtual_utxo]
    return results
