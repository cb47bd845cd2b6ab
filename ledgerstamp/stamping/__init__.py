"""
Stamping layer — turning artifacts into chained ledger transactions.

Modules:
    records      — boundary types for the transaction service and address provider
    chain        — submit payload transactions, each spending the previous change
    batcher      — TransactionBatcher: estimate and commit a set of artifacts
    receipt      — StampingReceipt, compact tokens, validation
    reconstruct  — rebuild an artifact from its receipt and on-ledger payloads
"""

from ledgerstamp.stamping.batcher import (
    Artifact,
    ArtifactFailure,
    BatchResult,
    StampingEstimation,
    TransactionBatcher,
)
from ledgerstamp.stamping.receipt import StampingReceipt, validate_receipt

__all__ = [
    "Artifact",
    "ArtifactFailure",
    "BatchResult",
    "StampingEstimation",
    "StampingReceipt",
    "TransactionBatcher",
    "validate_receipt",
]
