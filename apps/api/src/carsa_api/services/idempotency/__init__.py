from .guard import (
    AlreadyCompleted,
    AlreadyPending,
    BeginResult,
    IdempotencyGuard,
    Mismatch,
    Reconcile,
    Started,
    fingerprint,
    ledger_reference,
)

__all__ = [
    "AlreadyCompleted",
    "AlreadyPending",
    "BeginResult",
    "IdempotencyGuard",
    "Mismatch",
    "Reconcile",
    "Started",
    "fingerprint",
    "ledger_reference",
]
