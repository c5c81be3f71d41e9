"""Background workers supporting async processing."""

from .reconciliation import ReconciliationWorker

__all__ = ["ReconciliationWorker"]
