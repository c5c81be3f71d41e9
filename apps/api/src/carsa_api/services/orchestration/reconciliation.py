"""Out-of-band settlement of ambiguous and stalled idempotency keys.

The sweep only ever runs the persistence half of an operation. It never
submits to the ledger.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from loguru import logger

from carsa_api.core.settings import settings
from carsa_api.domain.errors import InvalidTransitionError, OrchestrationFailure
from carsa_api.models.idempotency import IdempotencyRecord
from carsa_api.observability.orchestration import OrchestrationObservabilityStore, get_orchestration_store
from carsa_api.services.ledger import LedgerError

from .registry import Orchestrators


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive timestamps.
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@dataclass
class SweepSummary:
    settled: int = 0
    failed_settlements: int = 0
    recovered: int = 0
    expired: int = 0
    unresolved: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "settled": self.settled,
            "failed_settlements": self.failed_settlements,
            "recovered": self.recovered,
            "expired": self.expired,
            "unresolved": self.unresolved,
        }


class ReconciliationService:
    """Settles ambiguous keys and resolves submissions that never recorded an outcome."""

    def __init__(
        self,
        orchestrators: Orchestrators,
        *,
        batch_size: int | None = None,
        stale_after_seconds: int | None = None,
        fail_after_seconds: int | None = None,
        observability: OrchestrationObservabilityStore | None = None,
    ) -> None:
        self._orchestrators = orchestrators
        self._guard = orchestrators.guard
        self._persistence = orchestrators.persistence
        self._ledger = orchestrators.ledger
        self._batch_size = batch_size or settings.reconciliation_batch_size
        self._stale_after = timedelta(seconds=stale_after_seconds or settings.stale_pending_after_seconds)
        self._fail_after = timedelta(seconds=fail_after_seconds or settings.stale_pending_fail_after_seconds)
        self._observability = observability or get_orchestration_store()

    async def settle(self, record: IdempotencyRecord) -> bool:
        """Persist and complete one claimed ambiguous record. Returns ``True`` on success."""

        orchestrator = self._orchestrators.for_operation(record.operation)
        try:
            outcome = await orchestrator.settle(record)
        except InvalidTransitionError as exc:
            logger.error("Ambiguous record cannot be settled", idempotency_key=record.key, error=exc.message)
            return False
        return not isinstance(outcome, OrchestrationFailure)

    async def sweep(self, *, now: datetime | None = None) -> SweepSummary:
        now = now or datetime.now(timezone.utc)
        summary = SweepSummary()

        for record in await self._persistence.list_ambiguous(lease_free_at=now, limit=self._batch_size):
            claimed = await self._guard.claim(record.key)
            if claimed is None:
                continue
            if await self.settle(claimed):
                summary.settled += 1
            else:
                summary.failed_settlements += 1

        stale = await self._persistence.list_stale_submissions(
            updated_before=now - self._stale_after, limit=self._batch_size
        )
        for record in stale:
            await self._resolve_stale(record, now=now, summary=summary)

        self._observability.record_reconciliation("settled", summary.settled)
        self._observability.record_reconciliation("failed_settlements", summary.failed_settlements)
        self._observability.record_reconciliation("recovered", summary.recovered)
        self._observability.record_reconciliation("expired", summary.expired)
        logger.info("Reconciliation sweep finished", **summary.as_dict())
        return summary

    async def _resolve_stale(self, record: IdempotencyRecord, *, now: datetime, summary: SweepSummary) -> None:
        key = record.key
        if record.ledger_reference is None:
            # Never reached the ledger; nothing to recover.
            await self._expire(key, "Operation stalled before ledger submission", summary)
            return

        try:
            signature = await self._ledger.find_signature(record.ledger_reference)
        except LedgerError as exc:
            logger.warning("Ledger lookup failed during sweep", idempotency_key=key, error=exc.message)
            summary.unresolved += 1
            return

        if signature is None:
            if now - _as_utc(record.updated_at) >= self._fail_after:
                await self._expire(key, "Ledger never confirmed the submission", summary)
            else:
                summary.unresolved += 1
            return

        try:
            await self._guard.mark_ambiguous(key, ledger_signature=signature, error="Recovered by reference lookup")
        except InvalidTransitionError:
            summary.unresolved += 1
            return
        claimed = await self._guard.claim(key)
        if claimed is not None and await self.settle(claimed):
            summary.recovered += 1
        else:
            summary.unresolved += 1

    async def _expire(self, key: str, error: str, summary: SweepSummary) -> None:
        try:
            await self._guard.fail(key, error=error)
        except InvalidTransitionError:
            summary.unresolved += 1
            return
        summary.expired += 1


__all__ = ["ReconciliationService", "SweepSummary"]
