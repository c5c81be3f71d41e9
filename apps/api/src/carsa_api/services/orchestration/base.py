"""Shared begin / submit / persist / complete skeleton for ledger-backed operations.

Every operation follows the same two-phase protocol:

1. ``begin`` the idempotency key.
2. ``prepare`` the ledger instruction and the commit plan. Business
   rejections here fail the key so the caller may retry.
3. Store the commit plan and ledger reference, then submit to the ledger.
   A ledger failure fails the key since no effect occurred.
4. Persist the confirmed effect and complete the key. A persistence failure
   leaves the key ambiguous (pending with a signature) so that only the
   persistence half is ever retried.

The ledger reference is derived from the key, so it is shared by every
attempt. A reopened key first asks the ledger whether that reference already
landed and, if so, records the earlier effect instead of submitting again.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Generic, Mapping, TypeVar

from loguru import logger

from carsa_api.domain.errors import (
    CarsaError,
    ErrorKind,
    InvalidTransitionError,
    OrchestrationFailure,
    PersistenceUnavailableError,
)
from carsa_api.models.idempotency import IdempotencyRecord, IdempotencyStatus, OperationKind
from carsa_api.observability.orchestration import OrchestrationObservabilityStore, get_orchestration_store
from carsa_api.services.idempotency import (
    AlreadyCompleted,
    AlreadyPending,
    IdempotencyGuard,
    Mismatch,
    Reconcile,
    Started,
    fingerprint,
    ledger_reference,
)
from carsa_api.services.ledger import LedgerClient, LedgerConfirmation, LedgerError
from carsa_api.services.persistence import PersistenceClient

OperationT = TypeVar("OperationT")
ReceiptT = TypeVar("ReceiptT")


@dataclass(slots=True)
class PreparedSubmission:
    """Ledger instruction plus the values the persistence half needs."""

    instruction: Any
    plan: dict[str, Any]


class LedgerBackedOrchestrator(ABC, Generic[OperationT, ReceiptT]):
    """Template for operations that pair one ledger effect with one local write."""

    operation: OperationKind

    def __init__(
        self,
        *,
        guard: IdempotencyGuard,
        ledger: LedgerClient,
        persistence: PersistenceClient,
        observability: OrchestrationObservabilityStore | None = None,
    ) -> None:
        self._guard = guard
        self._ledger = ledger
        self._persistence = persistence
        self._observability = observability or get_orchestration_store()

    # -- hooks -------------------------------------------------------------

    def validate(self, op: OperationT) -> None:
        """Reject malformed input before the key is touched."""

    @abstractmethod
    def idempotency_key(self, op: OperationT) -> str: ...

    @abstractmethod
    def request_payload(self, op: OperationT) -> Mapping[str, Any]: ...

    @abstractmethod
    async def prepare(self, op: OperationT, *, reference: str) -> PreparedSubmission: ...

    @abstractmethod
    async def submit(self, instruction: Any) -> LedgerConfirmation: ...

    @abstractmethod
    async def persist(self, plan: Mapping[str, Any], *, ledger_signature: str, key: str) -> dict[str, Any]:
        """Write the confirmed effect and return the JSON result stored on the key."""

    @abstractmethod
    def to_receipt(self, result: Mapping[str, Any]) -> ReceiptT: ...

    # -- protocol ----------------------------------------------------------

    async def process(self, op: OperationT) -> ReceiptT | OrchestrationFailure:
        key = self.idempotency_key(op)
        try:
            self.validate(op)
        except CarsaError as exc:
            return self._failure(exc.kind, exc.message, key)

        try:
            begun = await self._guard.begin(
                key, operation=self.operation, request_hash=fingerprint(self.request_payload(op))
            )
        except PersistenceUnavailableError as exc:
            logger.exception("Idempotency begin failed", idempotency_key=key, operation=self.operation.value)
            return self._failure(ErrorKind.PERSISTENCE, exc.message, key)

        if isinstance(begun, AlreadyCompleted):
            logger.info("Replaying completed operation", idempotency_key=key, operation=self.operation.value)
            self._observability.record_outcome(self.operation.value, "replayed")
            return self.to_receipt(begun.result)
        if isinstance(begun, AlreadyPending):
            return self._failure(ErrorKind.CONFLICT, "Operation already in progress for this idempotency key", key)
        if isinstance(begun, Mismatch):
            return self._failure(
                ErrorKind.VALIDATION, "Idempotency key was already used with a different request", key
            )
        if isinstance(begun, Reconcile):
            return await self.settle(begun.record)

        if not isinstance(begun, Started):
            raise InvalidTransitionError(f"Unexpected begin outcome for idempotency key {key}")
        if begun.previous_reference and begun.previous_plan:
            recovered = await self._recover_previous_attempt(begun)
            if recovered is not None:
                return recovered
        return await self._run(op, key, begun.attempt)

    async def settle(self, record: IdempotencyRecord) -> ReceiptT | OrchestrationFailure:
        """Run only the persistence half for an ambiguous key whose lease the caller holds."""

        key = record.key
        signature = record.ledger_signature
        if signature is None or not record.commit_plan:
            raise InvalidTransitionError(f"Idempotency key {key} has nothing to reconcile")

        logger.info(
            "Reconciling ambiguous operation",
            idempotency_key=key,
            operation=self.operation.value,
            ledger_signature=signature,
        )
        try:
            result = await self.persist(record.commit_plan, ledger_signature=signature, key=key)
            await self._guard.complete(key, result)
        except PersistenceUnavailableError as exc:
            logger.exception("Reconciliation persistence failed", idempotency_key=key, ledger_signature=signature)
            try:
                await self._guard.release(key, error=exc.message)
            except PersistenceUnavailableError:
                logger.error("Could not release reconciliation lease", idempotency_key=key)
            return self._failure(ErrorKind.PERSISTENCE, exc.message, key, ledger_signature=signature)
        except InvalidTransitionError:
            return await self._resolve_completed_elsewhere(key, signature)

        self._observability.record_outcome(self.operation.value, "reconciled")
        return self.to_receipt(result)

    async def _recover_previous_attempt(self, begun: Started) -> ReceiptT | OrchestrationFailure | None:
        """Settle an earlier attempt that reached the ledger after its key was failed.

        Returns ``None`` when the ledger holds no effect for the earlier
        reference, in which case a fresh submission is safe.
        """

        key = begun.key
        try:
            signature = await self._ledger.find_signature(begun.previous_reference)
        except LedgerError as exc:
            logger.warning("Could not check earlier attempt on the ledger", idempotency_key=key, error=exc.message)
            await self._mark_failed(key, exc.message)
            return self._failure(ErrorKind.LEDGER, exc.message, key)
        if signature is None:
            return None

        logger.warning(
            "Earlier attempt landed on the ledger; recording it instead of resubmitting",
            idempotency_key=key,
            attempt=begun.attempt,
            ledger_signature=signature,
        )
        confirmation = LedgerConfirmation(signature=signature, confirmed_at=datetime.now(timezone.utc), duplicate=True)
        return await self._commit(key, begun.previous_plan, confirmation)

    async def _run(self, op: OperationT, key: str, attempt: int) -> ReceiptT | OrchestrationFailure:
        reference = ledger_reference(key)
        try:
            prepared = await self.prepare(op, reference=reference)
            await self._guard.record_submission(key, reference=reference, plan=prepared.plan)
        except CarsaError as exc:
            if exc.kind in {ErrorKind.PERSISTENCE, ErrorKind.LEDGER}:
                logger.exception("Operation could not be prepared", idempotency_key=key, attempt=attempt)
            else:
                logger.warning(
                    "Operation rejected before ledger submission",
                    idempotency_key=key,
                    attempt=attempt,
                    kind=exc.kind.value,
                    reason=exc.message,
                )
            await self._mark_failed(key, exc.message)
            return self._failure(exc.kind, exc.message, key)

        self._observability.record_ledger_submission(self.operation.value)
        try:
            confirmation = await self.submit(prepared.instruction)
        except LedgerError as exc:
            logger.warning(
                "Ledger did not confirm operation",
                idempotency_key=key,
                attempt=attempt,
                reason=exc.reason,
                error=exc.message,
            )
            await self._mark_failed(key, exc.message)
            return self._failure(ErrorKind.LEDGER, exc.message, key)

        return await self._commit(key, prepared.plan, confirmation)

    async def _commit(
        self, key: str, plan: Mapping[str, Any], confirmation: LedgerConfirmation
    ) -> ReceiptT | OrchestrationFailure:
        signature = confirmation.signature
        if confirmation.duplicate:
            logger.info("Ledger reference was already confirmed", idempotency_key=key, ledger_signature=signature)
        try:
            result = await self.persist(plan, ledger_signature=signature, key=key)
            await self._guard.complete(key, result)
        except PersistenceUnavailableError as exc:
            logger.exception("Persistence failed after ledger confirmation", idempotency_key=key, ledger_signature=signature)
            try:
                await self._guard.mark_ambiguous(key, ledger_signature=signature, error=exc.message)
            except (PersistenceUnavailableError, InvalidTransitionError):
                # Operators recover from this log line when the marker itself cannot be written.
                logger.error(
                    "Ambiguous marker could not be written",
                    idempotency_key=key,
                    ledger_signature=signature,
                    plan=dict(plan),
                )
            return self._failure(
                ErrorKind.PERSISTENCE,
                "Ledger confirmed the operation but it could not be recorded; retry with the same idempotency key",
                key,
                ledger_signature=signature,
            )
        except InvalidTransitionError:
            return await self._resolve_completed_elsewhere(key, signature)

        logger.info(
            "Operation completed",
            idempotency_key=key,
            operation=self.operation.value,
            ledger_signature=signature,
            confirmed_at=confirmation.confirmed_at.isoformat(),
        )
        self._observability.record_outcome(self.operation.value, "succeeded")
        return self.to_receipt(result)

    async def _resolve_completed_elsewhere(self, key: str, signature: str) -> ReceiptT | OrchestrationFailure:
        # The reconciliation sweep may settle the same key concurrently.
        record = await self._guard.status(key)
        if record is not None and record.status == IdempotencyStatus.COMPLETED:
            self._observability.record_outcome(self.operation.value, "replayed")
            return self.to_receipt(record.result_ref or {})
        return self._failure(
            ErrorKind.CONFLICT, "Operation changed state while completing", key, ledger_signature=signature
        )

    async def _mark_failed(self, key: str, error: str) -> None:
        try:
            await self._guard.fail(key, error=error)
        except (PersistenceUnavailableError, InvalidTransitionError):
            # Left pending without a signature; the sweep fails it once stale.
            logger.exception("Could not mark idempotency key failed", idempotency_key=key)

    def _failure(
        self,
        kind: ErrorKind,
        message: str,
        key: str,
        *,
        ledger_signature: str | None = None,
    ) -> OrchestrationFailure:
        self._observability.record_outcome(self.operation.value, kind.value)
        return OrchestrationFailure(
            kind=kind, message=message, idempotency_key=key, ledger_signature=ledger_signature
        )


__all__ = ["LedgerBackedOrchestrator", "PreparedSubmission"]
