"""Idempotency-key lifecycle for ledger-backed operations.

Lifecycle::

    (absent) --begin--> PENDING --complete--> COMPLETED
                           |  \
                           |   --mark_ambiguous--> PENDING + signature --settle--> COMPLETED
                           |
                           --fail--> FAILED --begin--> PENDING (next attempt)

A completed key never runs side effects again. A failed key may be
re-opened by ``begin`` for a fresh attempt. An ambiguous key is only ever
resumed through its persistence half.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

from loguru import logger

from carsa_api.domain.errors import InvalidTransitionError
from carsa_api.models.idempotency import IdempotencyRecord, IdempotencyStatus, OperationKind
from carsa_api.services.persistence import PersistenceClient


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def fingerprint(payload: Mapping[str, Any]) -> str:
    """Stable SHA-256 fingerprint of a request body."""

    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def ledger_reference(key: str) -> str:
    """Deterministic reference handed to the ledger for deduplication.

    Derived from the key alone so that every attempt of one key shares it. A
    late landing from an earlier attempt then deduplicates against the retry.
    """

    return hashlib.sha256(key.encode("utf-8")).hexdigest()


@dataclass(frozen=True, slots=True)
class Started:
    key: str
    attempt: int
    previous_reference: str | None = None
    previous_plan: dict[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class AlreadyPending:
    key: str


@dataclass(frozen=True, slots=True)
class AlreadyCompleted:
    key: str
    result: dict[str, Any]


@dataclass(frozen=True, slots=True)
class Reconcile:
    """Ambiguous key claimed by this caller; only the persistence half may run."""

    record: IdempotencyRecord


@dataclass(frozen=True, slots=True)
class Mismatch:
    key: str


BeginResult = Started | AlreadyPending | AlreadyCompleted | Reconcile | Mismatch


class IdempotencyGuard:
    """Durable guard built on insert-if-absent and compare-and-set updates."""

    def __init__(self, persistence: PersistenceClient, *, lease_seconds: int = 120) -> None:
        self._persistence = persistence
        self._lease = timedelta(seconds=lease_seconds)

    async def begin(self, key: str, *, operation: OperationKind, request_hash: str) -> BeginResult:
        if await self._persistence.insert_idempotency(key, operation=operation, request_hash=request_hash):
            logger.info("Idempotency key started", idempotency_key=key, operation=operation.value, attempt=1)
            return Started(key=key, attempt=1)

        record = await self._persistence.get_idempotency(key)
        if record is None:
            # Lost the insert race and the winner's row is not visible yet.
            return AlreadyPending(key=key)

        if record.operation != operation:
            return Mismatch(key=key)

        if record.status == IdempotencyStatus.COMPLETED:
            if record.request_hash != request_hash:
                return Mismatch(key=key)
            return AlreadyCompleted(key=key, result=dict(record.result_ref or {}))

        if record.status == IdempotencyStatus.FAILED:
            return await self._reopen(record, request_hash)

        if record.request_hash != request_hash:
            return Mismatch(key=key)
        if record.ledger_signature is not None:
            claimed = await self.claim(key)
            if claimed is not None:
                return Reconcile(record=claimed)
        return AlreadyPending(key=key)

    async def _reopen(self, record: IdempotencyRecord, request_hash: str) -> BeginResult:
        attempt = (record.attempts or 1) + 1
        reopened = await self._persistence.update_idempotency(
            record.key,
            {
                "status": IdempotencyStatus.PENDING,
                "attempts": attempt,
                "request_hash": request_hash,
                "ledger_signature": None,
                "last_error": None,
                "lease_expires_at": None,
            },
            when_status=IdempotencyStatus.FAILED,
        )
        if not reopened:
            return AlreadyPending(key=record.key)
        logger.info("Idempotency key reopened after failure", idempotency_key=record.key, attempt=attempt)
        # The earlier reference and plan stay on the row until the next
        # submission overwrites them.
        return Started(
            key=record.key,
            attempt=attempt,
            previous_reference=record.ledger_reference,
            previous_plan=dict(record.commit_plan) if record.commit_plan else None,
        )

    async def claim(self, key: str) -> IdempotencyRecord | None:
        """Take the reconciliation lease on an ambiguous record."""

        now = _utcnow()
        claimed = await self._persistence.update_idempotency(
            key,
            {"lease_expires_at": now + self._lease},
            when_status=IdempotencyStatus.PENDING,
            signature_present=True,
            lease_free_at=now,
        )
        if not claimed:
            return None
        return await self._persistence.get_idempotency(key)

    async def record_submission(self, key: str, *, reference: str, plan: Mapping[str, Any]) -> None:
        """Persist the commit plan and ledger reference before the ledger call."""

        updated = await self._persistence.update_idempotency(
            key,
            {"ledger_reference": reference, "commit_plan": dict(plan)},
            when_status=IdempotencyStatus.PENDING,
            signature_present=False,
        )
        if not updated:
            raise InvalidTransitionError(f"Idempotency key {key} is not awaiting submission")

    async def complete(self, key: str, result: Mapping[str, Any]) -> None:
        now = _utcnow()
        updated = await self._persistence.update_idempotency(
            key,
            {
                "status": IdempotencyStatus.COMPLETED,
                "result_ref": dict(result),
                "completed_at": now,
                "lease_expires_at": None,
                "last_error": None,
            },
            when_status=IdempotencyStatus.PENDING,
        )
        if not updated:
            raise InvalidTransitionError(f"Idempotency key {key} is not pending")
        logger.info("Idempotency key completed", idempotency_key=key)

    async def fail(self, key: str, *, error: str | None = None) -> None:
        """Mark a pending attempt failed. Refuses keys that already hold a ledger signature."""

        updated = await self._persistence.update_idempotency(
            key,
            {"status": IdempotencyStatus.FAILED, "last_error": error, "lease_expires_at": None},
            when_status=IdempotencyStatus.PENDING,
            signature_present=False,
        )
        if not updated:
            raise InvalidTransitionError(f"Idempotency key {key} cannot be failed")
        logger.info("Idempotency key failed", idempotency_key=key, error=error)

    async def mark_ambiguous(self, key: str, *, ledger_signature: str, error: str | None = None) -> None:
        """Attach the confirmed ledger signature to a pending key whose persistence failed."""

        updated = await self._persistence.update_idempotency(
            key,
            {"ledger_signature": ledger_signature, "last_error": error, "lease_expires_at": None},
            when_status=IdempotencyStatus.PENDING,
        )
        if not updated:
            raise InvalidTransitionError(f"Idempotency key {key} is not pending")
        logger.error(
            "Idempotency key left ambiguous after ledger confirmation",
            idempotency_key=key,
            ledger_signature=ledger_signature,
            error=error,
        )

    async def release(self, key: str, *, error: str | None = None) -> None:
        """Drop the reconciliation lease after a failed settle so another retrier may claim it."""

        await self._persistence.update_idempotency(
            key,
            {"lease_expires_at": None, "last_error": error},
            when_status=IdempotencyStatus.PENDING,
            signature_present=True,
        )

    async def status(self, key: str) -> IdempotencyRecord | None:
        return await self._persistence.get_idempotency(key)


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
