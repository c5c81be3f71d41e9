import asyncio

import pytest

from carsa_api.domain.errors import InvalidTransitionError
from carsa_api.models.idempotency import IdempotencyStatus, OperationKind
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
from carsa_api.services.persistence import PersistenceClient


@pytest.fixture
def guard(session_factory) -> IdempotencyGuard:
    return IdempotencyGuard(PersistenceClient(session_factory), lease_seconds=60)


HASH = fingerprint({"fiat_amount": 100})


@pytest.mark.asyncio
async def test_concurrent_begin_starts_exactly_once(guard: IdempotencyGuard) -> None:
    results = await asyncio.gather(
        *(guard.begin("key-race", operation=OperationKind.PURCHASE, request_hash=HASH) for _ in range(5))
    )

    started = [result for result in results if isinstance(result, Started)]
    assert len(started) == 1
    assert all(isinstance(result, (Started, AlreadyPending)) for result in results)


@pytest.mark.asyncio
async def test_completed_key_returns_stored_result(guard: IdempotencyGuard) -> None:
    await guard.begin("key-done", operation=OperationKind.PURCHASE, request_hash=HASH)
    await guard.complete("key-done", {"transaction_id": "t-1"})

    replay = await guard.begin("key-done", operation=OperationKind.PURCHASE, request_hash=HASH)

    assert isinstance(replay, AlreadyCompleted)
    assert replay.result == {"transaction_id": "t-1"}
    record = await guard.status("key-done")
    assert record.status == IdempotencyStatus.COMPLETED
    assert record.completed_at is not None


@pytest.mark.asyncio
async def test_complete_requires_pending_record(guard: IdempotencyGuard) -> None:
    with pytest.raises(InvalidTransitionError):
        await guard.complete("missing", {})

    await guard.begin("key-twice", operation=OperationKind.PURCHASE, request_hash=HASH)
    await guard.complete("key-twice", {})
    with pytest.raises(InvalidTransitionError):
        await guard.complete("key-twice", {})


@pytest.mark.asyncio
async def test_failed_key_is_reopened_with_next_attempt(guard: IdempotencyGuard) -> None:
    await guard.begin("key-retry", operation=OperationKind.PURCHASE, request_hash=HASH)
    await guard.fail("key-retry", error="ledger down")

    retried = await guard.begin("key-retry", operation=OperationKind.PURCHASE, request_hash=HASH)

    assert retried == Started(key="key-retry", attempt=2)
    record = await guard.status("key-retry")
    assert record.status == IdempotencyStatus.PENDING
    assert record.last_error is None


@pytest.mark.asyncio
async def test_reused_key_with_different_request_is_mismatch(guard: IdempotencyGuard) -> None:
    await guard.begin("key-mix", operation=OperationKind.PURCHASE, request_hash=HASH)

    other = await guard.begin("key-mix", operation=OperationKind.PURCHASE, request_hash=fingerprint({"x": 1}))
    wrong_kind = await guard.begin("key-mix", operation=OperationKind.MERCHANT_UPDATE, request_hash=HASH)

    assert isinstance(other, Mismatch)
    assert isinstance(wrong_kind, Mismatch)


@pytest.mark.asyncio
async def test_ambiguous_key_cannot_be_failed_and_is_reconciled_once(guard: IdempotencyGuard) -> None:
    await guard.begin("key-amb", operation=OperationKind.PURCHASE, request_hash=HASH)
    await guard.record_submission("key-amb", reference=ledger_reference("key-amb"), plan={"fiat_amount": 100})
    await guard.mark_ambiguous("key-amb", ledger_signature="sig-1", error="db down")

    with pytest.raises(InvalidTransitionError):
        await guard.fail("key-amb")

    first = await guard.begin("key-amb", operation=OperationKind.PURCHASE, request_hash=HASH)
    second = await guard.begin("key-amb", operation=OperationKind.PURCHASE, request_hash=HASH)

    assert isinstance(first, Reconcile)
    assert first.record.ledger_signature == "sig-1"
    assert first.record.commit_plan == {"fiat_amount": 100}
    assert isinstance(second, AlreadyPending)

    await guard.release("key-amb", error="still down")
    third = await guard.begin("key-amb", operation=OperationKind.PURCHASE, request_hash=HASH)
    assert isinstance(third, Reconcile)


@pytest.mark.asyncio
async def test_record_submission_refuses_completed_key(guard: IdempotencyGuard) -> None:
    await guard.begin("key-late", operation=OperationKind.PURCHASE, request_hash=HASH)
    await guard.complete("key-late", {})

    with pytest.raises(InvalidTransitionError):
        await guard.record_submission("key-late", reference="ref", plan={})


@pytest.mark.asyncio
async def test_reopened_key_keeps_reference_and_reports_previous_plan(guard: IdempotencyGuard) -> None:
    reference = ledger_reference("key-again")
    await guard.begin("key-again", operation=OperationKind.PURCHASE, request_hash=HASH)
    await guard.record_submission("key-again", reference=reference, plan={"fiat_amount": 100})
    await guard.fail("key-again", error="relay timed out")

    retried = await guard.begin("key-again", operation=OperationKind.PURCHASE, request_hash=HASH)

    assert isinstance(retried, Started)
    assert retried.attempt == 2
    assert retried.previous_reference == reference
    assert retried.previous_plan == {"fiat_amount": 100}
    record = await guard.status("key-again")
    assert record.ledger_reference == reference
    assert ledger_reference("key-again") == reference
    assert ledger_reference("key-other") != reference
