from uuid import uuid4

import pytest
from sqlalchemy import select

from carsa_api.domain.errors import ErrorKind, OrchestrationFailure
from carsa_api.models import IdempotencyStatus, Merchant, MerchantUpdateEvent
from carsa_api.services.orchestration import (
    MerchantRegistrationOperation,
    MerchantRegistrationReceipt,
    MerchantUpdateOperation,
    MerchantUpdateReceipt,
)

NEW_MERCHANT_WALLET = "HN7cABqLq46Es1jh92dQQisAq662SmxELLLsHHe4YWrH"


def _registration(key: str, **overrides) -> MerchantRegistrationOperation:
    values = {
        "wallet_address": NEW_MERCHANT_WALLET,
        "name": "Harbour Books",
        "category": "retail",
        "cashback_rate_bps": 500,
        "address_line1": "12 Quay Rd",
        "city": "Porto",
        "idempotency_key": key,
    }
    values.update(overrides)
    return MerchantRegistrationOperation(**values)


@pytest.mark.asyncio
async def test_update_changes_rate_and_records_event(orchestrators, merchant, ledger, session_factory) -> None:
    receipt = await orchestrators.merchant_update.process(
        MerchantUpdateOperation(merchant_id=merchant.id, cashback_rate_bps=250, idempotency_key="u-1")
    )

    assert isinstance(receipt, MerchantUpdateReceipt)
    assert receipt.merchant_id == str(merchant.id)
    assert ledger.merchants[merchant.wallet_address].cashback_rate_bps == 250

    async with session_factory() as session:
        stored = await session.get(Merchant, merchant.id)
        event = (await session.execute(select(MerchantUpdateEvent))).scalar_one()
    assert stored.cashback_rate_bps == 250
    assert stored.is_active is True
    assert event.previous_cashback_rate_bps == 1000
    assert event.new_cashback_rate_bps == 250
    assert str(event.id) == receipt.update_id
    assert event.ledger_signature == receipt.ledger_signature


@pytest.mark.asyncio
async def test_inactive_merchant_can_be_reactivated(orchestrators, merchant, session_factory) -> None:
    deactivated = await orchestrators.merchant_update.process(
        MerchantUpdateOperation(merchant_id=merchant.id, is_active=False, idempotency_key="u-off")
    )
    reactivated = await orchestrators.merchant_update.process(
        MerchantUpdateOperation(merchant_id=merchant.id, is_active=True, idempotency_key="u-on")
    )

    assert isinstance(deactivated, MerchantUpdateReceipt)
    assert isinstance(reactivated, MerchantUpdateReceipt)
    assert deactivated.ledger_signature != reactivated.ledger_signature
    async with session_factory() as session:
        stored = await session.get(Merchant, merchant.id)
    assert stored.is_active is True
    assert stored.cashback_rate_bps == 1000


@pytest.mark.asyncio
async def test_empty_update_is_invalid_request(orchestrators, merchant, ledger) -> None:
    outcome = await orchestrators.merchant_update.process(
        MerchantUpdateOperation(merchant_id=merchant.id, idempotency_key="u-empty")
    )

    assert isinstance(outcome, OrchestrationFailure)
    assert outcome.kind == ErrorKind.INVALID_REQUEST
    assert outcome.http_status == 400
    assert await orchestrators.guard.status("u-empty") is None
    assert ledger.submissions == []


@pytest.mark.asyncio
async def test_out_of_range_rate_is_rejected_before_ledger(orchestrators, merchant, ledger) -> None:
    outcome = await orchestrators.merchant_update.process(
        MerchantUpdateOperation(merchant_id=merchant.id, cashback_rate_bps=10001, idempotency_key="u-rate")
    )

    assert isinstance(outcome, OrchestrationFailure)
    assert outcome.kind == ErrorKind.INVALID_RATE
    assert ledger.submissions == []
    record = await orchestrators.guard.status("u-rate")
    assert record.status == IdempotencyStatus.FAILED


@pytest.mark.asyncio
async def test_update_for_unknown_merchant_is_not_found(orchestrators) -> None:
    outcome = await orchestrators.merchant_update.process(
        MerchantUpdateOperation(merchant_id=uuid4(), is_active=False, idempotency_key="u-missing")
    )

    assert isinstance(outcome, OrchestrationFailure)
    assert outcome.kind == ErrorKind.NOT_FOUND


@pytest.mark.asyncio
async def test_registration_creates_active_merchant(orchestrators, ledger, session_factory) -> None:
    receipt = await orchestrators.merchant_registration.process(_registration("r-1"))

    assert isinstance(receipt, MerchantRegistrationReceipt)
    assert NEW_MERCHANT_WALLET in ledger.merchants
    async with session_factory() as session:
        stored = (
            await session.execute(select(Merchant).where(Merchant.wallet_address == NEW_MERCHANT_WALLET))
        ).scalar_one()
    assert str(stored.id) == receipt.merchant_id
    assert stored.is_active is True
    assert stored.registration_signature == receipt.ledger_signature
    assert stored.city == "Porto"


@pytest.mark.asyncio
async def test_registering_same_wallet_twice_is_conflict(orchestrators, ledger) -> None:
    await orchestrators.merchant_registration.process(_registration("r-first"))

    outcome = await orchestrators.merchant_registration.process(_registration("r-second"))

    assert isinstance(outcome, OrchestrationFailure)
    assert outcome.kind == ErrorKind.CONFLICT
    assert outcome.http_status == 409
    assert len(ledger.submissions) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"name": "x" * 33},
        {"name": "   "},
        {"category": "c" * 17},
        {"wallet_address": "0OIl" * 10},
        {"city": ""},
    ],
)
async def test_registration_boundary_validation(orchestrators, overrides) -> None:
    outcome = await orchestrators.merchant_registration.process(_registration("r-invalid", **overrides))

    assert isinstance(outcome, OrchestrationFailure)
    assert outcome.kind == ErrorKind.VALIDATION
    assert await orchestrators.guard.status("r-invalid") is None


@pytest.mark.asyncio
async def test_registration_rate_above_limit_is_invalid_rate(orchestrators, ledger) -> None:
    outcome = await orchestrators.merchant_registration.process(_registration("r-rate", cashback_rate_bps=10001))

    assert isinstance(outcome, OrchestrationFailure)
    assert outcome.kind == ErrorKind.INVALID_RATE
    assert ledger.submissions == []


@pytest.mark.asyncio
async def test_registration_losing_wallet_race_completes_with_existing_merchant(
    orchestrators, session_factory, monkeypatch
) -> None:
    persistence = orchestrators.persistence
    original_insert = persistence.insert_merchant

    async def insert_after_competitor(plan, *, ledger_signature):
        async with session_factory() as session:
            session.add(
                Merchant(
                    wallet_address=NEW_MERCHANT_WALLET,
                    name="Harbour Books",
                    category="retail",
                    cashback_rate_bps=500,
                    is_active=True,
                    address_line1="12 Quay Rd",
                    city="Porto",
                    registration_signature="sig-competitor",
                )
            )
            await session.commit()
        return await original_insert(plan, ledger_signature=ledger_signature)

    monkeypatch.setattr(persistence, "insert_merchant", insert_after_competitor)

    receipt = await orchestrators.merchant_registration.process(_registration("r-race"))

    assert isinstance(receipt, MerchantRegistrationReceipt)
    async with session_factory() as session:
        stored = (
            (await session.execute(select(Merchant).where(Merchant.wallet_address == NEW_MERCHANT_WALLET)))
            .scalars()
            .all()
        )
    assert len(stored) == 1
    assert receipt.merchant_id == str(stored[0].id)
    record = await orchestrators.guard.status("r-race")
    assert record.status == IdempotencyStatus.COMPLETED
