"""Relational persistence for merchants, transactions and idempotency records.

Every method runs in its own short-lived session and commits before
returning, so callers never hold a database transaction open across a
ledger round trip.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Mapping
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from carsa_api.domain.errors import PersistenceUnavailableError
from carsa_api.models.idempotency import IdempotencyRecord, IdempotencyStatus, OperationKind
from carsa_api.models.merchant import Merchant, MerchantUpdateEvent
from carsa_api.models.transaction import PurchaseTransaction

SessionFactory = Callable[[], AsyncSession]


class PersistenceClient:
    """Narrow read/write contract over the relational store."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    # -- merchants ---------------------------------------------------------

    async def get_merchant(self, merchant_id: UUID) -> Merchant | None:
        try:
            async with self._session_factory() as session:
                return await session.get(Merchant, merchant_id)
        except SQLAlchemyError as exc:
            raise PersistenceUnavailableError(f"Failed to load merchant: {exc}") from exc

    async def get_merchant_by_wallet(self, wallet_address: str) -> Merchant | None:
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(Merchant).where(Merchant.wallet_address == wallet_address))
                return result.scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise PersistenceUnavailableError(f"Failed to load merchant: {exc}") from exc

    # -- idempotency -------------------------------------------------------

    async def get_idempotency(self, key: str) -> IdempotencyRecord | None:
        try:
            async with self._session_factory() as session:
                return await session.get(IdempotencyRecord, key)
        except SQLAlchemyError as exc:
            raise PersistenceUnavailableError(f"Failed to load idempotency record: {exc}") from exc

    async def insert_idempotency(self, key: str, *, operation: OperationKind, request_hash: str) -> bool:
        """Insert a pending record unless one exists. Returns ``True`` if inserted.

        Relies on the primary-key constraint; concurrent callers racing on
        the same key see exactly one successful insert.
        """

        try:
            async with self._session_factory() as session:
                session.add(
                    IdempotencyRecord(
                        key=key,
                        operation=operation,
                        status=IdempotencyStatus.PENDING,
                        request_hash=request_hash,
                        attempts=1,
                    )
                )
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    return False
                return True
        except SQLAlchemyError as exc:
            raise PersistenceUnavailableError(f"Failed to insert idempotency record: {exc}") from exc

    async def update_idempotency(
        self,
        key: str,
        values: Mapping[str, Any],
        *,
        when_status: IdempotencyStatus,
        signature_present: bool | None = None,
        lease_free_at: datetime | None = None,
    ) -> bool:
        """Compare-and-set update. Returns ``True`` when exactly one row matched."""

        conditions = [IdempotencyRecord.key == key, IdempotencyRecord.status == when_status]
        if signature_present is True:
            conditions.append(IdempotencyRecord.ledger_signature.is_not(None))
        elif signature_present is False:
            conditions.append(IdempotencyRecord.ledger_signature.is_(None))
        if lease_free_at is not None:
            conditions.append(
                or_(
                    IdempotencyRecord.lease_expires_at.is_(None),
                    IdempotencyRecord.lease_expires_at <= lease_free_at,
                )
            )

        stmt = update(IdempotencyRecord).where(and_(*conditions)).values(**values)
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt.execution_options(synchronize_session=False))
                await session.commit()
                return result.rowcount == 1
        except SQLAlchemyError as exc:
            raise PersistenceUnavailableError(f"Failed to update idempotency record: {exc}") from exc

    async def list_ambiguous(self, *, lease_free_at: datetime, limit: int) -> list[IdempotencyRecord]:
        stmt = (
            select(IdempotencyRecord)
            .where(
                IdempotencyRecord.status == IdempotencyStatus.PENDING,
                IdempotencyRecord.ledger_signature.is_not(None),
                or_(
                    IdempotencyRecord.lease_expires_at.is_(None),
                    IdempotencyRecord.lease_expires_at <= lease_free_at,
                ),
            )
            .order_by(IdempotencyRecord.updated_at.asc())
            .limit(limit)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except SQLAlchemyError as exc:
            raise PersistenceUnavailableError(f"Failed to list ambiguous records: {exc}") from exc

    async def list_stale_submissions(self, *, updated_before: datetime, limit: int) -> list[IdempotencyRecord]:
        """Pending records without a ledger signature that have not moved since ``updated_before``.

        Rows with no ``ledger_reference`` never reached the ledger step.
        """

        stmt = (
            select(IdempotencyRecord)
            .where(
                IdempotencyRecord.status == IdempotencyStatus.PENDING,
                IdempotencyRecord.ledger_signature.is_(None),
                IdempotencyRecord.updated_at <= updated_before,
            )
            .order_by(IdempotencyRecord.updated_at.asc())
            .limit(limit)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except SQLAlchemyError as exc:
            raise PersistenceUnavailableError(f"Failed to list stale submissions: {exc}") from exc

    # -- ledger mirrors ----------------------------------------------------

    async def insert_transaction(
        self,
        plan: Mapping[str, Any],
        *,
        ledger_signature: str,
        idempotency_key: str,
    ) -> PurchaseTransaction:
        """Record a confirmed purchase and bump merchant statistics atomically.

        Idempotent on ``ledger_signature``: an existing row is returned as is.
        """

        try:
            async with self._session_factory() as session:
                existing = await self._transaction_by_signature(session, ledger_signature)
                if existing is not None:
                    return existing

                merchant_id = UUID(str(plan["merchant_id"]))
                transaction = PurchaseTransaction(
                    merchant_id=merchant_id,
                    customer_wallet=plan["customer_wallet"],
                    fiat_amount=int(plan["fiat_amount"]),
                    redeemed_token_amount=int(plan["redeem_token_amount"]),
                    total_value=int(plan["total_value"]),
                    tokens_awarded=int(plan["tokens_awarded"]),
                    cashback_rate_bps=int(plan["cashback_rate_bps"]),
                    used_tokens=bool(plan["used_tokens"]),
                    ledger_signature=ledger_signature,
                    idempotency_key=idempotency_key,
                )
                session.add(transaction)
                await session.execute(
                    update(Merchant)
                    .where(Merchant.id == merchant_id)
                    .values(
                        total_transactions=Merchant.total_transactions + 1,
                        total_volume=Merchant.total_volume + int(plan["total_value"]),
                        total_rewards_distributed=Merchant.total_rewards_distributed + int(plan["tokens_awarded"]),
                    )
                )
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    found = await self._transaction_by_signature(session, ledger_signature)
                    if found is None:
                        raise
                    logger.info("Transaction already recorded by a concurrent writer", ledger_signature=ledger_signature)
                    return found
                return transaction
        except SQLAlchemyError as exc:
            raise PersistenceUnavailableError(f"Failed to record transaction: {exc}") from exc

    async def apply_merchant_update(
        self,
        plan: Mapping[str, Any],
        *,
        ledger_signature: str,
        idempotency_key: str,
    ) -> MerchantUpdateEvent:
        """Apply confirmed merchant attribute changes. Idempotent on ``ledger_signature``."""

        try:
            async with self._session_factory() as session:
                existing = await self._update_event_by_signature(session, ledger_signature)
                if existing is not None:
                    return existing

                merchant = await session.get(Merchant, UUID(str(plan["merchant_id"])))
                if merchant is None:
                    raise PersistenceUnavailableError("Merchant disappeared before update could be recorded")

                new_rate = plan.get("cashback_rate_bps")
                new_active = plan.get("is_active")
                event = MerchantUpdateEvent(
                    merchant_id=merchant.id,
                    ledger_signature=ledger_signature,
                    idempotency_key=idempotency_key,
                    previous_cashback_rate_bps=merchant.cashback_rate_bps,
                    new_cashback_rate_bps=merchant.cashback_rate_bps if new_rate is None else int(new_rate),
                    previous_is_active=merchant.is_active,
                    new_is_active=merchant.is_active if new_active is None else bool(new_active),
                )
                merchant.cashback_rate_bps = event.new_cashback_rate_bps
                merchant.is_active = event.new_is_active
                session.add(event)
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    found = await self._update_event_by_signature(session, ledger_signature)
                    if found is None:
                        raise
                    return found
                return event
        except SQLAlchemyError as exc:
            raise PersistenceUnavailableError(f"Failed to record merchant update: {exc}") from exc

    async def insert_merchant(
        self,
        plan: Mapping[str, Any],
        *,
        ledger_signature: str,
    ) -> Merchant:
        """Create the merchant confirmed by a ledger registration.

    Idempotent on the signature. A row already holding the wallet is returned
    as the outcome, since the wallet can only be registered once.
    """

        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(Merchant).where(Merchant.registration_signature == ledger_signature)
                )
                existing = result.scalar_one_or_none()
                if existing is not None:
                    return existing

                merchant = Merchant(
                    wallet_address=plan["wallet_address"],
                    name=plan["name"],
                    category=plan["category"],
                    cashback_rate_bps=int(plan["cashback_rate_bps"]),
                    is_active=True,
                    email=plan.get("email"),
                    phone=plan.get("phone"),
                    address_line1=plan.get("address_line1"),
                    city=plan.get("city"),
                    registration_signature=ledger_signature,
                )
                session.add(merchant)
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    # The wallet is unique; a concurrent registration under another key got there first.
                    result = await session.execute(
                        select(Merchant).where(Merchant.wallet_address == plan["wallet_address"])
                    )
                    found = result.scalar_one_or_none()
                    if found is None:
                        raise
                    logger.warning(
                        "Merchant wallet already recorded by a concurrent registration",
                        wallet_address=found.wallet_address,
                        merchant_id=str(found.id),
                        ledger_signature=ledger_signature,
                    )
                    return found
                return merchant
        except SQLAlchemyError as exc:
            raise PersistenceUnavailableError(f"Failed to record merchant registration: {exc}") from exc

    @staticmethod
    async def _transaction_by_signature(session: AsyncSession, signature: str) -> PurchaseTransaction | None:
        result = await session.execute(
            select(PurchaseTransaction).where(PurchaseTransaction.ledger_signature == signature)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _update_event_by_signature(session: AsyncSession, signature: str) -> MerchantUpdateEvent | None:
        result = await session.execute(
            select(MerchantUpdateEvent).where(MerchantUpdateEvent.ledger_signature == signature)
        )
        return result.scalar_one_or_none()


__all__ = ["PersistenceClient", "SessionFactory"]
