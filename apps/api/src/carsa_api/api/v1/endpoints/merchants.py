"""Merchant registration, attribute updates and registry lookups."""

from __future__ import annotations

from datetime import datetime
from typing import List
from uuid import UUID, uuid4

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from carsa_api.api.dependencies.orchestration import get_orchestrators
from carsa_api.api.dependencies.security import require_internal_api_key
from carsa_api.api.errors import raise_for_failure
from carsa_api.db.session import get_session
from carsa_api.domain.errors import OrchestrationFailure
from carsa_api.models.merchant import Merchant
from carsa_api.services.orchestration import (
    MerchantRegistrationOperation,
    MerchantUpdateOperation,
    Orchestrators,
)


router = APIRouter(tags=["merchants"])

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


class MerchantUpdateRequest(BaseModel):
    model_config = {"populate_by_name": True}

    merchant_id: UUID = Field(alias="merchantId")
    new_cashback_rate: int | None = Field(default=None, alias="newCashbackRate", strict=True)
    is_active: bool | None = Field(default=None, alias="isActive", strict=True)
    idempotency_key: str | None = Field(default=None, alias="idempotencyKey", min_length=1, max_length=255)


class MerchantUpdateResponse(BaseModel):
    model_config = {"populate_by_name": True}

    merchant_id: str = Field(alias="merchantId")
    update_id: str = Field(alias="updateId")
    ledger_signature: str = Field(alias="ledgerSignature")
    idempotency_key: str = Field(alias="idempotencyKey")


class MerchantRegistrationRequest(BaseModel):
    model_config = {"populate_by_name": True}

    wallet_address: str = Field(alias="walletAddress")
    name: str
    category: str
    cashback_rate_bps: int = Field(alias="cashbackRateBps", ge=0, strict=True)
    address_line1: str = Field(alias="addressLine1")
    city: str
    email: str | None = None
    phone: str | None = None
    idempotency_key: str | None = Field(default=None, alias="idempotencyKey", min_length=1, max_length=255)


class MerchantRegistrationResponse(BaseModel):
    model_config = {"populate_by_name": True}

    merchant_id: str = Field(alias="merchantId")
    ledger_signature: str = Field(alias="ledgerSignature")
    idempotency_key: str = Field(alias="idempotencyKey")


class MerchantResponse(BaseModel):
    id: UUID
    walletAddress: str
    name: str
    category: str
    cashbackRateBps: int
    isActive: bool
    city: str | None
    totalTransactions: int
    totalVolume: int
    totalRewardsDistributed: int
    createdAt: datetime | None


class MerchantPageResponse(BaseModel):
    merchants: List[MerchantResponse]
    total: int
    page: int
    limit: int


def _serialize_merchant(merchant: Merchant) -> MerchantResponse:
    return MerchantResponse(
        id=merchant.id,
        walletAddress=merchant.wallet_address,
        name=merchant.name,
        category=merchant.category,
        cashbackRateBps=merchant.cashback_rate_bps,
        isActive=merchant.is_active,
        city=merchant.city,
        totalTransactions=merchant.total_transactions or 0,
        totalVolume=merchant.total_volume or 0,
        totalRewardsDistributed=merchant.total_rewards_distributed or 0,
        createdAt=merchant.created_at,
    )


@router.post(
    "/merchant/update",
    response_model=MerchantUpdateResponse,
    dependencies=[Depends(require_internal_api_key)],
    summary="Update merchant cashback rate or active flag",
)
async def update_merchant(
    payload: MerchantUpdateRequest,
    orchestrators: Orchestrators = Depends(get_orchestrators),
) -> MerchantUpdateResponse:
    key = payload.idempotency_key or str(uuid4())
    outcome = await orchestrators.merchant_update.process(
        MerchantUpdateOperation(
            merchant_id=payload.merchant_id,
            cashback_rate_bps=payload.new_cashback_rate,
            is_active=payload.is_active,
            idempotency_key=key,
        )
    )
    if isinstance(outcome, OrchestrationFailure):
        raise_for_failure(outcome)
    return MerchantUpdateResponse(
        merchant_id=outcome.merchant_id,
        update_id=outcome.update_id,
        ledger_signature=outcome.ledger_signature,
        idempotency_key=key,
    )


@router.post(
    "/merchant/register",
    response_model=MerchantRegistrationResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_internal_api_key)],
    summary="Register a merchant on the ledger",
)
async def register_merchant(
    payload: MerchantRegistrationRequest,
    orchestrators: Orchestrators = Depends(get_orchestrators),
) -> MerchantRegistrationResponse:
    key = payload.idempotency_key or str(uuid4())
    outcome = await orchestrators.merchant_registration.process(
        MerchantRegistrationOperation(
            wallet_address=payload.wallet_address,
            name=payload.name,
            category=payload.category,
            cashback_rate_bps=payload.cashback_rate_bps,
            address_line1=payload.address_line1,
            city=payload.city,
            email=payload.email,
            phone=payload.phone,
            idempotency_key=key,
        )
    )
    if isinstance(outcome, OrchestrationFailure):
        raise_for_failure(outcome)
    return MerchantRegistrationResponse(
        merchant_id=outcome.merchant_id,
        ledger_signature=outcome.ledger_signature,
        idempotency_key=key,
    )


async def _page_of_active_merchants(
    db: AsyncSession, *, order_by: tuple, page: int, limit: int
) -> MerchantPageResponse:
    active = Merchant.is_active.is_(True)
    total = await db.scalar(select(func.count()).select_from(Merchant).where(active))
    result = await db.execute(
        select(Merchant).where(active).order_by(*order_by).offset((page - 1) * limit).limit(limit)
    )
    return MerchantPageResponse(
        merchants=[_serialize_merchant(merchant) for merchant in result.scalars().all()],
        total=total or 0,
        page=page,
        limit=limit,
    )


@router.get("/merchants", response_model=MerchantPageResponse, summary="List active merchants")
async def list_merchants(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    db: AsyncSession = Depends(get_session),
) -> MerchantPageResponse:
    return await _page_of_active_merchants(
        db, order_by=(Merchant.created_at.desc(), Merchant.id), page=page, limit=limit
    )


@router.get("/merchants/rank", response_model=MerchantPageResponse, summary="Rank active merchants by volume")
async def rank_merchants(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    db: AsyncSession = Depends(get_session),
) -> MerchantPageResponse:
    """Active merchants ordered by recorded purchase volume, then transaction count."""

    return await _page_of_active_merchants(
        db,
        order_by=(Merchant.total_volume.desc(), Merchant.total_transactions.desc(), Merchant.id),
        page=page,
        limit=limit,
    )


@router.get(
    "/merchants/by-wallet/{wallet_address}",
    response_model=MerchantResponse,
    summary="Look up a merchant by ledger wallet",
)
async def get_merchant_by_wallet(wallet_address: str, db: AsyncSession = Depends(get_session)) -> MerchantResponse:
    result = await db.execute(select(Merchant).where(Merchant.wallet_address == wallet_address))
    merchant = result.scalar_one_or_none()
    if merchant is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Merchant not found")
    return _serialize_merchant(merchant)


@router.get("/merchants/{merchant_id}", response_model=MerchantResponse, summary="Fetch a merchant")
async def get_merchant(merchant_id: UUID, db: AsyncSession = Depends(get_session)) -> MerchantResponse:
    merchant = await db.get(Merchant, merchant_id)
    if merchant is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Merchant not found")
    return _serialize_merchant(merchant)
