"""Purchase endpoint: reward mint with optional token redemption."""

from __future__ import annotations

from uuid import UUID, uuid4

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from carsa_api.api.dependencies.orchestration import get_orchestrators
from carsa_api.api.errors import raise_for_failure
from carsa_api.domain.errors import OrchestrationFailure
from carsa_api.services.orchestration import Orchestrators, PurchaseOperation


router = APIRouter(tags=["purchases"])


class PurchaseRequest(BaseModel):
    model_config = {"populate_by_name": True}

    merchant_id: UUID = Field(alias="merchantId")
    customer_wallet: str = Field(alias="customerWallet", min_length=1)
    fiat_amount: int = Field(alias="fiatAmount", ge=0, strict=True)
    redeem_token_amount: int | None = Field(default=None, alias="redeemTokenAmount", ge=0, strict=True)
    idempotency_key: str | None = Field(default=None, alias="idempotencyKey", min_length=1, max_length=255)


class PurchaseResponse(BaseModel):
    model_config = {"populate_by_name": True}

    transaction_id: str = Field(alias="transactionId")
    ledger_signature: str = Field(alias="ledgerSignature")
    tokens_awarded: int = Field(alias="tokensAwarded")
    idempotency_key: str = Field(alias="idempotencyKey")


@router.post("/purchase", response_model=PurchaseResponse, summary="Record a purchase and mint rewards")
async def create_purchase(
    payload: PurchaseRequest,
    orchestrators: Orchestrators = Depends(get_orchestrators),
) -> PurchaseResponse:
    # Without a caller key the request cannot be retried safely.
    key = payload.idempotency_key or str(uuid4())
    outcome = await orchestrators.purchase.process(
        PurchaseOperation(
            merchant_id=payload.merchant_id,
            customer_wallet=payload.customer_wallet,
            fiat_amount=payload.fiat_amount,
            redeem_token_amount=payload.redeem_token_amount,
            idempotency_key=key,
        )
    )
    if isinstance(outcome, OrchestrationFailure):
        raise_for_failure(outcome)
    return PurchaseResponse(
        transaction_id=outcome.transaction_id,
        ledger_signature=outcome.ledger_signature,
        tokens_awarded=outcome.tokens_awarded,
        idempotency_key=key,
    )
