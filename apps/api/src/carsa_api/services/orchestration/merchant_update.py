"""Merchant attribute updates (cashback rate, active flag)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping
from uuid import UUID

from carsa_api.domain.errors import CarsaError, ErrorKind, InvalidRateError, NotFoundError
from carsa_api.models.idempotency import OperationKind
from carsa_api.services.ledger import LedgerConfirmation, MerchantUpdateInstruction
from carsa_api.services.rewards import BPS_DENOMINATOR

from .base import LedgerBackedOrchestrator, PreparedSubmission


@dataclass(frozen=True, slots=True)
class MerchantUpdateOperation:
    merchant_id: UUID
    idempotency_key: str
    cashback_rate_bps: int | None = None
    is_active: bool | None = None


@dataclass(frozen=True, slots=True)
class MerchantUpdateReceipt:
    merchant_id: str
    update_id: str
    ledger_signature: str


class MerchantUpdateOrchestrator(LedgerBackedOrchestrator[MerchantUpdateOperation, MerchantUpdateReceipt]):
    operation = OperationKind.MERCHANT_UPDATE

    def idempotency_key(self, op: MerchantUpdateOperation) -> str:
        return op.idempotency_key

    def validate(self, op: MerchantUpdateOperation) -> None:
        if op.cashback_rate_bps is None and op.is_active is None:
            raise CarsaError(
                "At least one of cashback rate or active flag must be provided",
                kind=ErrorKind.INVALID_REQUEST,
            )

    def request_payload(self, op: MerchantUpdateOperation) -> Mapping[str, Any]:
        return {
            "merchant_id": str(op.merchant_id),
            "cashback_rate_bps": op.cashback_rate_bps,
            "is_active": op.is_active,
        }

    async def prepare(self, op: MerchantUpdateOperation, *, reference: str) -> PreparedSubmission:
        if op.cashback_rate_bps is not None and not 0 <= op.cashback_rate_bps <= BPS_DENOMINATOR:
            raise InvalidRateError(f"cashback rate must be between 0 and {BPS_DENOMINATOR} basis points")

        # Inactive merchants stay updatable so they can be reactivated.
        merchant = await self._persistence.get_merchant(op.merchant_id)
        if merchant is None:
            raise NotFoundError(f"Merchant {op.merchant_id} not found")

        plan = {
            "merchant_id": str(merchant.id),
            "cashback_rate_bps": op.cashback_rate_bps,
            "is_active": op.is_active,
        }
        instruction = MerchantUpdateInstruction(
            reference=reference,
            merchant_wallet=merchant.wallet_address,
            cashback_rate_bps=op.cashback_rate_bps,
            is_active=op.is_active,
        )
        return PreparedSubmission(instruction=instruction, plan=plan)

    async def submit(self, instruction: MerchantUpdateInstruction) -> LedgerConfirmation:
        return await self._ledger.submit_merchant_update(instruction)

    async def persist(self, plan: Mapping[str, Any], *, ledger_signature: str, key: str) -> dict[str, Any]:
        event = await self._persistence.apply_merchant_update(
            plan, ledger_signature=ledger_signature, idempotency_key=key
        )
        return {
            "merchant_id": str(event.merchant_id),
            "update_id": str(event.id),
            "ledger_signature": ledger_signature,
        }

    def to_receipt(self, result: Mapping[str, Any]) -> MerchantUpdateReceipt:
        return MerchantUpdateReceipt(
            merchant_id=str(result["merchant_id"]),
            update_id=str(result["update_id"]),
            ledger_signature=str(result["ledger_signature"]),
        )


__all__ = ["MerchantUpdateOperation", "MerchantUpdateOrchestrator", "MerchantUpdateReceipt"]
