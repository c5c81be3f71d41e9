"""Merchant onboarding: create the ledger merchant account, then the local registry row."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from carsa_api.domain.errors import ConflictError, InvalidRateError, ValidationError
from carsa_api.domain.wallet import is_valid_wallet
from carsa_api.models.idempotency import OperationKind
from carsa_api.services.ledger import LedgerConfirmation, MerchantRegistrationInstruction
from carsa_api.services.rewards import BPS_DENOMINATOR

from .base import LedgerBackedOrchestrator, PreparedSubmission

MAX_NAME_LENGTH = 32
MAX_CATEGORY_LENGTH = 16


@dataclass(frozen=True, slots=True)
class MerchantRegistrationOperation:
    wallet_address: str
    name: str
    category: str
    cashback_rate_bps: int
    address_line1: str
    city: str
    idempotency_key: str
    email: str | None = None
    phone: str | None = None


@dataclass(frozen=True, slots=True)
class MerchantRegistrationReceipt:
    merchant_id: str
    ledger_signature: str


class MerchantRegistrationOrchestrator(
    LedgerBackedOrchestrator[MerchantRegistrationOperation, MerchantRegistrationReceipt]
):
    operation = OperationKind.MERCHANT_REGISTRATION

    def idempotency_key(self, op: MerchantRegistrationOperation) -> str:
        return op.idempotency_key

    def validate(self, op: MerchantRegistrationOperation) -> None:
        if not is_valid_wallet(op.wallet_address):
            raise ValidationError("wallet address is not a valid address")
        if not 1 <= len(op.name.strip()) <= MAX_NAME_LENGTH:
            raise ValidationError(f"name must be between 1 and {MAX_NAME_LENGTH} characters")
        if not 1 <= len(op.category.strip()) <= MAX_CATEGORY_LENGTH:
            raise ValidationError(f"category must be between 1 and {MAX_CATEGORY_LENGTH} characters")
        if not op.address_line1.strip() or not op.city.strip():
            raise ValidationError("address line and city are required")

    def request_payload(self, op: MerchantRegistrationOperation) -> Mapping[str, Any]:
        return {
            "wallet_address": op.wallet_address,
            "name": op.name.strip(),
            "category": op.category.strip(),
            "cashback_rate_bps": op.cashback_rate_bps,
            "address_line1": op.address_line1.strip(),
            "city": op.city.strip(),
            "email": op.email,
            "phone": op.phone,
        }

    async def prepare(self, op: MerchantRegistrationOperation, *, reference: str) -> PreparedSubmission:
        if not 0 <= op.cashback_rate_bps <= BPS_DENOMINATOR:
            raise InvalidRateError(f"cashback rate must be between 0 and {BPS_DENOMINATOR} basis points")
        if await self._persistence.get_merchant_by_wallet(op.wallet_address) is not None:
            raise ConflictError(f"Merchant with wallet {op.wallet_address} is already registered")

        plan = dict(self.request_payload(op))
        instruction = MerchantRegistrationInstruction(
            reference=reference,
            merchant_wallet=op.wallet_address,
            name=plan["name"],
            category=plan["category"],
            cashback_rate_bps=op.cashback_rate_bps,
        )
        return PreparedSubmission(instruction=instruction, plan=plan)

    async def submit(self, instruction: MerchantRegistrationInstruction) -> LedgerConfirmation:
        return await self._ledger.submit_merchant_registration(instruction)

    async def persist(self, plan: Mapping[str, Any], *, ledger_signature: str, key: str) -> dict[str, Any]:
        merchant = await self._persistence.insert_merchant(plan, ledger_signature=ledger_signature)
        return {"merchant_id": str(merchant.id), "ledger_signature": ledger_signature}

    def to_receipt(self, result: Mapping[str, Any]) -> MerchantRegistrationReceipt:
        return MerchantRegistrationReceipt(
            merchant_id=str(result["merchant_id"]),
            ledger_signature=str(result["ledger_signature"]),
        )


__all__ = [
    "MerchantRegistrationOperation",
    "MerchantRegistrationOrchestrator",
    "MerchantRegistrationReceipt",
]
