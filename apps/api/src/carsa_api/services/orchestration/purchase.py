"""Purchase flow: optional token redemption, reward mint and the local transaction record."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping
from uuid import UUID

from carsa_api.core.settings import settings
from carsa_api.domain.errors import InsufficientBalanceError, NotFoundError, ValidationError
from carsa_api.domain.wallet import is_valid_wallet
from carsa_api.models.idempotency import OperationKind
from carsa_api.services.ledger import LedgerConfirmation, PurchaseInstruction
from carsa_api.services.rewards import RewardCalculator

from .base import LedgerBackedOrchestrator, PreparedSubmission


@dataclass(frozen=True, slots=True)
class PurchaseOperation:
    merchant_id: UUID
    customer_wallet: str
    fiat_amount: int
    idempotency_key: str
    redeem_token_amount: int | None = None


@dataclass(frozen=True, slots=True)
class PurchaseReceipt:
    transaction_id: str
    ledger_signature: str
    tokens_awarded: int


class PurchaseOrchestrator(LedgerBackedOrchestrator[PurchaseOperation, PurchaseReceipt]):
    """Coordinates reward computation, the ledger purchase and the transaction record."""

    operation = OperationKind.PURCHASE

    def __init__(
        self,
        *,
        calculator: RewardCalculator | None = None,
        exchange_rate: int | None = None,
        max_purchase_amount: int | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._calculator = calculator or RewardCalculator()
        self._exchange_rate = exchange_rate or settings.token_exchange_rate
        self._max_purchase_amount = max_purchase_amount or settings.max_purchase_amount

    def idempotency_key(self, op: PurchaseOperation) -> str:
        return op.idempotency_key

    def validate(self, op: PurchaseOperation) -> None:
        if op.fiat_amount < 0 or (op.redeem_token_amount or 0) < 0:
            raise ValidationError("amounts must be non-negative")
        if op.fiat_amount > self._max_purchase_amount:
            raise ValidationError(f"fiat amount exceeds the per-purchase limit of {self._max_purchase_amount}")
        if not is_valid_wallet(op.customer_wallet):
            raise ValidationError("customer wallet is not a valid address")

    def request_payload(self, op: PurchaseOperation) -> Mapping[str, Any]:
        return {
            "merchant_id": str(op.merchant_id),
            "customer_wallet": op.customer_wallet,
            "fiat_amount": op.fiat_amount,
            "redeem_token_amount": op.redeem_token_amount or 0,
        }

    async def prepare(self, op: PurchaseOperation, *, reference: str) -> PreparedSubmission:
        merchant = await self._persistence.get_merchant(op.merchant_id)
        if merchant is None or not merchant.is_active:
            raise NotFoundError(f"Merchant {op.merchant_id} not found or inactive")

        redeem = op.redeem_token_amount or 0
        if redeem:
            balance = await self._ledger.get_token_balance(op.customer_wallet)
            if balance < redeem:
                raise InsufficientBalanceError(
                    f"Customer balance {balance} is below the requested redemption of {redeem}"
                )

        computation = self._calculator.compute(op.fiat_amount, redeem, self._exchange_rate, merchant.cashback_rate_bps)
        plan = {
            "merchant_id": str(merchant.id),
            "customer_wallet": op.customer_wallet,
            "fiat_amount": op.fiat_amount,
            "redeem_token_amount": redeem,
            "total_value": computation.total_value,
            "tokens_awarded": computation.tokens_awarded,
            "cashback_rate_bps": merchant.cashback_rate_bps,
            "used_tokens": computation.used_tokens,
        }
        instruction = PurchaseInstruction(
            reference=reference,
            customer_wallet=op.customer_wallet,
            merchant_wallet=merchant.wallet_address,
            fiat_amount=op.fiat_amount,
            redeem_token_amount=redeem,
            total_value=computation.total_value,
            tokens_awarded=computation.tokens_awarded,
            cashback_rate_bps=merchant.cashback_rate_bps,
        )
        return PreparedSubmission(instruction=instruction, plan=plan)

    async def submit(self, instruction: PurchaseInstruction) -> LedgerConfirmation:
        return await self._ledger.submit_purchase(instruction)

    async def persist(self, plan: Mapping[str, Any], *, ledger_signature: str, key: str) -> dict[str, Any]:
        transaction = await self._persistence.insert_transaction(
            plan, ledger_signature=ledger_signature, idempotency_key=key
        )
        return {
            "transaction_id": str(transaction.id),
            "ledger_signature": ledger_signature,
            "tokens_awarded": int(plan["tokens_awarded"]),
        }

    def to_receipt(self, result: Mapping[str, Any]) -> PurchaseReceipt:
        return PurchaseReceipt(
            transaction_id=str(result["transaction_id"]),
            ledger_signature=str(result["ledger_signature"]),
            tokens_awarded=int(result["tokens_awarded"]),
        )


__all__ = ["PurchaseOperation", "PurchaseOrchestrator", "PurchaseReceipt"]
