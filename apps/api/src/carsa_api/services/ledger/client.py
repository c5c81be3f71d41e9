"""Ledger access: submit-and-confirm contract plus its implementations."""

from __future__ import annotations

import asyncio
import secrets
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from time import perf_counter
from typing import Any, Literal, Protocol

import httpx
from loguru import logger

from carsa_api.core.settings import settings
from carsa_api.domain.errors import CarsaError, ErrorKind

LedgerFailureReason = Literal["rejected", "timeout", "unavailable"]


class LedgerError(CarsaError):
    """The ledger did not confirm the operation; no effect is assumed to have occurred."""

    kind = ErrorKind.LEDGER

    def __init__(self, message: str, *, reason: LedgerFailureReason = "rejected") -> None:
        super().__init__(message)
        self.reason = reason


@dataclass(slots=True)
class PurchaseInstruction:
    """Single atomic ledger operation: optional redeem transfer, reward mint, merchant stats."""

    reference: str
    customer_wallet: str
    merchant_wallet: str
    fiat_amount: int
    redeem_token_amount: int
    total_value: int
    tokens_awarded: int
    cashback_rate_bps: int


@dataclass(slots=True)
class MerchantUpdateInstruction:
    reference: str
    merchant_wallet: str
    cashback_rate_bps: int | None = None
    is_active: bool | None = None


@dataclass(slots=True)
class MerchantRegistrationInstruction:
    reference: str
    merchant_wallet: str
    name: str
    category: str
    cashback_rate_bps: int


@dataclass(slots=True)
class LedgerConfirmation:
    signature: str
    confirmed_at: datetime
    duplicate: bool = False


class LedgerClient(Protocol):
    async def get_token_balance(self, wallet: str) -> int: ...

    async def submit_purchase(self, instruction: PurchaseInstruction) -> LedgerConfirmation: ...

    async def submit_merchant_update(self, instruction: MerchantUpdateInstruction) -> LedgerConfirmation: ...

    async def submit_merchant_registration(
        self, instruction: MerchantRegistrationInstruction
    ) -> LedgerConfirmation: ...

    async def find_signature(self, reference: str) -> str | None: ...


class HttpLedgerClient:
    """Client for the ledger relay that signs, sends and awaits confirmation."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=self._timeout,
            transport=self._transport,
        )

    async def get_token_balance(self, wallet: str) -> int:
        try:
            async with self._client() as client:
                response = await client.get(f"/balances/{wallet}")
        except httpx.TimeoutException as exc:
            raise LedgerError(f"Balance lookup timed out: {exc}", reason="timeout") from exc
        except httpx.HTTPError as exc:
            raise LedgerError(f"Balance lookup failed: {exc}", reason="unavailable") from exc

        if response.status_code == 404:
            return 0
        if not response.is_success:
            raise LedgerError(
                f"Balance lookup returned HTTP {response.status_code}",
                reason="rejected" if response.is_client_error else "unavailable",
            )
        body = _json_object(response)
        if body is None:
            raise LedgerError("Balance lookup returned a malformed body", reason="unavailable")
        try:
            return int(body.get("amount", 0))
        except (TypeError, ValueError) as exc:
            raise LedgerError("Balance lookup returned a non-integer amount", reason="unavailable") from exc

    async def submit_purchase(self, instruction: PurchaseInstruction) -> LedgerConfirmation:
        return await self._submit("/transactions/purchase", instruction.reference, asdict(instruction))

    async def submit_merchant_update(self, instruction: MerchantUpdateInstruction) -> LedgerConfirmation:
        return await self._submit("/transactions/merchant-update", instruction.reference, asdict(instruction))

    async def submit_merchant_registration(
        self, instruction: MerchantRegistrationInstruction
    ) -> LedgerConfirmation:
        return await self._submit(
            "/transactions/merchant-registration", instruction.reference, asdict(instruction)
        )

    async def find_signature(self, reference: str) -> str | None:
        try:
            async with self._client() as client:
                response = await client.get(f"/transactions/by-reference/{reference}")
        except httpx.HTTPError as exc:
            raise LedgerError(f"Reference lookup failed: {exc}", reason="unavailable") from exc
        if response.status_code == 404:
            return None
        if not response.is_success:
            raise LedgerError(f"Reference lookup returned HTTP {response.status_code}", reason="unavailable")
        body = _json_object(response)
        if body is None:
            raise LedgerError("Reference lookup returned a malformed body", reason="unavailable")
        signature = body.get("signature")
        return str(signature) if signature else None

    async def _submit(self, path: str, reference: str, payload: dict[str, Any]) -> LedgerConfirmation:
        start = perf_counter()
        try:
            async with self._client() as client:
                response = await client.post(path, json=payload)
        except httpx.TimeoutException as exc:
            # The relay may have landed the transaction after our deadline.
            return await self._resolve_unknown_outcome(reference, f"Ledger confirmation timed out: {exc}", "timeout")
        except httpx.HTTPError as exc:
            return await self._resolve_unknown_outcome(reference, f"Ledger relay unreachable: {exc}", "unavailable")

        latency_ms = int((perf_counter() - start) * 1000)
        if response.is_client_error:
            detail = _error_detail(response)
            logger.warning("Ledger rejected operation", path=path, reference=reference, status_code=response.status_code, detail=detail)
            raise LedgerError(f"Ledger rejected operation: {detail}", reason="rejected")
        if not response.is_success:
            return await self._resolve_unknown_outcome(
                reference, f"Ledger relay returned HTTP {response.status_code}", "unavailable"
            )

        body = _json_object(response)
        signature = body.get("signature") if body is not None else None
        if not signature:
            # A success status without a readable signature may still have landed.
            return await self._resolve_unknown_outcome(
                reference, "Ledger relay response did not include a signature", "unavailable"
            )
        logger.info("Ledger operation confirmed", path=path, reference=reference, signature=signature, latency_ms=latency_ms)
        return LedgerConfirmation(
            signature=str(signature),
            confirmed_at=datetime.now(timezone.utc),
            duplicate=bool(body.get("duplicate", False)),
        )

    async def _resolve_unknown_outcome(
        self, reference: str, message: str, reason: LedgerFailureReason
    ) -> LedgerConfirmation:
        try:
            signature = await self.find_signature(reference)
        except LedgerError:
            signature = None
        if signature:
            logger.warning("Recovered ledger confirmation after transport failure", reference=reference, signature=signature)
            return LedgerConfirmation(signature=signature, confirmed_at=datetime.now(timezone.utc), duplicate=True)
        raise LedgerError(message, reason=reason)


def _json_object(response: httpx.Response) -> dict[str, Any] | None:
    try:
        body = response.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        return str(body.get("error") or body.get("detail") or body)
    return str(body)


@dataclass
class _LedgerMerchant:
    wallet: str
    name: str
    category: str
    cashback_rate_bps: int
    is_active: bool = True
    total_transactions: int = 0
    total_volume: int = 0
    total_rewards_distributed: int = 0


@dataclass
class InMemoryLedgerClient:
    """Process-local ledger used in development and tests.

    Operations are atomic and deduplicated by reference, like the on-chain
    program whose transaction accounts are seeded by the reference.
    """

    balances: dict[str, int] = field(default_factory=dict)
    merchants: dict[str, _LedgerMerchant] = field(default_factory=dict)
    submissions: list[Any] = field(default_factory=list)
    signatures_by_reference: dict[str, str] = field(default_factory=dict)
    _failures: list[LedgerError] = field(default_factory=list)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def fail_next(self, error: LedgerError | None = None) -> None:
        """Make the next submission fail without applying any effect."""

        self._failures.append(error or LedgerError("Simulated ledger rejection"))

    def credit(self, wallet: str, amount: int) -> None:
        self.balances[wallet] = self.balances.get(wallet, 0) + amount

    def ensure_merchant(self, wallet: str, *, cashback_rate_bps: int, name: str = "merchant", category: str = "general") -> None:
        self.merchants.setdefault(
            wallet,
            _LedgerMerchant(wallet=wallet, name=name, category=category, cashback_rate_bps=cashback_rate_bps),
        )

    async def get_token_balance(self, wallet: str) -> int:
        return self.balances.get(wallet, 0)

    async def submit_purchase(self, instruction: PurchaseInstruction) -> LedgerConfirmation:
        async with self._lock:
            duplicate = self._dedupe(instruction.reference)
            if duplicate:
                return duplicate
            self._raise_scheduled_failure()
            merchant = self.merchants.get(instruction.merchant_wallet)
            if merchant is not None and not merchant.is_active:
                raise LedgerError("Merchant is not active", reason="rejected")
            redeem = instruction.redeem_token_amount
            if redeem and self.balances.get(instruction.customer_wallet, 0) < redeem:
                raise LedgerError("Insufficient token balance for redemption", reason="rejected")

            if redeem:
                self.balances[instruction.customer_wallet] -= redeem
                self.credit(instruction.merchant_wallet, redeem)
            if instruction.tokens_awarded:
                self.credit(instruction.customer_wallet, instruction.tokens_awarded)
            if merchant is not None:
                merchant.total_transactions += 1
                merchant.total_volume += instruction.total_value
                merchant.total_rewards_distributed += instruction.tokens_awarded
            return self._confirm(instruction)

    async def submit_merchant_update(self, instruction: MerchantUpdateInstruction) -> LedgerConfirmation:
        async with self._lock:
            duplicate = self._dedupe(instruction.reference)
            if duplicate:
                return duplicate
            self._raise_scheduled_failure()
            merchant = self.merchants.get(instruction.merchant_wallet)
            if merchant is not None:
                if instruction.cashback_rate_bps is not None:
                    merchant.cashback_rate_bps = instruction.cashback_rate_bps
                if instruction.is_active is not None:
                    merchant.is_active = instruction.is_active
            return self._confirm(instruction)

    async def submit_merchant_registration(
        self, instruction: MerchantRegistrationInstruction
    ) -> LedgerConfirmation:
        async with self._lock:
            duplicate = self._dedupe(instruction.reference)
            if duplicate:
                return duplicate
            self._raise_scheduled_failure()
            if instruction.merchant_wallet in self.merchants:
                raise LedgerError("Merchant account already exists", reason="rejected")
            self.merchants[instruction.merchant_wallet] = _LedgerMerchant(
                wallet=instruction.merchant_wallet,
                name=instruction.name,
                category=instruction.category,
                cashback_rate_bps=instruction.cashback_rate_bps,
            )
            return self._confirm(instruction)

    async def find_signature(self, reference: str) -> str | None:
        return self.signatures_by_reference.get(reference)

    def _dedupe(self, reference: str) -> LedgerConfirmation | None:
        signature = self.signatures_by_reference.get(reference)
        if signature is None:
            return None
        return LedgerConfirmation(signature=signature, confirmed_at=datetime.now(timezone.utc), duplicate=True)

    def _raise_scheduled_failure(self) -> None:
        if self._failures:
            raise self._failures.pop(0)

    def _confirm(self, instruction: Any) -> LedgerConfirmation:
        signature = secrets.token_hex(32)
        self.signatures_by_reference[instruction.reference] = signature
        self.submissions.append(instruction)
        return LedgerConfirmation(signature=signature, confirmed_at=datetime.now(timezone.utc))


_DEFAULT_CLIENT: LedgerClient | None = None


def get_ledger_client() -> LedgerClient:
    """Return the process-wide ledger client configured from settings."""

    global _DEFAULT_CLIENT
    if _DEFAULT_CLIENT is not None:
        return _DEFAULT_CLIENT
    if settings.ledger_gateway_url:
        _DEFAULT_CLIENT = HttpLedgerClient(
            settings.ledger_gateway_url,
            api_key=settings.ledger_gateway_api_key,
            timeout_seconds=settings.ledger_confirmation_timeout_seconds,
        )
    elif settings.environment == "development":
        logger.warning("No ledger gateway configured; using in-memory ledger")
        _DEFAULT_CLIENT = InMemoryLedgerClient()
    else:
        raise RuntimeError("ledger_gateway_url must be configured outside development")
    return _DEFAULT_CLIENT


__all__ = [
    "HttpLedgerClient",
    "InMemoryLedgerClient",
    "LedgerClient",
    "LedgerConfirmation",
    "LedgerError",
    "MerchantRegistrationInstruction",
    "MerchantUpdateInstruction",
    "PurchaseInstruction",
    "get_ledger_client",
]
