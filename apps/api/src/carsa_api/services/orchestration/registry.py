"""Wiring for the orchestrators that share one guard, ledger and store."""

from __future__ import annotations

from dataclasses import dataclass

from carsa_api.core.settings import settings
from carsa_api.models.idempotency import OperationKind
from carsa_api.observability.orchestration import OrchestrationObservabilityStore
from carsa_api.services.idempotency import IdempotencyGuard
from carsa_api.services.ledger import LedgerClient
from carsa_api.services.persistence import PersistenceClient, SessionFactory

from .base import LedgerBackedOrchestrator
from .merchant_registration import MerchantRegistrationOrchestrator
from .merchant_update import MerchantUpdateOrchestrator
from .purchase import PurchaseOrchestrator


@dataclass(slots=True)
class Orchestrators:
    guard: IdempotencyGuard
    persistence: PersistenceClient
    ledger: LedgerClient
    purchase: PurchaseOrchestrator
    merchant_update: MerchantUpdateOrchestrator
    merchant_registration: MerchantRegistrationOrchestrator

    def for_operation(self, operation: OperationKind) -> LedgerBackedOrchestrator:
        return {
            OperationKind.PURCHASE: self.purchase,
            OperationKind.MERCHANT_UPDATE: self.merchant_update,
            OperationKind.MERCHANT_REGISTRATION: self.merchant_registration,
        }[OperationKind(operation)]


def build_orchestrators(
    session_factory: SessionFactory,
    ledger: LedgerClient,
    *,
    observability: OrchestrationObservabilityStore | None = None,
) -> Orchestrators:
    persistence = PersistenceClient(session_factory)
    guard = IdempotencyGuard(persistence, lease_seconds=settings.idempotency_lease_seconds)
    shared = {"guard": guard, "ledger": ledger, "persistence": persistence, "observability": observability}
    return Orchestrators(
        guard=guard,
        persistence=persistence,
        ledger=ledger,
        purchase=PurchaseOrchestrator(**shared),
        merchant_update=MerchantUpdateOrchestrator(**shared),
        merchant_registration=MerchantRegistrationOrchestrator(**shared),
    )


__all__ = ["Orchestrators", "build_orchestrators"]
