"""ORM models registered on the shared declarative metadata."""

from carsa_api.models.idempotency import IdempotencyRecord, IdempotencyStatus, OperationKind
from carsa_api.models.merchant import Merchant, MerchantUpdateEvent
from carsa_api.models.transaction import PurchaseTransaction

__all__ = [
    "IdempotencyRecord",
    "IdempotencyStatus",
    "Merchant",
    "MerchantUpdateEvent",
    "OperationKind",
    "PurchaseTransaction",
]
