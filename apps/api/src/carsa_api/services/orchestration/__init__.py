from .base import LedgerBackedOrchestrator, PreparedSubmission
from .merchant_registration import (
    MerchantRegistrationOperation,
    MerchantRegistrationOrchestrator,
    MerchantRegistrationReceipt,
)
from .merchant_update import MerchantUpdateOperation, MerchantUpdateOrchestrator, MerchantUpdateReceipt
from .purchase import PurchaseOperation, PurchaseOrchestrator, PurchaseReceipt
from .reconciliation import ReconciliationService, SweepSummary
from .registry import Orchestrators, build_orchestrators

__all__ = [
    "LedgerBackedOrchestrator",
    "MerchantRegistrationOperation",
    "MerchantRegistrationOrchestrator",
    "MerchantRegistrationReceipt",
    "MerchantUpdateOperation",
    "MerchantUpdateOrchestrator",
    "MerchantUpdateReceipt",
    "Orchestrators",
    "PreparedSubmission",
    "PurchaseOperation",
    "PurchaseOrchestrator",
    "PurchaseReceipt",
    "ReconciliationService",
    "SweepSummary",
    "build_orchestrators",
]
