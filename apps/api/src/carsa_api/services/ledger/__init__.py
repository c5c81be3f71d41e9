from .client import (
    HttpLedgerClient,
    InMemoryLedgerClient,
    LedgerClient,
    LedgerConfirmation,
    LedgerError,
    MerchantRegistrationInstruction,
    MerchantUpdateInstruction,
    PurchaseInstruction,
    get_ledger_client,
)

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
