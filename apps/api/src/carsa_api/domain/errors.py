"""Closed error taxonomy shared by the orchestration core and the HTTP layer."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorKind(str, Enum):
    """Every way a ledger-backed operation can fail."""

    VALIDATION = "validation"
    INVALID_REQUEST = "invalid_request"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    INVALID_RATE = "invalid_rate"
    OVERFLOW = "overflow"
    LEDGER = "ledger"
    PERSISTENCE = "persistence"


HTTP_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.INVALID_REQUEST: 400,
    ErrorKind.INSUFFICIENT_BALANCE: 400,
    ErrorKind.INVALID_RATE: 400,
    ErrorKind.OVERFLOW: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.LEDGER: 502,
    ErrorKind.PERSISTENCE: 500,
}


class CarsaError(Exception):
    """Base exception carrying an :class:`ErrorKind`."""

    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, message: str, *, kind: ErrorKind | None = None) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind


class ValidationError(CarsaError):
    kind = ErrorKind.VALIDATION


class NotFoundError(CarsaError):
    kind = ErrorKind.NOT_FOUND


class ConflictError(CarsaError):
    kind = ErrorKind.CONFLICT


class InsufficientBalanceError(CarsaError):
    kind = ErrorKind.INSUFFICIENT_BALANCE


class InvalidRateError(CarsaError):
    kind = ErrorKind.INVALID_RATE


class RewardOverflowError(CarsaError):
    kind = ErrorKind.OVERFLOW


class InvalidTransitionError(CarsaError):
    """Raised when an idempotency record is not in the state a transition requires."""

    kind = ErrorKind.CONFLICT


class PersistenceUnavailableError(CarsaError):
    """The relational store could not complete a write."""

    kind = ErrorKind.PERSISTENCE


@dataclass(frozen=True, slots=True)
class OrchestrationFailure:
    """Explicit failure outcome returned by orchestrators."""

    kind: ErrorKind
    message: str
    idempotency_key: str
    ledger_signature: str | None = None

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_BY_KIND[self.kind]


__all__ = [
    "CarsaError",
    "ConflictError",
    "ErrorKind",
    "HTTP_STATUS_BY_KIND",
    "InsufficientBalanceError",
    "InvalidRateError",
    "InvalidTransitionError",
    "NotFoundError",
    "OrchestrationFailure",
    "PersistenceUnavailableError",
    "RewardOverflowError",
    "ValidationError",
]
