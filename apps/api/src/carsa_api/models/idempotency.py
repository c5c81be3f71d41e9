"""Durable idempotency records guarding ledger-backed operations."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import JSON, Column, DateTime, Enum as SqlEnum, Index, Integer, String, Text

from carsa_api.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IdempotencyStatus(str, Enum):
    """Lifecycle of a keyed operation.

    ``PENDING`` with a ``ledger_signature`` is the ambiguous state: the ledger
    confirmed the effect but the local record was not written.
    """

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class OperationKind(str, Enum):
    """Ledger-backed operations protected by an idempotency key."""

    PURCHASE = "purchase"
    MERCHANT_UPDATE = "merchant_update"
    MERCHANT_REGISTRATION = "merchant_registration"


class IdempotencyRecord(Base):
    """One row per caller-supplied idempotency key."""

    __tablename__ = "idempotency_records"

    key = Column(String(255), primary_key=True)
    operation = Column(
        SqlEnum(
            OperationKind,
            name="idempotency_operation_enum",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    status = Column(
        SqlEnum(
            IdempotencyStatus,
            name="idempotency_status_enum",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=IdempotencyStatus.PENDING,
    )
    request_hash = Column(String(64), nullable=False)
    attempts = Column(Integer, nullable=False, default=1)
    ledger_reference = Column(String(64), nullable=True, unique=True)
    ledger_signature = Column(String(128), nullable=True)
    commit_plan = Column(JSON, nullable=True)
    result_ref = Column(JSON, nullable=True)
    last_error = Column(Text, nullable=True)
    lease_expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_idempotency_records_status_updated", "status", "updated_at"),
    )

    @property
    def is_ambiguous(self) -> bool:
        return self.status == IdempotencyStatus.PENDING and self.ledger_signature is not None
