"""Merchant registry models."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import BigInteger, Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from carsa_api.db.base import Base


class Merchant(Base):
    """Registered merchant mirrored from its ledger account."""

    __tablename__ = "merchants"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    wallet_address = Column(String(64), nullable=False, unique=True, index=True)
    name = Column(String(32), nullable=False)
    category = Column(String(16), nullable=False)
    cashback_rate_bps = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    email = Column(String(255), nullable=True)
    phone = Column(String(32), nullable=True)
    address_line1 = Column(String(255), nullable=True)
    city = Column(String(128), nullable=True)
    registration_signature = Column(String(128), nullable=True, unique=True)

    # Mirrors of the ledger-side merchant statistics.
    total_transactions = Column(BigInteger, nullable=False, default=0, server_default="0")
    total_volume = Column(BigInteger, nullable=False, default=0, server_default="0")
    total_rewards_distributed = Column(BigInteger, nullable=False, default=0, server_default="0")

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    transactions = relationship("PurchaseTransaction", back_populates="merchant")
    update_events = relationship(
        "MerchantUpdateEvent",
        back_populates="merchant",
        order_by="MerchantUpdateEvent.created_at",
    )

    __table_args__ = (
        CheckConstraint(
            "cashback_rate_bps >= 0 AND cashback_rate_bps <= 10000",
            name="cashback_rate_range",
        ),
    )


class MerchantUpdateEvent(Base):
    """Persisted outcome of a confirmed merchant update on the ledger."""

    __tablename__ = "merchant_update_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_id = Column(
        UUID(as_uuid=True),
        ForeignKey("merchants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    ledger_signature = Column(String(128), nullable=False, unique=True)
    idempotency_key = Column(String(255), nullable=True)
    previous_cashback_rate_bps = Column(Integer, nullable=False)
    new_cashback_rate_bps = Column(Integer, nullable=False)
    previous_is_active = Column(Boolean, nullable=False)
    new_is_active = Column(Boolean, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    merchant = relationship("Merchant", back_populates="update_events")
