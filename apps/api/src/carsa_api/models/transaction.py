"""Purchase transaction ledger mirror."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import BigInteger, Boolean, Column, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from carsa_api.db.base import Base


class PurchaseTransaction(Base):
    """A purchase whose ledger effect has been confirmed and recorded locally."""

    __tablename__ = "purchase_transactions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_id = Column(
        UUID(as_uuid=True),
        ForeignKey("merchants.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    customer_wallet = Column(String(64), nullable=False, index=True)
    fiat_amount = Column(BigInteger, nullable=False)
    redeemed_token_amount = Column(BigInteger, nullable=False, default=0, server_default="0")
    total_value = Column(BigInteger, nullable=False)
    tokens_awarded = Column(BigInteger, nullable=False)
    cashback_rate_bps = Column(Integer, nullable=False)
    used_tokens = Column(Boolean, nullable=False, default=False, server_default="false")
    ledger_signature = Column(String(128), nullable=False, unique=True)
    idempotency_key = Column(String(255), nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    merchant = relationship("Merchant", back_populates="transactions")
