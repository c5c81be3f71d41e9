"""Merchants, purchase transactions and idempotency records.

Revision ID: 20261017_01
Revises: 
Create Date: 2026-10-17
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261017_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

OPERATION_VALUES = ("purchase", "merchant_update", "merchant_registration")
STATUS_VALUES = ("pending", "completed", "failed")


def upgrade() -> None:
    op.create_table(
        "merchants",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("wallet_address", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=32), nullable=False),
        sa.Column("category", sa.String(length=16), nullable=False),
        sa.Column("cashback_rate_bps", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("address_line1", sa.String(length=255), nullable=True),
        sa.Column("city", sa.String(length=128), nullable=True),
        sa.Column("registration_signature", sa.String(length=128), nullable=True, unique=True),
        sa.Column("total_transactions", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("total_volume", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("total_rewards_distributed", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "cashback_rate_bps >= 0 AND cashback_rate_bps <= 10000",
            name="ck_merchants_cashback_rate_range",
        ),
    )
    op.create_index("ix_merchants_wallet_address", "merchants", ["wallet_address"], unique=True)

    op.create_table(
        "purchase_transactions",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "merchant_id",
            sa.dialects.postgresql.UUID(as_uuid=True),
            sa.ForeignKey("merchants.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("customer_wallet", sa.String(length=64), nullable=False),
        sa.Column("fiat_amount", sa.BigInteger(), nullable=False),
        sa.Column("redeemed_token_amount", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("total_value", sa.BigInteger(), nullable=False),
        sa.Column("tokens_awarded", sa.BigInteger(), nullable=False),
        sa.Column("cashback_rate_bps", sa.Integer(), nullable=False),
        sa.Column("used_tokens", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("ledger_signature", sa.String(length=128), nullable=False, unique=True),
        sa.Column("idempotency_key", sa.String(length=255), nullable=True, unique=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_purchase_transactions_merchant_id", "purchase_transactions", ["merchant_id"])
    op.create_index("ix_purchase_transactions_customer_wallet", "purchase_transactions", ["customer_wallet"])

    op.create_table(
        "merchant_update_events",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "merchant_id",
            sa.dialects.postgresql.UUID(as_uuid=True),
            sa.ForeignKey("merchants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("ledger_signature", sa.String(length=128), nullable=False, unique=True),
        sa.Column("idempotency_key", sa.String(length=255), nullable=True),
        sa.Column("previous_cashback_rate_bps", sa.Integer(), nullable=False),
        sa.Column("new_cashback_rate_bps", sa.Integer(), nullable=False),
        sa.Column("previous_is_active", sa.Boolean(), nullable=False),
        sa.Column("new_is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_merchant_update_events_merchant_id", "merchant_update_events", ["merchant_id"])

    op.create_table(
        "idempotency_records",
        sa.Column("key", sa.String(length=255), primary_key=True),
        sa.Column("operation", sa.Enum(*OPERATION_VALUES, name="idempotency_operation_enum"), nullable=False),
        sa.Column("status", sa.Enum(*STATUS_VALUES, name="idempotency_status_enum"), nullable=False),
        sa.Column("request_hash", sa.String(length=64), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("ledger_reference", sa.String(length=64), nullable=True, unique=True),
        sa.Column("ledger_signature", sa.String(length=128), nullable=True),
        sa.Column("commit_plan", sa.JSON(), nullable=True),
        sa.Column("result_ref", sa.JSON(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_idempotency_records_status_updated", "idempotency_records", ["status", "updated_at"])


def downgrade() -> None:
    op.drop_index("ix_idempotency_records_status_updated", table_name="idempotency_records")
    op.drop_table("idempotency_records")
    op.drop_index("ix_merchant_update_events_merchant_id", table_name="merchant_update_events")
    op.drop_table("merchant_update_events")
    op.drop_index("ix_purchase_transactions_customer_wallet", table_name="purchase_transactions")
    op.drop_index("ix_purchase_transactions_merchant_id", table_name="purchase_transactions")
    op.drop_table("purchase_transactions")
    op.drop_index("ix_merchants_wallet_address", table_name="merchants")
    op.drop_table("merchants")
    sa.Enum(name="idempotency_status_enum").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="idempotency_operation_enum").drop(op.get_bind(), checkfirst=True)
