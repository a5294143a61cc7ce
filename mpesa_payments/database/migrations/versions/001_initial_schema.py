"""Initial database schema

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")

TRANSACTION_STATUSES = "'pending', 'processing', 'completed', 'failed', 'cancelled', 'refunded'"
PURPOSES = "'consultation_fee', 'case_fee', 'document_fee', 'court_fee', 'other', 'refund'"
INTERACTION_TYPES = (
    "'push_request', 'status_query', 'callback_received', "
    "'disbursement_request', 'disbursement_result'"
)


def upgrade() -> None:
    """Upgrade database schema."""
    # Create payment_transactions table
    op.create_table(
        "payment_transactions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("merchant_request_id", sa.String(length=100), nullable=True),
        sa.Column("checkout_request_id", sa.String(length=100), nullable=True),
        sa.Column("conversation_id", sa.String(length=100), nullable=True),
        sa.Column("originator_conversation_id", sa.String(length=100), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("method", sa.String(length=20), nullable=False),
        sa.Column("payer_reference", sa.String(length=20), nullable=False),
        sa.Column("purpose", sa.String(length=30), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("account_reference", sa.String(length=20), nullable=True),
        sa.Column("requested_by", sa.String(length=100), nullable=True),
        sa.Column("linked_entity_type", sa.String(length=50), nullable=True),
        sa.Column("linked_entity_id", sa.String(length=100), nullable=True),
        sa.Column("source_transaction_id", sa.Uuid(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("refunded_amount", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column(
            "refund_pending_amount", sa.Integer(), server_default=sa.text("0"), nullable=False
        ),
        sa.Column("request_payload", JSONType, nullable=True),
        sa.Column("response_payload", JSONType, nullable=True),
        sa.Column("callback_payload", JSONType, nullable=True),
        sa.Column("result_code", sa.Integer(), nullable=True),
        sa.Column("result_desc", sa.Text(), nullable=True),
        sa.Column("receipt_number", sa.String(length=50), nullable=True),
        sa.Column("callback_received", sa.Boolean(), nullable=False),
        sa.Column("callback_received_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("max_retries", sa.Integer(), server_default=sa.text("3"), nullable=False),
        sa.Column("last_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("amount > 0", name="positive_amount"),
        sa.CheckConstraint(f"status IN ({TRANSACTION_STATUSES})", name="valid_status"),
        sa.CheckConstraint(f"purpose IN ({PURPOSES})", name="valid_purpose"),
        sa.CheckConstraint(
            "refunded_amount + refund_pending_amount <= amount", name="refunds_within_amount"
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("merchant_request_id"),
        sa.UniqueConstraint("checkout_request_id"),
        sa.UniqueConstraint("conversation_id"),
        sa.UniqueConstraint("originator_conversation_id"),
    )
    op.create_index(
        "idx_transactions_linked_entity",
        "payment_transactions",
        ["linked_entity_type", "linked_entity_id"],
        unique=False,
    )
    op.create_index(
        "idx_transactions_status_created",
        "payment_transactions",
        ["status", "created_at"],
        unique=False,
    )
    op.create_index(
        "idx_transactions_created", "payment_transactions", ["created_at"], unique=False
    )
    op.create_index(
        op.f("ix_payment_transactions_source_transaction_id"),
        "payment_transactions",
        ["source_transaction_id"],
        unique=False,
    )

    # Create transaction_log_entries table
    op.create_table(
        "transaction_log_entries",
        sa.Column(
            "id",
            sa.BigInteger().with_variant(sa.Integer(), "sqlite"),
            autoincrement=True,
            nullable=False,
        ),
        sa.Column("transaction_id", sa.Uuid(), nullable=True),
        sa.Column("interaction_type", sa.String(length=30), nullable=False),
        sa.Column("correlation_id", sa.String(length=100), nullable=True),
        sa.Column("request_payload", JSONType, nullable=True),
        sa.Column("response_payload", JSONType, nullable=True),
        sa.Column("status_code", sa.Integer(), nullable=True),
        sa.Column("latency_ms", sa.Float(), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error_code", sa.String(length=100), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("client_ip", sa.String(length=45), nullable=True),
        sa.Column("user_agent", sa.String(length=255), nullable=True),
        sa.Column("environment", sa.String(length=20), nullable=False),
        sa.Column("is_retry", sa.Boolean(), nullable=False),
        sa.Column("retry_attempt", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            f"interaction_type IN ({INTERACTION_TYPES})", name="valid_interaction_type"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_log_type_created",
        "transaction_log_entries",
        ["interaction_type", "created_at"],
        unique=False,
    )
    op.create_index(
        "idx_log_success_created",
        "transaction_log_entries",
        ["success", "created_at"],
        unique=False,
    )
    op.create_index("idx_log_created", "transaction_log_entries", ["created_at"], unique=False)
    op.create_index(
        op.f("ix_transaction_log_entries_transaction_id"),
        "transaction_log_entries",
        ["transaction_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_transaction_log_entries_correlation_id"),
        "transaction_log_entries",
        ["correlation_id"],
        unique=False,
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_index(
        op.f("ix_transaction_log_entries_correlation_id"), table_name="transaction_log_entries"
    )
    op.drop_index(
        op.f("ix_transaction_log_entries_transaction_id"), table_name="transaction_log_entries"
    )
    op.drop_index("idx_log_created", table_name="transaction_log_entries")
    op.drop_index("idx_log_success_created", table_name="transaction_log_entries")
    op.drop_index("idx_log_type_created", table_name="transaction_log_entries")
    op.drop_table("transaction_log_entries")
    op.drop_index(
        op.f("ix_payment_transactions_source_transaction_id"), table_name="payment_transactions"
    )
    op.drop_index("idx_transactions_created", table_name="payment_transactions")
    op.drop_index("idx_transactions_status_created", table_name="payment_transactions")
    op.drop_index("idx_transactions_linked_entity", table_name="payment_transactions")
    op.drop_table("payment_transactions")
