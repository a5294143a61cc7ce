"""SQLAlchemy database models for the M-Pesa payment integration."""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class TransactionStatus(str, Enum):
    """Lifecycle states of a payment transaction."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        TransactionStatus.COMPLETED,
        TransactionStatus.FAILED,
        TransactionStatus.CANCELLED,
        TransactionStatus.REFUNDED,
    }
)


class PaymentPurpose(str, Enum):
    """What a payment is for."""

    CONSULTATION_FEE = "consultation_fee"
    CASE_FEE = "case_fee"
    DOCUMENT_FEE = "document_fee"
    COURT_FEE = "court_fee"
    OTHER = "other"
    REFUND = "refund"


class InteractionType(str, Enum):
    """Kinds of exchanges with the gateway recorded in the transaction log."""

    PUSH_REQUEST = "push_request"
    STATUS_QUERY = "status_query"
    CALLBACK_RECEIVED = "callback_received"
    DISBURSEMENT_REQUEST = "disbursement_request"
    DISBURSEMENT_RESULT = "disbursement_result"


def _sql_in(values: Any) -> str:
    return ", ".join(f"'{v.value}'" for v in values)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class PaymentTransaction(Base):
    """
    Payment transactions table.

    One row per monetary attempt, push payments and refund disbursements
    alike. Provider correlation ids are sparse: they stay NULL until the
    gateway acknowledges the outbound request. Rows are never deleted.
    """

    __tablename__ = "payment_transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Provider correlation ids
    merchant_request_id: Mapped[Optional[str]] = mapped_column(
        String(100), unique=True, nullable=True
    )
    checkout_request_id: Mapped[Optional[str]] = mapped_column(
        String(100), unique=True, nullable=True
    )
    conversation_id: Mapped[Optional[str]] = mapped_column(
        String(100), unique=True, nullable=True
    )
    originator_conversation_id: Mapped[Optional[str]] = mapped_column(
        String(100), unique=True, nullable=True
    )

    # Business attributes
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="KES")
    method: Mapped[str] = mapped_column(String(20), nullable=False, default="mpesa")
    payer_reference: Mapped[str] = mapped_column(String(20), nullable=False)
    purpose: Mapped[str] = mapped_column(String(30), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    account_reference: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    requested_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    linked_entity_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    linked_entity_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    source_transaction_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, nullable=True, index=True
    )

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TransactionStatus.PENDING.value
    )
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Refund accounting on the source transaction
    refunded_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    refund_pending_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Gateway detail block
    request_payload: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    response_payload: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    callback_payload: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    result_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    result_desc: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    receipt_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    callback_received: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    callback_received_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Retry bookkeeping
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    last_retry_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint(f"status IN ({_sql_in(TransactionStatus)})", name="valid_status"),
        CheckConstraint(f"purpose IN ({_sql_in(PaymentPurpose)})", name="valid_purpose"),
        CheckConstraint(
            "refunded_amount + refund_pending_amount <= amount", name="refunds_within_amount"
        ),
        Index("idx_transactions_linked_entity", "linked_entity_type", "linked_entity_id"),
        Index("idx_transactions_status_created", "status", "created_at"),
        Index("idx_transactions_created", "created_at"),
    )

    @property
    def refundable_balance(self) -> int:
        """Amount that can still be refunded from this transaction."""
        if self.status != TransactionStatus.COMPLETED.value:
            return 0
        return self.amount - self.refunded_amount - self.refund_pending_amount

    @property
    def correlation_id(self) -> Optional[str]:
        """Primary provider correlation id for this transaction."""
        return self.checkout_request_id or self.conversation_id

    def __repr__(self) -> str:
        """String representation of PaymentTransaction."""
        return (
            f"<PaymentTransaction(id={self.id}, purpose={self.purpose}, "
            f"amount={self.amount}, status={self.status})>"
        )


class TransactionLogEntry(Base):
    """
    Gateway interaction audit trail table.

    One row per request/response/callback exchanged with the provider.
    Immutable once written; removed only by the retention purge.
    """

    __tablename__ = "transaction_log_entries"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    transaction_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True, index=True)
    interaction_type: Mapped[str] = mapped_column(String(30), nullable=False)
    correlation_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    request_payload: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    response_payload: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    status_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    latency_ms: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    error_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    client_ip: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    environment: Mapped[str] = mapped_column(String(20), nullable=False, default="sandbox")
    is_retry: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    retry_attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            f"interaction_type IN ({_sql_in(InteractionType)})", name="valid_interaction_type"
        ),
        Index("idx_log_type_created", "interaction_type", "created_at"),
        Index("idx_log_success_created", "success", "created_at"),
        Index("idx_log_created", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation of TransactionLogEntry."""
        return (
            f"<TransactionLogEntry(id={self.id}, type={self.interaction_type}, "
            f"transaction_id={self.transaction_id}, success={self.success})>"
        )
