"""
Push payment orchestration.

Orchestrates the initiation flow:
1. Validate input (nothing is sent or logged on failure)
2. Call the gateway with a pre-generated transaction id
3. Persist the acknowledged request as ``processing``
4. On rejection, keep a ``failed`` record; on an unknown outcome, keep a
   ``pending`` record for the supervisor

Also serves status lookups, filtered listings and analytics.
"""
import math
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mpesa_payments.config import Settings, get_settings
from mpesa_payments.core.errors import (
    PaymentInitiationError,
    TransactionNotFoundError,
    ValidationError,
)
from mpesa_payments.core.reconciliation import ReconciliationEngine
from mpesa_payments.core.transaction_log import CallerContext, LogContext, TransactionLog
from mpesa_payments.database.models import (
    PaymentPurpose,
    PaymentTransaction,
    TransactionStatus,
)
from mpesa_payments.database.repository import TransactionStore
from mpesa_payments.integrations.daraja_client import (
    DarajaClient,
    GatewayBusinessError,
    GatewayError,
    validate_amount,
    validate_phone_number,
)
from mpesa_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

MAX_DESCRIPTION_LENGTH = 500
MAX_PAGE_SIZE = 100


@dataclass
class PaymentIntent:
    """A collaborator's request to collect money from a payer."""

    amount: int
    payer_reference: str
    purpose: str
    description: str
    requested_by: Optional[str] = None
    linked_entity_type: Optional[str] = None
    linked_entity_id: Optional[str] = None


def _validate_intent(intent: PaymentIntent) -> str:
    """
    Validate a payment intent.

    Returns:
        str: Normalized payer reference

    Raises:
        ValidationError: If validation fails
    """
    validate_amount(intent.amount)

    try:
        purpose = PaymentPurpose(intent.purpose)
    except ValueError:
        raise ValidationError(f"Unknown payment purpose: {intent.purpose!r}")
    if purpose == PaymentPurpose.REFUND:
        raise ValidationError("Refunds are issued through the refund endpoint")

    if not intent.description or not intent.description.strip():
        raise ValidationError("Description is required")
    if len(intent.description) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError(
            f"Description must be at most {MAX_DESCRIPTION_LENGTH} characters"
        )

    return validate_phone_number(intent.payer_reference)


def serialize_transaction(transaction: PaymentTransaction) -> Dict[str, Any]:
    """Public view of a transaction; raw gateway payloads are not exposed."""
    return {
        "id": str(transaction.id),
        "status": transaction.status,
        "amount": transaction.amount,
        "currency": transaction.currency,
        "method": transaction.method,
        "purpose": transaction.purpose,
        "description": transaction.description,
        "payer_reference": transaction.payer_reference,
        "account_reference": transaction.account_reference,
        "requested_by": transaction.requested_by,
        "linked_entity_type": transaction.linked_entity_type,
        "linked_entity_id": transaction.linked_entity_id,
        "source_transaction_id": str(transaction.source_transaction_id)
        if transaction.source_transaction_id
        else None,
        "merchant_request_id": transaction.merchant_request_id,
        "checkout_request_id": transaction.checkout_request_id,
        "conversation_id": transaction.conversation_id,
        "result_code": transaction.result_code,
        "result_desc": transaction.result_desc,
        "receipt_number": transaction.receipt_number,
        "failure_reason": transaction.failure_reason,
        "refunded_amount": transaction.refunded_amount,
        "refundable_balance": transaction.refundable_balance,
        "retry_count": transaction.retry_count,
        "created_at": transaction.created_at.isoformat() if transaction.created_at else None,
        "updated_at": transaction.updated_at.isoformat() if transaction.updated_at else None,
        "completed_at": transaction.completed_at.isoformat() if transaction.completed_at else None,
    }


class PaymentService:
    """
    Push payment orchestrator.

    Handles initiation with correct bookkeeping under every gateway
    outcome, plus the read side used by the HTTP API.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: DarajaClient,
        engine: ReconciliationEngine,
        transaction_log: TransactionLog,
        settings: Optional[Settings] = None,
        store: Optional[TransactionStore] = None,
    ):
        """
        Initialize payment service.

        Args:
            session_factory: Factory for units of work
            gateway: Daraja API client
            engine: Reconciliation engine for terminal transitions
            transaction_log: Audit log (for analytics)
            settings: Optional settings (defaults to environment settings)
            store: Optional transaction store
        """
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.gateway = gateway
        self.engine = engine
        self.transaction_log = transaction_log
        self.store = store or TransactionStore()
        logger.info("payment_service_initialized")

    def _account_reference(self, transaction_id: uuid.UUID) -> str:
        return f"{self.settings.mpesa_account_reference_prefix}-{transaction_id.hex[:8].upper()}"

    def _new_transaction(
        self, transaction_id: uuid.UUID, intent: PaymentIntent, phone: str
    ) -> PaymentTransaction:
        return PaymentTransaction(
            id=transaction_id,
            amount=intent.amount,
            currency="KES",
            method="mpesa",
            payer_reference=phone,
            purpose=PaymentPurpose(intent.purpose).value,
            description=intent.description,
            account_reference=self._account_reference(transaction_id),
            requested_by=intent.requested_by,
            linked_entity_type=intent.linked_entity_type,
            linked_entity_id=intent.linked_entity_id,
            status=TransactionStatus.PENDING.value,
            max_retries=self.settings.max_retries,
        )

    async def initiate_payment(
        self, intent: PaymentIntent, caller: Optional[CallerContext] = None
    ) -> Dict[str, Any]:
        """
        Request a push payment from the payer.

        Args:
            intent: What to collect, from whom and why
            caller: Network metadata of the requester

        Returns:
            Dict[str, Any]: Transaction id, status and correlation ids

        Raises:
            ValidationError: If input validation fails
            PaymentInitiationError: If the gateway rejected the request or
                could not be reached
        """
        phone = _validate_intent(intent)
        transaction_id = uuid.uuid4()
        transaction = self._new_transaction(transaction_id, intent, phone)

        log = logger.bind(transaction_id=str(transaction_id), purpose=transaction.purpose)
        log.info("payment_initiation_started", amount=intent.amount)

        try:
            ack = await self.gateway.initiate_push(
                amount=intent.amount,
                payer_reference=phone,
                account_reference=transaction.account_reference,
                description=intent.description,
                context=LogContext(transaction_id=transaction_id, caller=caller),
            )
        except GatewayBusinessError as e:
            async with self.session_factory() as db:
                await self.store.add(db, transaction)
                await db.commit()
            await self.engine.fail(
                transaction_id,
                str(e),
                from_statuses=[TransactionStatus.PENDING],
                source="initiation",
                result_desc=str(e),
            )
            metrics.record_payment_initiation(transaction.purpose, "rejected", intent.amount)
            log.warning("payment_initiation_rejected", error=str(e), error_code=e.error_code)
            raise PaymentInitiationError(
                f"Payment request rejected: {e}", transaction_id=transaction_id
            )
        except GatewayError as e:
            if e.is_transient and e.request_sent:
                # The gateway may have accepted the push; keep a record so the
                # outcome is not lost.
                async with self.session_factory() as db:
                    transaction.failure_reason = str(e)
                    await self.store.add(db, transaction)
                    await db.commit()
                metrics.record_payment_initiation(transaction.purpose, "unknown", intent.amount)
                log.error("payment_initiation_outcome_unknown", error=str(e))
                raise PaymentInitiationError(
                    "Payment gateway did not respond; the payment is pending verification",
                    transaction_id=transaction_id,
                    retryable=False,
                    outcome_unknown=True,
                )
            metrics.record_payment_initiation(transaction.purpose, "unavailable", intent.amount)
            log.error(
                "payment_initiation_failed",
                error=str(e),
                error_type=e.error_type.value,
            )
            raise PaymentInitiationError(
                f"Payment gateway unavailable: {e}", retryable=e.is_transient
            )

        async with self.session_factory() as db:
            transaction.request_payload = ack.request_payload
            transaction.response_payload = ack.raw
            await self.store.add(db, transaction)
            await self.store.transition(
                db,
                transaction_id,
                [TransactionStatus.PENDING],
                TransactionStatus.PROCESSING,
                merchant_request_id=ack.merchant_request_id,
                checkout_request_id=ack.checkout_request_id,
            )
            await db.commit()

        metrics.record_payment_initiation(transaction.purpose, "accepted", intent.amount)
        metrics.record_transition(TransactionStatus.PROCESSING.value, "initiation")
        log.info(
            "payment_initiated",
            checkout_request_id=ack.checkout_request_id,
            merchant_request_id=ack.merchant_request_id,
        )

        status = TransactionStatus.PROCESSING.value
        if await self.engine.replay_orphans(ack.checkout_request_id, ack.merchant_request_id):
            status = (await self.get_transaction(transaction_id)).status

        return {
            "transaction_id": str(transaction_id),
            "status": status,
            "checkout_request_id": ack.checkout_request_id,
            "merchant_request_id": ack.merchant_request_id,
            "customer_message": ack.customer_message,
        }

    async def get_transaction(self, transaction_id: str | uuid.UUID) -> PaymentTransaction:
        """
        Load a transaction.

        Raises:
            TransactionNotFoundError: If the id is unknown or malformed
        """
        try:
            key = uuid.UUID(str(transaction_id))
        except ValueError:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")

        async with self.session_factory() as db:
            transaction = await self.store.get(db, key)
        if transaction is None:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
        return transaction

    async def get_status(self, transaction_id: str | uuid.UUID) -> Dict[str, Any]:
        """Current status, receipt and result description of a transaction."""
        transaction = await self.get_transaction(transaction_id)
        return {
            "transaction_id": str(transaction.id),
            "status": transaction.status,
            "amount": transaction.amount,
            "currency": transaction.currency,
            "purpose": transaction.purpose,
            "receipt_number": transaction.receipt_number
            if transaction.status
            in (TransactionStatus.COMPLETED.value, TransactionStatus.REFUNDED.value)
            else None,
            "result_code": transaction.result_code,
            "result_desc": transaction.result_desc or transaction.failure_reason,
            "refunded_amount": transaction.refunded_amount,
            "refundable_balance": transaction.refundable_balance,
            "created_at": transaction.created_at.isoformat() if transaction.created_at else None,
            "completed_at": transaction.completed_at.isoformat() if transaction.completed_at else None,
        }

    async def list_payments(
        self,
        page: int = 1,
        limit: int = 10,
        status: Optional[str] = None,
        method: Optional[str] = None,
        purpose: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        search: Optional[str] = None,
        requested_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Paginated, filtered transaction listing.

        Returns:
            Dict[str, Any]: ``transactions`` plus a ``pagination`` envelope
        """
        page = max(1, page)
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        async with self.session_factory() as db:
            rows, total = await self.store.list_transactions(
                db,
                page=page,
                limit=limit,
                status=status,
                method=method,
                purpose=purpose,
                start_date=start_date,
                end_date=end_date,
                search=search,
                requested_by=requested_by,
            )

        pages = math.ceil(total / limit) if total else 0
        return {
            "transactions": [serialize_transaction(t) for t in rows],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": pages,
                "has_next": page < pages,
                "has_prev": page > 1,
            },
        }

    async def analytics(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Aggregate payment volume plus gateway interaction health.

        Returns:
            Dict[str, Any]: Summary, per-status/purpose breakdown,
            per-interaction statistics and top errors
        """
        async with self.session_factory() as db:
            breakdown = await self.store.payment_stats(db, start_date, end_date)

        summary = {
            "total_transactions": sum(b["count"] for b in breakdown),
            "completed": sum(
                b["count"] for b in breakdown if b["status"] == TransactionStatus.COMPLETED.value
            ),
            "failed": sum(
                b["count"] for b in breakdown if b["status"] == TransactionStatus.FAILED.value
            ),
            "completed_volume": sum(
                b["total_amount"]
                for b in breakdown
                if b["status"]
                in (TransactionStatus.COMPLETED.value, TransactionStatus.REFUNDED.value)
                and b["purpose"] != PaymentPurpose.REFUND.value
            ),
            "refunded_volume": sum(
                b["total_amount"]
                for b in breakdown
                if b["status"] == TransactionStatus.COMPLETED.value
                and b["purpose"] == PaymentPurpose.REFUND.value
            ),
        }
        resolved = summary["completed"] + summary["failed"]
        summary["success_rate"] = (
            round(summary["completed"] / resolved * 100, 2) if resolved else 0.0
        )

        return {
            "summary": summary,
            "breakdown": breakdown,
            "interactions": await self.transaction_log.get_transaction_stats(start_date, end_date),
            "errors": await self.transaction_log.get_error_analysis(start_date, end_date, limit=20),
            "period": {
                "start_date": start_date.isoformat() if start_date else None,
                "end_date": end_date.isoformat() if end_date else None,
            },
        }

    async def list_refunds(self, transaction_id: str | uuid.UUID) -> List[Dict[str, Any]]:
        """Refund transactions issued against a payment."""
        transaction = await self.get_transaction(transaction_id)
        async with self.session_factory() as db:
            refunds = await self.store.list_refunds(db, transaction.id)
        return [serialize_transaction(r) for r in refunds]
