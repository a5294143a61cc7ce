"""
Refund disbursement workflow.

A refund is a new ``refund`` transaction linked to the payment it pays
back. Its amount is reserved against the source's refundable balance
before the B2C request is sent, so concurrent refunds can never exceed the
original amount. The refund then follows its own lifecycle through the
reconciliation engine; its B2C result settles or releases the reservation.
A refund whose payout outcome is never learned keeps its reservation, so
the same money cannot be paid out twice.
"""
import uuid
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mpesa_payments.config import Settings, get_settings
from mpesa_payments.core.errors import (
    PaymentInitiationError,
    RefundValidationError,
    TransactionNotFoundError,
    ValidationError,
)
from mpesa_payments.core.reconciliation import ReconciliationEngine
from mpesa_payments.core.transaction_log import CallerContext, LogContext
from mpesa_payments.database.models import (
    PaymentPurpose,
    PaymentTransaction,
    TransactionStatus,
)
from mpesa_payments.database.repository import TransactionStore
from mpesa_payments.integrations.daraja_client import DarajaClient, GatewayError
from mpesa_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class DisbursementWorkflow:
    """Issues and tracks refund payouts."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: DarajaClient,
        engine: ReconciliationEngine,
        settings: Optional[Settings] = None,
        store: Optional[TransactionStore] = None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.gateway = gateway
        self.engine = engine
        self.store = store or TransactionStore()

    async def _reserve(
        self,
        source_id: uuid.UUID,
        amount: Optional[int],
        reason: str,
        requested_by: Optional[str],
    ) -> PaymentTransaction:
        """
        Validate the request, reserve the amount and persist a pending refund.

        Raises:
            TransactionNotFoundError: If the source does not exist
            RefundValidationError: If the source is not refundable for ``amount``
        """
        async with self.session_factory() as db:
            source = await self.store.get(db, source_id)
            if source is None:
                raise TransactionNotFoundError(f"Transaction {source_id} not found")
            if source.purpose == PaymentPurpose.REFUND.value:
                raise RefundValidationError("A refund cannot itself be refunded")
            if source.status != TransactionStatus.COMPLETED.value:
                raise RefundValidationError(
                    f"Only completed payments can be refunded (status is {source.status})"
                )

            balance = source.refundable_balance
            if amount is None:
                amount = balance
            if isinstance(amount, bool) or not isinstance(amount, int) or amount < 1:
                raise RefundValidationError("Refund amount must be a whole number of at least 1")
            if amount > balance:
                raise RefundValidationError(
                    f"Refund amount {amount} exceeds refundable balance {balance}"
                )

            if not await self.store.reserve_refund(db, source.id, amount):
                # Lost a race with another refund or a status change
                await db.rollback()
                raise RefundValidationError("Refundable balance changed; retry the refund")

            refund_id = uuid.uuid4()
            refund = PaymentTransaction(
                id=refund_id,
                amount=amount,
                currency=source.currency,
                method=source.method,
                payer_reference=source.payer_reference,
                purpose=PaymentPurpose.REFUND.value,
                description=reason,
                account_reference=f"{self.settings.mpesa_account_reference_prefix}-{refund_id.hex[:8].upper()}",
                requested_by=requested_by,
                linked_entity_type=source.linked_entity_type,
                linked_entity_id=source.linked_entity_id,
                source_transaction_id=source.id,
                status=TransactionStatus.PENDING.value,
                max_retries=self.settings.max_retries,
            )
            await self.store.add(db, refund)
            await db.commit()
            return refund

    async def refund(
        self,
        transaction_id: str | uuid.UUID,
        amount: Optional[int] = None,
        reason: str = "Refund",
        requested_by: Optional[str] = None,
        caller: Optional[CallerContext] = None,
    ) -> Dict[str, Any]:
        """
        Refund all or part of a completed payment.

        Args:
            transaction_id: Source payment id
            amount: Amount to refund; defaults to the remaining refundable balance
            reason: Reason recorded on the refund and sent with the payout
            requested_by: Identity of the privileged requester
            caller: Network metadata of the requester

        Returns:
            Dict[str, Any]: Refund transaction id, amount and status

        Raises:
            TransactionNotFoundError: If the source does not exist
            RefundValidationError: If the refund breaks a refund rule; no
                refund transaction is created
            PaymentInitiationError: If the payout could not be initiated
        """
        try:
            source_id = uuid.UUID(str(transaction_id))
        except ValueError:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")

        reason = (reason or "Refund").strip() or "Refund"
        try:
            refund = await self._reserve(source_id, amount, reason, requested_by)
        except RefundValidationError as e:
            metrics.record_refund("rejected")
            logger.warning("refund_rejected", source_transaction_id=str(source_id), reason=str(e))
            raise

        log = logger.bind(
            refund_transaction_id=str(refund.id), source_transaction_id=str(source_id)
        )
        log.info("refund_initiation_started", amount=refund.amount)

        try:
            ack = await self.gateway.initiate_disbursement(
                amount=refund.amount,
                payee_reference=refund.payer_reference,
                remarks=reason,
                occasion="Refund",
                context=LogContext(transaction_id=refund.id, caller=caller),
            )
        except ValidationError as e:
            await self.engine.fail(
                refund.id,
                str(e),
                from_statuses=[TransactionStatus.PENDING],
                source="initiation",
            )
            log.error("refund_initiation_invalid", error=str(e))
            raise PaymentInitiationError(
                f"Refund could not be initiated: {e}", transaction_id=refund.id
            )
        except GatewayError as e:
            if e.is_transient and e.request_sent:
                # Payout may be in flight; the reservation stays held even
                # after the supervisor abandons the pending refund.
                metrics.record_refund("unknown")
                log.error("refund_initiation_outcome_unknown", error=str(e))
                raise PaymentInitiationError(
                    "Disbursement gateway did not respond; the refund is pending verification",
                    transaction_id=refund.id,
                    outcome_unknown=True,
                )
            await self.engine.fail(
                refund.id,
                str(e),
                from_statuses=[TransactionStatus.PENDING],
                source="initiation",
            )
            log.error("refund_initiation_failed", error=str(e), error_type=e.error_type.value)
            raise PaymentInitiationError(
                f"Refund could not be initiated: {e}",
                transaction_id=refund.id,
                retryable=e.is_transient,
            )

        async with self.session_factory() as db:
            await self.store.transition(
                db,
                refund.id,
                [TransactionStatus.PENDING],
                TransactionStatus.PROCESSING,
                conversation_id=ack.conversation_id,
                originator_conversation_id=ack.originator_conversation_id,
                request_payload=ack.request_payload,
                response_payload=ack.raw,
            )
            await db.commit()

        metrics.record_refund("initiated")
        metrics.record_transition(TransactionStatus.PROCESSING.value, "initiation")
        log.info("refund_initiated", conversation_id=ack.conversation_id)

        status = TransactionStatus.PROCESSING.value
        if await self.engine.replay_orphans(ack.conversation_id, ack.originator_conversation_id):
            async with self.session_factory() as db:
                status = (await self.store.get(db, refund.id)).status

        return {
            "refund_transaction_id": str(refund.id),
            "source_transaction_id": str(source_id),
            "amount": refund.amount,
            "status": status,
            "conversation_id": ack.conversation_id,
        }
