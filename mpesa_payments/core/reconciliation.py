"""
Reconciliation engine: the single writer of terminal transaction states.

Correlates gateway callbacks and status-query results with stored
transactions and applies the transition out of ``processing`` as one
conditional write, committed together with its audit entry. Whoever
performs that write first wins; every later notification for the same
transaction is treated as a duplicate and only logged.
"""
import time
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mpesa_payments.core.errors import (
    DuplicateCallbackError,
    MalformedCallbackError,
    OrphanCallbackError,
)
from mpesa_payments.core.transaction_log import ORPHAN_ERROR_CODE, CallerContext, TransactionLog
from mpesa_payments.database.models import (
    InteractionType,
    PaymentPurpose,
    PaymentTransaction,
    TransactionStatus,
    utcnow,
)
from mpesa_payments.database.repository import TransactionStore
from mpesa_payments.integrations.callbacks import (
    B2C,
    CallbackNotification,
    correlation_hint,
    parse_callback,
)
from mpesa_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

TerminalHandler = Callable[[PaymentTransaction], Awaitable[None]]

SUCCESS_RESULT_CODE = 0


class ReconciliationOutcome(str, Enum):
    """What a notification did to the transaction store."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    ORPHAN = "orphan"
    MALFORMED = "malformed"


class ReconciliationEngine:
    """
    Applies gateway outcomes to stored transactions.

    Handlers registered with ``register_handler`` run once per transaction,
    after the terminal transition has been committed. Duplicate, late and
    orphan notifications never reach them.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        transaction_log: TransactionLog,
        store: Optional[TransactionStore] = None,
    ):
        """
        Initialize reconciliation engine.

        Args:
            session_factory: Factory for per-notification units of work
            transaction_log: Audit log written in the same unit of work
            store: Optional transaction store
        """
        self.session_factory = session_factory
        self.transaction_log = transaction_log
        self.store = store or TransactionStore()
        self.terminal_handlers: Dict[TransactionStatus, List[TerminalHandler]] = {}
        logger.info("reconciliation_engine_initialized")

    def register_handler(self, status: TransactionStatus, handler: TerminalHandler) -> None:
        """
        Register a side effect to run when a transaction reaches ``status``.

        Args:
            status: Terminal status that triggers the handler
            handler: Async callable receiving the committed transaction
        """
        self.terminal_handlers.setdefault(status, []).append(handler)
        logger.info("terminal_handler_registered", status=status.value)

    async def _run_handlers(self, transaction: PaymentTransaction) -> None:
        status = TransactionStatus(transaction.status)
        for handler in self.terminal_handlers.get(status, []):
            try:
                await handler(transaction)
            except Exception as e:
                # The transition is already committed; a failing side effect
                # must not turn into a callback error.
                logger.error(
                    "terminal_handler_failed",
                    transaction_id=str(transaction.id),
                    status=status.value,
                    handler=getattr(handler, "__name__", repr(handler)),
                    error=str(e),
                    exc_info=True,
                )

    async def _settle_linked_refund(
        self,
        db: AsyncSession,
        transaction: PaymentTransaction,
        to_status: TransactionStatus,
        release_reservation: bool = True,
    ) -> None:
        """
        Apply a refund's outcome to its source transaction's balances.

        A completed refund moves its amount from pending to refunded; any
        other outcome returns it to the refundable balance, unless
        ``release_reservation`` is false because the payout may still have
        been made.
        """
        if transaction.purpose != PaymentPurpose.REFUND.value or not transaction.source_transaction_id:
            return
        if to_status == TransactionStatus.COMPLETED:
            fully_refunded = await self.store.settle_refund(
                db, transaction.source_transaction_id, transaction.amount
            )
            metrics.record_refund("completed")
            if fully_refunded:
                metrics.record_transition(TransactionStatus.REFUNDED.value, "refund")
                logger.info(
                    "source_transaction_fully_refunded",
                    source_transaction_id=str(transaction.source_transaction_id),
                    refund_transaction_id=str(transaction.id),
                )
        elif release_reservation:
            await self.store.release_refund(
                db, transaction.source_transaction_id, transaction.amount
            )
            metrics.record_refund("failed")
        else:
            metrics.record_refund("unknown")
            logger.warning(
                "refund_outcome_unknown",
                source_transaction_id=str(transaction.source_transaction_id),
                refund_transaction_id=str(transaction.id),
                held_amount=transaction.amount,
            )

    async def handle_callback(
        self,
        correlation_id: str,
        result_code: int,
        result_desc: Optional[str],
        receipt_number: Optional[str] = None,
        *,
        raw_payload: Optional[Dict[str, Any]] = None,
        source: str = "callback",
        interaction_type: InteractionType = InteractionType.CALLBACK_RECEIVED,
        caller: Optional[CallerContext] = None,
    ) -> ReconciliationOutcome:
        """
        Apply a gateway outcome to the transaction it correlates with.

        Both real callbacks and supervisor status queries come through here.

        Args:
            correlation_id: Gateway-issued correlation id
            result_code: Gateway result code (0 is success)
            result_desc: Human-readable result description
            receipt_number: Gateway receipt, present on success
            raw_payload: Notification body kept for audit
            source: What produced the outcome (callback, status_query)
            interaction_type: Audit entry type for this notification
            caller: Network metadata of the sender

        Returns:
            ReconciliationOutcome: Applied, duplicate or orphan
        """
        start = time.monotonic()
        payload = raw_payload or {
            "correlation_id": correlation_id,
            "result_code": result_code,
            "result_desc": result_desc,
            "receipt_number": receipt_number,
        }
        success = result_code == SUCCESS_RESULT_CODE
        to_status = TransactionStatus.COMPLETED if success else TransactionStatus.FAILED
        kind = B2C if interaction_type == InteractionType.DISBURSEMENT_RESULT else "stk"

        def entry(transaction_id: Optional[uuid.UUID], error: Optional[str] = None):
            return self.transaction_log.build_entry(
                interaction_type,
                transaction_id=transaction_id,
                correlation_id=correlation_id,
                response_payload=payload,
                status_code=200,
                success=error is None and success,
                error_code=error or (None if success else str(result_code)),
                error_message=result_desc if not success or error else None,
                caller=caller,
            )

        transaction: Optional[PaymentTransaction] = None
        try:
            async with self.session_factory() as db:
                transaction = await self.store.get_by_correlation_id(db, correlation_id)
                if transaction is None:
                    raise OrphanCallbackError(correlation_id)

                values: Dict[str, Any] = {
                    "result_code": result_code,
                    "result_desc": result_desc,
                    "next_retry_at": None,
                }
                if source == "callback":
                    values["callback_payload"] = payload
                    values["callback_received"] = True
                    values["callback_received_at"] = utcnow()
                else:
                    values["response_payload"] = payload
                if success:
                    values["receipt_number"] = receipt_number
                else:
                    values["failure_reason"] = result_desc

                applied = await self.store.transition(
                    db,
                    transaction.id,
                    [TransactionStatus.PROCESSING],
                    to_status,
                    **values,
                )
                if not applied:
                    await db.rollback()
                    current = await self.store.get(db, transaction.id)
                    raise DuplicateCallbackError(
                        transaction.id, current.status if current else transaction.status
                    )

                await self._settle_linked_refund(db, transaction, to_status)
                self.transaction_log.append(db, entry(transaction.id))
                await db.commit()
                transaction = await self.store.get(db, transaction.id)

        except OrphanCallbackError:
            logger.warning(
                "orphan_callback_received",
                correlation_id=correlation_id,
                result_code=result_code,
                source=source,
            )
            await self.transaction_log.record(entry(None, error=ORPHAN_ERROR_CODE))
            metrics.record_callback(kind, ReconciliationOutcome.ORPHAN.value, time.monotonic() - start)
            return ReconciliationOutcome.ORPHAN

        except DuplicateCallbackError as e:
            logger.info(
                "duplicate_callback_ignored",
                transaction_id=str(e.transaction_id),
                correlation_id=correlation_id,
                current_status=e.status,
                source=source,
            )
            await self.transaction_log.record(entry(e.transaction_id, error="duplicate"))
            metrics.record_callback(kind, ReconciliationOutcome.DUPLICATE.value, time.monotonic() - start)
            return ReconciliationOutcome.DUPLICATE

        metrics.record_transition(to_status.value, source)
        metrics.record_callback(kind, ReconciliationOutcome.APPLIED.value, time.monotonic() - start)
        logger.info(
            "transaction_reconciled",
            transaction_id=str(transaction.id),
            correlation_id=correlation_id,
            status=to_status.value,
            result_code=result_code,
            receipt_number=receipt_number,
            source=source,
        )

        await self._run_handlers(transaction)
        return ReconciliationOutcome.APPLIED

    async def handle_notification(
        self, notification: CallbackNotification, caller: Optional[CallerContext] = None
    ) -> ReconciliationOutcome:
        """Route a parsed gateway notification through ``handle_callback``."""
        interaction_type = (
            InteractionType.DISBURSEMENT_RESULT
            if notification.kind == B2C
            else InteractionType.CALLBACK_RECEIVED
        )
        return await self.handle_callback(
            notification.correlation_id,
            notification.result_code,
            notification.result_desc,
            notification.receipt_number,
            raw_payload=notification.raw,
            source="callback",
            interaction_type=interaction_type,
            caller=caller,
        )

    async def handle_gateway_callback(
        self, payload: Any, caller: Optional[CallerContext] = None
    ) -> ReconciliationOutcome:
        """
        Parse and apply a raw webhook body.

        Bodies that cannot be parsed are recorded against no transaction.

        Args:
            payload: Decoded JSON body
            caller: Network metadata of the sender

        Returns:
            ReconciliationOutcome: Result of processing
        """
        try:
            notification = parse_callback(payload)
        except MalformedCallbackError as e:
            logger.warning("malformed_callback_received", error=str(e))
            await self.transaction_log.record(
                self.transaction_log.build_entry(
                    InteractionType.CALLBACK_RECEIVED,
                    correlation_id=correlation_hint(payload),
                    response_payload=payload if isinstance(payload, dict) else {"body": payload},
                    status_code=200,
                    success=False,
                    error_code="malformed",
                    error_message=str(e),
                    caller=caller,
                )
            )
            metrics.record_callback("unknown", ReconciliationOutcome.MALFORMED.value, 0.0)
            return ReconciliationOutcome.MALFORMED

        return await self.handle_notification(notification, caller)

    async def replay_orphans(self, *correlation_ids: Optional[str]) -> bool:
        """
        Re-apply notifications that arrived before their correlation ids were stored.

        A gateway result can land between the gateway acknowledging a request
        and the acknowledgement being committed; it is then logged as an
        orphan. Call this once the correlation ids are committed.

        Args:
            *correlation_ids: Ids issued for the transaction; None is ignored

        Returns:
            bool: True if a replayed notification resolved the transaction
        """
        ids = [c for c in correlation_ids if c]
        if not ids:
            return False
        try:
            entries = await self.transaction_log.orphan_callbacks(ids)
        except SQLAlchemyError as e:
            # The supervisor still resolves the transaction later
            logger.error("orphan_replay_lookup_failed", correlation_ids=ids, error=str(e))
            return False

        for entry in entries:
            try:
                notification = parse_callback(entry.response_payload)
            except MalformedCallbackError:
                continue
            logger.info(
                "orphan_callback_replayed",
                correlation_id=entry.correlation_id,
                log_entry_id=entry.id,
            )
            outcome = await self.handle_notification(
                notification,
                CallerContext(client_ip=entry.client_ip, user_agent=entry.user_agent),
            )
            if outcome == ReconciliationOutcome.APPLIED:
                return True
        return False

    async def fail(
        self,
        transaction_id: uuid.UUID,
        reason: str,
        from_statuses: Iterable[TransactionStatus] = (TransactionStatus.PROCESSING,),
        to_status: TransactionStatus = TransactionStatus.FAILED,
        source: str = "supervisor",
        release_reservation: bool = True,
        **values: Any,
    ) -> bool:
        """
        Terminate a transaction without a gateway result.

        Used for exhausted retries, abandoned pending records and requests
        the gateway rejected outright.

        Args:
            transaction_id: Internal transaction id
            reason: Failure reason stored on the record
            from_statuses: Statuses the transaction may currently be in
            to_status: Terminal status to apply (failed or cancelled)
            source: What triggered the termination
            release_reservation: For refunds, whether the reserved amount
                returns to the source balance
            **values: Extra columns written with the transition

        Returns:
            bool: True if this call performed the transition
        """
        async with self.session_factory() as db:
            transaction = await self.store.get(db, transaction_id)
            if transaction is None:
                return False

            applied = await self.store.transition(
                db,
                transaction_id,
                from_statuses,
                to_status,
                failure_reason=reason,
                result_desc=values.pop("result_desc", reason),
                next_retry_at=None,
                **values,
            )
            if not applied:
                await db.rollback()
                logger.info(
                    "transaction_termination_skipped",
                    transaction_id=str(transaction_id),
                    to_status=to_status.value,
                    source=source,
                )
                return False

            await self._settle_linked_refund(db, transaction, to_status, release_reservation)
            await db.commit()
            transaction = await self.store.get(db, transaction_id)

        metrics.record_transition(to_status.value, source)
        logger.warning(
            "transaction_terminated",
            transaction_id=str(transaction_id),
            status=to_status.value,
            reason=reason,
            source=source,
        )
        await self._run_handlers(transaction)
        return True
