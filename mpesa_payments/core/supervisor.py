"""
Retry/timeout supervisor for transactions that never received a callback.

Each cycle is a pure "find stale, act" pass:

- push payments stuck in ``processing`` past the staleness threshold are
  re-queried; a resolved query goes through the reconciliation engine, a
  gateway error counts one retry with exponential backoff, and the
  transaction fails once ``max_retries`` attempts have been spent
- ``pending`` records the gateway never acknowledged are cancelled
- refund disbursements with no result past their deadline are failed,
  keeping the refunded amount reserved against the source payment

No database session is held across a gateway call. Overlapping cycles are
safe because every state change is a conditional write.
"""
import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mpesa_payments.config import Settings, get_settings
from mpesa_payments.core.reconciliation import ReconciliationEngine, ReconciliationOutcome
from mpesa_payments.core.transaction_log import LogContext
from mpesa_payments.database.models import (
    PaymentPurpose,
    PaymentTransaction,
    TransactionStatus,
    utcnow,
)
from mpesa_payments.database.repository import TransactionStore
from mpesa_payments.integrations.daraja_client import DarajaClient, GatewayError
from mpesa_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

TIMEOUT_REASON = "timeout exceeded"
ABANDONED_REASON = "gateway never acknowledged the request"
DISBURSEMENT_TIMEOUT_REASON = "disbursement result not received; refund held for manual review"
REFUND_UNKNOWN_REASON = "disbursement outcome unknown; refund held for manual review"


class SupervisorAction:
    RESOLVED = "resolved"
    RETRY_SCHEDULED = "retry_scheduled"
    TIMED_OUT = "timed_out"
    ABANDONED = "abandoned"
    SKIPPED = "skipped"


@dataclass
class CycleReport:
    """Counts of supervisor actions taken in one cycle."""

    scanned: int = 0
    actions: Dict[str, int] = field(default_factory=dict)

    def add(self, action: str, count: int = 1) -> None:
        self.actions[action] = self.actions.get(action, 0) + count


def compute_backoff(attempt: int, base_delay: float, max_delay: float) -> float:
    """
    Delay before the next recovery attempt.

    Args:
        attempt: Number of attempts already made (0 for the first)
        base_delay: Delay for the first retry, in seconds
        max_delay: Upper bound on the delay, in seconds

    Returns:
        float: base_delay * 2^attempt, capped at max_delay
    """
    return min(base_delay * (2 ** attempt), max_delay)


class RetryTimeoutSupervisor:
    """Finds unresolved transactions and drives them to a terminal state."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: DarajaClient,
        engine: ReconciliationEngine,
        settings: Optional[Settings] = None,
        store: Optional[TransactionStore] = None,
    ):
        """
        Initialize supervisor.

        Args:
            session_factory: Factory for short-lived scan/update sessions
            gateway: Client used for status queries
            engine: Reconciliation engine applying terminal transitions
            settings: Optional settings (defaults to environment settings)
            store: Optional transaction store
        """
        self.session_factory = session_factory
        self.gateway = gateway
        self.engine = engine
        self.settings = settings or get_settings()
        self.store = store or TransactionStore()
        self._semaphore = asyncio.Semaphore(self.settings.supervisor_concurrency)

    async def find_stale(self, now: Optional[datetime] = None) -> List[PaymentTransaction]:
        """Push payments in processing past the staleness threshold and due a retry."""
        now = now or utcnow()
        async with self.session_factory() as db:
            return await self.store.find_stale_pushes(
                db,
                now,
                timedelta(seconds=self.settings.staleness_threshold_seconds),
                self.settings.supervisor_batch_size,
            )

    async def _record_attempt(
        self, transaction: PaymentTransaction, error: GatewayError, now: Optional[datetime] = None
    ) -> str:
        """Count a failed recovery attempt; fail the transaction once retries are spent."""
        now = now or utcnow()
        delay = compute_backoff(
            transaction.retry_count,
            self.settings.retry_base_delay_seconds,
            self.settings.retry_max_delay_seconds,
        )
        async with self.session_factory() as db:
            counts = await self.store.record_retry(
                db, transaction.id, now, now + timedelta(seconds=delay)
            )
            await db.commit()

        if counts is None:
            # Resolved by a callback while the query was in flight
            return SupervisorAction.SKIPPED

        retry_count, max_retries = counts
        if retry_count >= max_retries:
            logger.warning(
                "transaction_retries_exhausted",
                transaction_id=str(transaction.id),
                retry_count=retry_count,
                max_retries=max_retries,
                last_error=str(error),
            )
            failed = await self.engine.fail(
                transaction.id, TIMEOUT_REASON, source="supervisor"
            )
            return SupervisorAction.TIMED_OUT if failed else SupervisorAction.SKIPPED

        logger.info(
            "transaction_retry_scheduled",
            transaction_id=str(transaction.id),
            retry_count=retry_count,
            max_retries=max_retries,
            delay_seconds=delay,
            error_type=error.error_type.value,
        )
        return SupervisorAction.RETRY_SCHEDULED

    async def process_transaction(
        self, transaction: PaymentTransaction, now: Optional[datetime] = None
    ) -> str:
        """
        Re-query one stale push payment and act on the answer.

        Args:
            transaction: Snapshot of a stale processing transaction
            now: Time the attempt is recorded at and backoff is measured from

        Returns:
            str: The SupervisorAction taken
        """
        context = LogContext(
            transaction_id=transaction.id,
            retry_attempt=transaction.retry_count + 1,
        )
        try:
            result = await self.gateway.query_status(transaction.checkout_request_id, context)
        except GatewayError as e:
            action = await self._record_attempt(transaction, e, now)
        else:
            outcome = await self.engine.handle_callback(
                transaction.checkout_request_id,
                result.result_code,
                result.result_desc,
                result.receipt_number,
                raw_payload=result.raw,
                source="status_query",
            )
            action = (
                SupervisorAction.RESOLVED
                if outcome == ReconciliationOutcome.APPLIED
                else SupervisorAction.SKIPPED
            )

        metrics.record_supervisor_action(action)
        return action

    async def _guarded(self, transaction: PaymentTransaction, now: Optional[datetime]) -> str:
        async with self._semaphore:
            try:
                return await self.process_transaction(transaction, now)
            except Exception as e:
                logger.error(
                    "supervisor_transaction_failed",
                    transaction_id=str(transaction.id),
                    error=str(e),
                    exc_info=True,
                )
                return SupervisorAction.SKIPPED

    async def abandon_unacknowledged(self, now: Optional[datetime] = None) -> int:
        """
        Cancel pending records older than the abandonment window.

        A pending refund's payout may have been delivered, so its
        reservation stays held for manual review.
        """
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.settings.pending_abandon_seconds)
        async with self.session_factory() as db:
            rows = await self.store.find_abandoned_pending(
                db, cutoff, self.settings.supervisor_batch_size
            )

        cancelled = 0
        for transaction in rows:
            is_refund = transaction.purpose == PaymentPurpose.REFUND.value
            if await self.engine.fail(
                transaction.id,
                REFUND_UNKNOWN_REASON if is_refund else ABANDONED_REASON,
                from_statuses=[TransactionStatus.PENDING],
                to_status=TransactionStatus.CANCELLED,
                source="supervisor",
                release_reservation=not is_refund,
            ):
                cancelled += 1
                metrics.record_supervisor_action(SupervisorAction.ABANDONED)
        return cancelled

    async def expire_disbursements(self, now: Optional[datetime] = None) -> int:
        """
        Fail refund disbursements whose result never arrived.

        Results logged as orphans for the refund's conversation ids are
        applied first. A refund still without a result is failed with its
        reservation held, since the payout may have been made.
        """
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.settings.disbursement_timeout_seconds)
        async with self.session_factory() as db:
            rows = await self.store.find_overdue_disbursements(
                db, cutoff, self.settings.supervisor_batch_size
            )

        expired = 0
        for transaction in rows:
            if await self.engine.replay_orphans(
                transaction.conversation_id, transaction.originator_conversation_id
            ):
                metrics.record_supervisor_action(SupervisorAction.RESOLVED)
                continue
            if await self.engine.fail(
                transaction.id,
                DISBURSEMENT_TIMEOUT_REASON,
                source="supervisor",
                release_reservation=False,
            ):
                expired += 1
                metrics.record_supervisor_action(SupervisorAction.TIMED_OUT)
        return expired

    async def run_cycle(self, now: Optional[datetime] = None) -> CycleReport:
        """
        Run one full supervisor pass.

        Returns:
            CycleReport: What was scanned and done
        """
        start = time.monotonic()
        report = CycleReport()

        stale = await self.find_stale(now)
        report.scanned = len(stale)
        for action in await asyncio.gather(*(self._guarded(t, now) for t in stale)):
            report.add(action)

        abandoned = await self.abandon_unacknowledged(now)
        if abandoned:
            report.add(SupervisorAction.ABANDONED, abandoned)
        expired = await self.expire_disbursements(now)
        if expired:
            report.add(SupervisorAction.TIMED_OUT, expired)

        duration = time.monotonic() - start
        metrics.record_supervisor_cycle(duration)
        logger.info(
            "supervisor_cycle_completed",
            scanned=report.scanned,
            actions=report.actions,
            duration_seconds=round(duration, 3),
        )
        return report
