"""
Transaction Store: queries and conditional writes over payment transactions.

Every state change is expressed as a conditional UPDATE ("only if the row is
still in status X") so concurrent writers never need a read-then-write
critical section. Callers own the session and the commit.
"""
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mpesa_payments.database.models import (
    PaymentPurpose,
    PaymentTransaction,
    TransactionStatus,
    utcnow,
)

logger = structlog.get_logger(__name__)


def _status_values(statuses: Iterable[TransactionStatus]) -> List[str]:
    return [TransactionStatus(s).value for s in statuses]


class TransactionStore:
    """Persistence gateway for PaymentTransaction rows."""

    async def add(self, db: AsyncSession, transaction: PaymentTransaction) -> PaymentTransaction:
        """Stage a new transaction and flush it so its id is usable."""
        db.add(transaction)
        await db.flush()
        return transaction

    async def get(
        self, db: AsyncSession, transaction_id: str | uuid.UUID
    ) -> Optional[PaymentTransaction]:
        """Fetch a transaction by internal id, bypassing the identity map cache."""
        stmt = (
            select(PaymentTransaction)
            .where(PaymentTransaction.id == uuid.UUID(str(transaction_id)))
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_correlation_id(
        self, db: AsyncSession, correlation_id: str
    ) -> Optional[PaymentTransaction]:
        """
        Fetch a transaction by any provider-issued correlation id.

        Push payments are correlated by CheckoutRequestID (MerchantRequestID
        as a fallback); disbursements by ConversationID or
        OriginatorConversationID.
        """
        stmt = (
            select(PaymentTransaction)
            .where(
                or_(
                    PaymentTransaction.checkout_request_id == correlation_id,
                    PaymentTransaction.merchant_request_id == correlation_id,
                    PaymentTransaction.conversation_id == correlation_id,
                    PaymentTransaction.originator_conversation_id == correlation_id,
                )
            )
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        return result.scalars().first()

    async def transition(
        self,
        db: AsyncSession,
        transaction_id: uuid.UUID,
        from_statuses: Iterable[TransactionStatus],
        to_status: TransactionStatus,
        **values: Any,
    ) -> bool:
        """
        Move a transaction to a new status only if it is in one of ``from_statuses``.

        Args:
            db: Database session
            transaction_id: Internal transaction id
            from_statuses: Statuses the row must currently be in
            to_status: Target status
            **values: Extra columns written in the same statement

        Returns:
            bool: True if this call performed the transition
        """
        now = utcnow()
        values.setdefault("updated_at", now)
        if to_status in (TransactionStatus.COMPLETED, TransactionStatus.FAILED,
                         TransactionStatus.CANCELLED):
            values.setdefault("completed_at", now)

        stmt = (
            update(PaymentTransaction)
            .where(
                PaymentTransaction.id == transaction_id,
                PaymentTransaction.status.in_(_status_values(from_statuses)),
            )
            .values(status=to_status.value, **values)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        applied = result.rowcount == 1

        logger.debug(
            "transaction_transition_attempted",
            transaction_id=str(transaction_id),
            to_status=to_status.value,
            applied=applied,
        )
        return applied

    async def record_retry(
        self,
        db: AsyncSession,
        transaction_id: uuid.UUID,
        attempted_at: datetime,
        next_retry_at: datetime,
    ) -> Optional[Tuple[int, int]]:
        """
        Count one recovery attempt against a processing transaction.

        Returns:
            Optional[Tuple[int, int]]: (retry_count, max_retries) after the
            increment, or None if the transaction already left processing
        """
        stmt = (
            update(PaymentTransaction)
            .where(
                PaymentTransaction.id == transaction_id,
                PaymentTransaction.status == TransactionStatus.PROCESSING.value,
            )
            .values(
                retry_count=PaymentTransaction.retry_count + 1,
                last_retry_at=attempted_at,
                next_retry_at=next_retry_at,
                updated_at=attempted_at,
            )
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        if result.rowcount != 1:
            return None

        counts = await db.execute(
            select(PaymentTransaction.retry_count, PaymentTransaction.max_retries).where(
                PaymentTransaction.id == transaction_id
            )
        )
        retry_count, max_retries = counts.one()
        return retry_count, max_retries

    async def reserve_refund(self, db: AsyncSession, source_id: uuid.UUID, amount: int) -> bool:
        """
        Hold ``amount`` of a completed transaction's balance for an in-flight refund.

        The balance check and the reservation are one statement, so two
        concurrent refund requests can never both pass the cap.
        """
        stmt = (
            update(PaymentTransaction)
            .where(
                PaymentTransaction.id == source_id,
                PaymentTransaction.status == TransactionStatus.COMPLETED.value,
                PaymentTransaction.amount
                - PaymentTransaction.refunded_amount
                - PaymentTransaction.refund_pending_amount
                >= amount,
            )
            .values(
                refund_pending_amount=PaymentTransaction.refund_pending_amount + amount,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount == 1

    async def settle_refund(self, db: AsyncSession, source_id: uuid.UUID, amount: int) -> bool:
        """
        Convert a reservation into a refunded amount.

        Moves the source to ``refunded`` once the whole amount has been paid back.

        Returns:
            bool: True if the source became fully refunded
        """
        await db.execute(
            update(PaymentTransaction)
            .where(PaymentTransaction.id == source_id)
            .values(
                refund_pending_amount=PaymentTransaction.refund_pending_amount - amount,
                refunded_amount=PaymentTransaction.refunded_amount + amount,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        fully_refunded = await db.execute(
            update(PaymentTransaction)
            .where(
                PaymentTransaction.id == source_id,
                PaymentTransaction.status == TransactionStatus.COMPLETED.value,
                PaymentTransaction.refunded_amount >= PaymentTransaction.amount,
            )
            .values(status=TransactionStatus.REFUNDED.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return fully_refunded.rowcount == 1

    async def release_refund(self, db: AsyncSession, source_id: uuid.UUID, amount: int) -> None:
        """Return a failed refund's reservation to the refundable balance."""
        await db.execute(
            update(PaymentTransaction)
            .where(PaymentTransaction.id == source_id)
            .values(
                refund_pending_amount=PaymentTransaction.refund_pending_amount - amount,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

    async def find_stale_pushes(
        self, db: AsyncSession, now: datetime, staleness: timedelta, limit: int
    ) -> List[PaymentTransaction]:
        """
        Push payments stuck in processing past the staleness threshold and due a retry.
        """
        stmt = (
            select(PaymentTransaction)
            .where(
                PaymentTransaction.status == TransactionStatus.PROCESSING.value,
                PaymentTransaction.purpose != PaymentPurpose.REFUND.value,
                PaymentTransaction.checkout_request_id.is_not(None),
                PaymentTransaction.created_at <= now - staleness,
                or_(
                    PaymentTransaction.next_retry_at.is_(None),
                    PaymentTransaction.next_retry_at <= now,
                ),
            )
            .order_by(PaymentTransaction.created_at)
            .limit(limit)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def find_abandoned_pending(
        self, db: AsyncSession, cutoff: datetime, limit: int
    ) -> List[PaymentTransaction]:
        """Pending rows the gateway never acknowledged, created before ``cutoff``."""
        stmt = (
            select(PaymentTransaction)
            .where(
                PaymentTransaction.status == TransactionStatus.PENDING.value,
                PaymentTransaction.created_at <= cutoff,
            )
            .order_by(PaymentTransaction.created_at)
            .limit(limit)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def find_overdue_disbursements(
        self, db: AsyncSession, cutoff: datetime, limit: int
    ) -> List[PaymentTransaction]:
        """Refund disbursements still waiting for a result, created before ``cutoff``."""
        stmt = (
            select(PaymentTransaction)
            .where(
                PaymentTransaction.status == TransactionStatus.PROCESSING.value,
                PaymentTransaction.purpose == PaymentPurpose.REFUND.value,
                PaymentTransaction.created_at <= cutoff,
            )
            .order_by(PaymentTransaction.created_at)
            .limit(limit)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def list_refunds(
        self, db: AsyncSession, source_id: uuid.UUID
    ) -> List[PaymentTransaction]:
        """Refund transactions issued against a source transaction."""
        stmt = (
            select(PaymentTransaction)
            .where(PaymentTransaction.source_transaction_id == source_id)
            .order_by(PaymentTransaction.created_at)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def list_transactions(
        self,
        db: AsyncSession,
        page: int = 1,
        limit: int = 10,
        status: Optional[str] = None,
        method: Optional[str] = None,
        purpose: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        search: Optional[str] = None,
        requested_by: Optional[str] = None,
    ) -> Tuple[List[PaymentTransaction], int]:
        """
        Paginated, filtered listing, newest first.

        Returns:
            Tuple[List[PaymentTransaction], int]: Page of rows and total match count
        """
        conditions = []
        if status:
            conditions.append(PaymentTransaction.status == status)
        if method:
            conditions.append(PaymentTransaction.method == method)
        if purpose:
            conditions.append(PaymentTransaction.purpose == purpose)
        if start_date:
            conditions.append(PaymentTransaction.created_at >= start_date)
        if end_date:
            conditions.append(PaymentTransaction.created_at <= end_date)
        if requested_by:
            conditions.append(PaymentTransaction.requested_by == requested_by)
        if search:
            pattern = f"%{search.lower()}%"
            conditions.append(
                or_(
                    func.lower(PaymentTransaction.description).like(pattern),
                    func.lower(PaymentTransaction.receipt_number).like(pattern),
                    func.lower(PaymentTransaction.checkout_request_id).like(pattern),
                )
            )

        where_clause = and_(*conditions) if conditions else None

        count_stmt = select(func.count(PaymentTransaction.id))
        list_stmt = select(PaymentTransaction)
        if where_clause is not None:
            count_stmt = count_stmt.where(where_clause)
            list_stmt = list_stmt.where(where_clause)

        total = (await db.execute(count_stmt)).scalar_one()
        list_stmt = (
            list_stmt.order_by(PaymentTransaction.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        rows = (await db.execute(list_stmt)).scalars().all()
        return list(rows), int(total)

    async def payment_stats(
        self,
        db: AsyncSession,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Count, total and average amount grouped by status and purpose."""
        stmt = select(
            PaymentTransaction.status,
            PaymentTransaction.purpose,
            func.count(PaymentTransaction.id).label("count"),
            func.sum(PaymentTransaction.amount).label("total_amount"),
            func.avg(PaymentTransaction.amount).label("avg_amount"),
        ).group_by(PaymentTransaction.status, PaymentTransaction.purpose)
        if start_date:
            stmt = stmt.where(PaymentTransaction.created_at >= start_date)
        if end_date:
            stmt = stmt.where(PaymentTransaction.created_at <= end_date)

        result = await db.execute(stmt)
        return [
            {
                "status": row.status,
                "purpose": row.purpose,
                "count": int(row.count),
                "total_amount": int(row.total_amount or 0),
                "avg_amount": round(float(row.avg_amount or 0), 2),
            }
            for row in result
        ]
