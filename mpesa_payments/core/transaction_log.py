"""
Append-only audit log of every exchange with the payment gateway.

Entries are written either inside a caller's unit of work (so a status
transition and its audit row commit together) or in a dedicated session (for
outbound gateway calls, which must be recorded even when the caller's own
work is rolled back or never persisted).
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import case, delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mpesa_payments.database.models import InteractionType, TransactionLogEntry, utcnow

logger = structlog.get_logger(__name__)

ORPHAN_ERROR_CODE = "orphan"


@dataclass
class CallerContext:
    """Network metadata about whoever triggered a gateway interaction."""

    client_ip: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class LogContext:
    """Correlation details attached to a gateway call's audit entry."""

    transaction_id: Optional[uuid.UUID] = None
    retry_attempt: int = 0
    caller: Optional[CallerContext] = None

    @property
    def is_retry(self) -> bool:
        return self.retry_attempt > 0


class TransactionLog:
    """Writer and reader for TransactionLogEntry rows."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        environment: str = "sandbox",
    ):
        """
        Initialize transaction log.

        Args:
            session_factory: Factory used for standalone entries and queries
            environment: Gateway environment stamped on every entry
        """
        self.session_factory = session_factory
        self.environment = environment

    def build_entry(
        self,
        interaction_type: InteractionType,
        *,
        transaction_id: Optional[uuid.UUID] = None,
        correlation_id: Optional[str] = None,
        request_payload: Optional[Dict[str, Any]] = None,
        response_payload: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
        latency_ms: Optional[float] = None,
        success: bool = False,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        caller: Optional[CallerContext] = None,
        retry_attempt: int = 0,
    ) -> TransactionLogEntry:
        """Create an unsaved log entry."""
        return TransactionLogEntry(
            transaction_id=transaction_id,
            interaction_type=interaction_type.value,
            correlation_id=correlation_id,
            request_payload=request_payload,
            response_payload=response_payload,
            status_code=status_code,
            latency_ms=latency_ms,
            success=success,
            error_code=error_code,
            error_message=error_message,
            client_ip=caller.client_ip if caller else None,
            user_agent=caller.user_agent if caller else None,
            environment=self.environment,
            is_retry=retry_attempt > 0,
            retry_attempt=retry_attempt,
            created_at=utcnow(),
        )

    def append(self, db: AsyncSession, entry: TransactionLogEntry) -> TransactionLogEntry:
        """Stage an entry in the caller's unit of work; it commits with the caller."""
        db.add(entry)
        return entry

    async def record(self, entry: TransactionLogEntry) -> Optional[TransactionLogEntry]:
        """
        Persist an entry in its own session.

        A failing audit write is reported but does not abort the gateway
        interaction it describes.

        Returns:
            Optional[TransactionLogEntry]: The stored entry, or None if the write failed
        """
        try:
            async with self.session_factory() as db:
                db.add(entry)
                await db.commit()
            return entry
        except SQLAlchemyError as e:
            logger.error(
                "transaction_log_write_failed",
                interaction_type=entry.interaction_type,
                transaction_id=str(entry.transaction_id) if entry.transaction_id else None,
                error=str(e),
            )
            return None

    async def entries_for(self, transaction_id: uuid.UUID) -> List[TransactionLogEntry]:
        """All entries recorded against a transaction, oldest first."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(TransactionLogEntry)
                .where(TransactionLogEntry.transaction_id == transaction_id)
                .order_by(TransactionLogEntry.id)
            )
            return list(result.scalars().all())

    async def orphan_callbacks(self, correlation_ids: List[str]) -> List[TransactionLogEntry]:
        """Inbound notifications recorded as orphans for any of ``correlation_ids``, oldest first."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(TransactionLogEntry)
                .where(
                    TransactionLogEntry.correlation_id.in_(correlation_ids),
                    TransactionLogEntry.transaction_id.is_(None),
                    TransactionLogEntry.error_code == ORPHAN_ERROR_CODE,
                    TransactionLogEntry.interaction_type.in_(
                        [
                            InteractionType.CALLBACK_RECEIVED.value,
                            InteractionType.DISBURSEMENT_RESULT.value,
                        ]
                    ),
                )
                .order_by(TransactionLogEntry.id)
            )
            return list(result.scalars().all())

    async def get_transaction_stats(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """
        Per-interaction-type totals, success rate and latency figures.

        Args:
            start_date: Optional lower bound on entry creation time
            end_date: Optional upper bound on entry creation time

        Returns:
            List[Dict[str, Any]]: One summary per interaction type, busiest first
        """
        successful = func.sum(case((TransactionLogEntry.success.is_(True), 1), else_=0))
        stmt = select(
            TransactionLogEntry.interaction_type,
            func.count(TransactionLogEntry.id).label("total"),
            successful.label("successful"),
            func.avg(TransactionLogEntry.latency_ms).label("avg_latency"),
            func.max(TransactionLogEntry.latency_ms).label("max_latency"),
            func.min(TransactionLogEntry.latency_ms).label("min_latency"),
        ).group_by(TransactionLogEntry.interaction_type)
        if start_date:
            stmt = stmt.where(TransactionLogEntry.created_at >= start_date)
        if end_date:
            stmt = stmt.where(TransactionLogEntry.created_at <= end_date)

        async with self.session_factory() as db:
            rows = (await db.execute(stmt)).all()

        stats = []
        for row in rows:
            total = int(row.total)
            ok = int(row.successful or 0)
            stats.append(
                {
                    "interaction_type": row.interaction_type,
                    "total": total,
                    "successful": ok,
                    "failed": total - ok,
                    "success_rate": round(ok / total * 100, 2) if total else 0.0,
                    "avg_latency_ms": round(float(row.avg_latency), 2)
                    if row.avg_latency is not None
                    else None,
                    "max_latency_ms": row.max_latency,
                    "min_latency_ms": row.min_latency,
                }
            )
        return sorted(stats, key=lambda s: s["total"], reverse=True)

    async def get_error_analysis(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        """Most frequent failures grouped by interaction type, error code and message."""
        stmt = select(
            TransactionLogEntry.interaction_type,
            TransactionLogEntry.error_code,
            TransactionLogEntry.error_message,
            func.count(TransactionLogEntry.id).label("count"),
            func.max(TransactionLogEntry.created_at).label("last_occurrence"),
        ).where(TransactionLogEntry.success.is_(False))
        if start_date:
            stmt = stmt.where(TransactionLogEntry.created_at >= start_date)
        if end_date:
            stmt = stmt.where(TransactionLogEntry.created_at <= end_date)
        stmt = (
            stmt.group_by(
                TransactionLogEntry.interaction_type,
                TransactionLogEntry.error_code,
                TransactionLogEntry.error_message,
            )
            .order_by(func.count(TransactionLogEntry.id).desc())
            .limit(limit)
        )

        async with self.session_factory() as db:
            rows = (await db.execute(stmt)).all()

        return [
            {
                "interaction_type": row.interaction_type,
                "error_code": row.error_code,
                "error_message": row.error_message,
                "count": int(row.count),
                "last_occurrence": row.last_occurrence.isoformat()
                if row.last_occurrence
                else None,
            }
            for row in rows
        ]

    async def purge_expired(self, retention_days: int) -> int:
        """
        Delete entries older than the retention window.

        This is the only path that removes audit rows.

        Returns:
            int: Number of entries removed
        """
        cutoff = utcnow() - timedelta(days=retention_days)
        async with self.session_factory() as db:
            result = await db.execute(
                delete(TransactionLogEntry).where(TransactionLogEntry.created_at < cutoff)
            )
            await db.commit()

        removed = result.rowcount or 0
        logger.info(
            "transaction_log_purged",
            retention_days=retention_days,
            cutoff=cutoff.isoformat(),
            removed=removed,
        )
        return removed
