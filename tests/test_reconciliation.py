"""
Tests for callback reconciliation, idempotency and the callback/query race.
"""
import asyncio
import uuid
from typing import Any, Dict, List

import pytest
from sqlalchemy import func, select

from mpesa_payments.core.payment_service import PaymentIntent
from mpesa_payments.core.reconciliation import ReconciliationOutcome
from mpesa_payments.database.models import (
    InteractionType,
    PaymentTransaction,
    TransactionLogEntry,
    TransactionStatus,
)


async def start_payment(services: Any, fake_daraja: Any, amount: int = 1000) -> Dict[str, Any]:
    fake_daraja.accept_push()
    return await services.payments.initiate_payment(
        PaymentIntent(
            amount=amount,
            payer_reference="0712345678",
            purpose="consultation_fee",
            description="Consultation fee",
        )
    )


async def log_entries(services: Any, transaction_id: Any = None) -> List[TransactionLogEntry]:
    async with services.session_factory() as db:
        stmt = select(TransactionLogEntry).order_by(TransactionLogEntry.id)
        if transaction_id is not None:
            stmt = stmt.where(TransactionLogEntry.transaction_id == uuid.UUID(str(transaction_id)))
        return list((await db.execute(stmt)).scalars().all())


class TestReconciliationEngine:
    """Test suite for ReconciliationEngine."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_success_callback_completes_transaction(
        self, services: Any, fake_daraja: Any, make_stk_callback: Any
    ) -> None:
        """Test the push/callback round trip ends completed with a receipt."""
        payment = await start_payment(services, fake_daraja)

        outcome = await services.engine.handle_gateway_callback(
            make_stk_callback(payment["checkout_request_id"], receipt="QKJ7ABC123")
        )

        assert outcome == ReconciliationOutcome.APPLIED
        status = await services.payments.get_status(payment["transaction_id"])
        assert status["status"] == TransactionStatus.COMPLETED.value
        assert status["receipt_number"] == "QKJ7ABC123"
        assert status["refundable_balance"] == 1000

        transaction = await services.payments.get_transaction(payment["transaction_id"])
        assert transaction.callback_received is True
        assert transaction.completed_at is not None

        entries = await log_entries(services, payment["transaction_id"])
        assert [e.interaction_type for e in entries] == [
            InteractionType.PUSH_REQUEST.value,
            InteractionType.CALLBACK_RECEIVED.value,
        ]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancelled_by_payer_fails_transaction(
        self, services: Any, fake_daraja: Any, make_stk_callback: Any
    ) -> None:
        """Test that result code 1032 ends in failed with the gateway's description."""
        payment = await start_payment(services, fake_daraja)

        await services.engine.handle_gateway_callback(
            make_stk_callback(payment["checkout_request_id"], result_code=1032)
        )

        status = await services.payments.get_status(payment["transaction_id"])
        assert status["status"] == TransactionStatus.FAILED.value
        assert status["result_code"] == 1032
        assert status["result_desc"] == "Request cancelled by user"
        assert status["receipt_number"] is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_callback_is_ignored(
        self, services: Any, fake_daraja: Any, make_stk_callback: Any
    ) -> None:
        """Test that a late duplicate neither changes status nor re-runs side effects."""
        payment = await start_payment(services, fake_daraja)
        notified: List[str] = []

        async def on_completed(transaction: PaymentTransaction) -> None:
            notified.append(str(transaction.id))

        services.engine.register_handler(TransactionStatus.COMPLETED, on_completed)

        first = await services.engine.handle_gateway_callback(
            make_stk_callback(payment["checkout_request_id"], receipt="RECEIPT1")
        )
        second = await services.engine.handle_gateway_callback(
            make_stk_callback(payment["checkout_request_id"], result_code=1032)
        )

        assert first == ReconciliationOutcome.APPLIED
        assert second == ReconciliationOutcome.DUPLICATE
        assert notified == [payment["transaction_id"]]

        status = await services.payments.get_status(payment["transaction_id"])
        assert status["status"] == TransactionStatus.COMPLETED.value
        assert status["receipt_number"] == "RECEIPT1"

        callbacks = [
            e
            for e in await log_entries(services, payment["transaction_id"])
            if e.interaction_type == InteractionType.CALLBACK_RECEIVED.value
        ]
        assert len(callbacks) == 2
        assert callbacks[1].error_code == "duplicate"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_orphan_callback_mutates_nothing(
        self, services: Any, fake_daraja: Any, make_stk_callback: Any
    ) -> None:
        """Test an unknown correlation id: no mutation, one log entry with no transaction."""
        payment = await start_payment(services, fake_daraja)

        outcome = await services.engine.handle_gateway_callback(make_stk_callback("ws_CO_unknown"))

        assert outcome == ReconciliationOutcome.ORPHAN
        status = await services.payments.get_status(payment["transaction_id"])
        assert status["status"] == TransactionStatus.PROCESSING.value

        async with services.session_factory() as db:
            orphans = (
                await db.execute(
                    select(TransactionLogEntry).where(TransactionLogEntry.transaction_id.is_(None))
                )
            ).scalars().all()
            transactions = (await db.execute(select(func.count(PaymentTransaction.id)))).scalar_one()

        assert len(orphans) == 1
        assert orphans[0].correlation_id == "ws_CO_unknown"
        assert orphans[0].interaction_type == InteractionType.CALLBACK_RECEIVED.value
        assert transactions == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_malformed_callback_is_logged(self, services: Any) -> None:
        """Test that an unparseable body is recorded without a transaction."""
        outcome = await services.engine.handle_gateway_callback({"unexpected": True})

        assert outcome == ReconciliationOutcome.MALFORMED
        entries = await log_entries(services)
        assert len(entries) == 1
        assert entries[0].transaction_id is None
        assert entries[0].error_code == "malformed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failing_side_effect_does_not_undo_transition(
        self, services: Any, fake_daraja: Any, make_stk_callback: Any
    ) -> None:
        """Test that a handler error is contained after the commit."""
        payment = await start_payment(services, fake_daraja)

        async def broken(transaction: PaymentTransaction) -> None:
            raise RuntimeError("notification service down")

        services.engine.register_handler(TransactionStatus.COMPLETED, broken)

        outcome = await services.engine.handle_gateway_callback(
            make_stk_callback(payment["checkout_request_id"])
        )

        assert outcome == ReconciliationOutcome.APPLIED
        status = await services.payments.get_status(payment["transaction_id"])
        assert status["status"] == TransactionStatus.COMPLETED.value


class TestCallbackQueryRace:
    """Concurrent callback and status-query resolution of one transaction."""

    @pytest.mark.race
    @pytest.mark.asyncio
    @pytest.mark.parametrize("callback_code,query_code", [(0, 0), (0, 1032), (1032, 0), (1, 1032)])
    async def test_first_writer_wins(
        self,
        services: Any,
        fake_daraja: Any,
        make_stk_callback: Any,
        callback_code: int,
        query_code: int,
    ) -> None:
        """Test that exactly one of the racing outcomes is applied."""
        payment = await start_payment(services, fake_daraja)
        applied: List[str] = []

        async def record(transaction: PaymentTransaction) -> None:
            applied.append(transaction.status)

        services.engine.register_handler(TransactionStatus.COMPLETED, record)
        services.engine.register_handler(TransactionStatus.FAILED, record)

        outcomes = await asyncio.gather(
            services.engine.handle_gateway_callback(
                make_stk_callback(payment["checkout_request_id"], result_code=callback_code)
            ),
            services.engine.handle_callback(
                payment["checkout_request_id"],
                query_code,
                "query result",
                "QUERYRCPT" if query_code == 0 else None,
                source="status_query",
            ),
        )

        assert sorted(o.value for o in outcomes) == ["applied", "duplicate"]
        assert len(applied) == 1

        status = await services.payments.get_status(payment["transaction_id"])
        assert status["status"] in (
            TransactionStatus.COMPLETED.value,
            TransactionStatus.FAILED.value,
        )
        assert status["status"] == applied[0]

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_many_duplicate_callbacks(
        self, services: Any, fake_daraja: Any, make_stk_callback: Any
    ) -> None:
        """Test a burst of identical deliveries applies once."""
        payment = await start_payment(services, fake_daraja)

        outcomes = await asyncio.gather(
            *(
                services.engine.handle_gateway_callback(
                    make_stk_callback(payment["checkout_request_id"])
                )
                for _ in range(8)
            )
        )

        assert outcomes.count(ReconciliationOutcome.APPLIED) == 1
        assert outcomes.count(ReconciliationOutcome.DUPLICATE) == 7
