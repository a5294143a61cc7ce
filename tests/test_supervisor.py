"""
Tests for the retry/timeout supervisor.
"""
import uuid
from datetime import timedelta
from typing import Any, Dict
from unittest.mock import AsyncMock

import httpx
import pytest
from sqlalchemy import update

from mpesa_payments.core.errors import PaymentInitiationError, RefundValidationError
from mpesa_payments.core.payment_service import PaymentIntent
from mpesa_payments.core.supervisor import (
    REFUND_UNKNOWN_REASON,
    RetryTimeoutSupervisor,
    TIMEOUT_REASON,
    SupervisorAction,
    compute_backoff,
)
from mpesa_payments.core.transaction_log import ORPHAN_ERROR_CODE
from mpesa_payments.database.models import (
    InteractionType,
    PaymentTransaction,
    TransactionStatus,
    utcnow,
)
from mpesa_payments.integrations.daraja_client import DarajaClient, StatusQueryResult


async def start_payment(services: Any, fake_daraja: Any) -> Dict[str, Any]:
    fake_daraja.accept_push()
    return await services.payments.initiate_payment(
        PaymentIntent(
            amount=1000,
            payer_reference="0712345678",
            purpose="case_fee",
            description="Case filing fee",
        )
    )


def later(minutes: int = 60) -> Any:
    return utcnow() + timedelta(minutes=minutes)


def naive(value: Any) -> Any:
    return value.replace(tzinfo=None)


async def completed_payment(services: Any, fake_daraja: Any, make_stk_callback: Any) -> Dict[str, Any]:
    payment = await start_payment(services, fake_daraja)
    await services.engine.handle_gateway_callback(make_stk_callback(payment["checkout_request_id"]))
    return payment


class TestBackoff:
    """Test suite for compute_backoff."""

    @pytest.mark.unit
    def test_exponential_then_capped(self) -> None:
        """Test base * 2^attempt with a cap."""
        assert [compute_backoff(n, 5, 300) for n in range(8)] == [5, 10, 20, 40, 80, 160, 300, 300]


class TestRetryTimeoutSupervisor:
    """Test suite for RetryTimeoutSupervisor."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fresh_transaction_not_stale(self, services: Any, fake_daraja: Any) -> None:
        """Test that transactions younger than the staleness threshold are left alone."""
        await start_payment(services, fake_daraja)

        assert await services.supervisor.find_stale() == []
        assert len(await services.supervisor.find_stale(later())) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fails_after_exactly_max_retries(
        self, services: Any, fake_daraja: Any, test_settings: Any
    ) -> None:
        """Test exhaustion: transient errors on every query fail the transaction after max_retries."""
        payment = await start_payment(services, fake_daraja)
        fake_daraja.query_response = httpx.Response(503, text="Service Unavailable")

        reports = []
        for minutes in range(1, test_settings.max_retries + 3):
            reports.append(await services.supervisor.run_cycle(now=later(60 * minutes)))

        query_calls = fake_daraja.calls_to("/mpesa/stkpushquery/v1/query")
        assert len(query_calls) == test_settings.max_retries

        transaction = await services.payments.get_transaction(payment["transaction_id"])
        assert transaction.status == TransactionStatus.FAILED.value
        assert transaction.failure_reason == TIMEOUT_REASON
        assert transaction.retry_count == test_settings.max_retries
        assert transaction.retry_count == len(query_calls)

        actions = [a for r in reports for a in r.actions]
        assert actions.count(SupervisorAction.RETRY_SCHEDULED) == test_settings.max_retries - 1
        assert reports[test_settings.max_retries - 1].actions == {SupervisorAction.TIMED_OUT: 1}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_resolved_query_goes_through_reconciliation(
        self, services: Any, fake_daraja: Any
    ) -> None:
        """Test that a query result is applied exactly like a callback."""
        payment = await start_payment(services, fake_daraja)
        fake_daraja.query_response = {
            "ResponseCode": "0",
            "CheckoutRequestID": payment["checkout_request_id"],
            "ResultCode": "0",
            "ResultDesc": "The service request is processed successfully.",
        }

        report = await services.supervisor.run_cycle(now=later())

        assert report.actions == {SupervisorAction.RESOLVED: 1}
        status = await services.payments.get_status(payment["transaction_id"])
        assert status["status"] == TransactionStatus.COMPLETED.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_still_processing_schedules_retry(self, services: Any, fake_daraja: Any) -> None:
        """Test that 'still being processed' counts an attempt and backs off."""
        payment = await start_payment(services, fake_daraja)
        fake_daraja.query_response = httpx.Response(
            500, json={"errorCode": "500.001.1001", "errorMessage": "being processed"}
        )

        [stale] = await services.supervisor.find_stale(later())
        action = await services.supervisor.process_transaction(stale)

        assert action == SupervisorAction.RETRY_SCHEDULED
        transaction = await services.payments.get_transaction(payment["transaction_id"])
        assert transaction.status == TransactionStatus.PROCESSING.value
        assert transaction.retry_count == 1
        assert transaction.next_retry_at is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_backoff_defers_next_scan(
        self, services: Any, fake_daraja: Any, test_settings: Any
    ) -> None:
        """Test that a rescheduled transaction is skipped until its retry time."""
        supervisor = RetryTimeoutSupervisor(
            services.session_factory,
            services.gateway,
            services.engine,
            settings=test_settings.model_copy(update={"retry_base_delay_seconds": 120}),
        )
        await start_payment(services, fake_daraja)
        fake_daraja.query_response = httpx.Response(503)

        [stale] = await supervisor.find_stale(later())
        assert await supervisor.process_transaction(stale) == SupervisorAction.RETRY_SCHEDULED

        assert await supervisor.find_stale(utcnow() + timedelta(seconds=60)) == []
        assert len(await supervisor.find_stale(utcnow() + timedelta(seconds=180))) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_callback_during_query_is_not_overwritten(
        self, services: Any, fake_daraja: Any, make_stk_callback: Any
    ) -> None:
        """Test that a callback landing while the query is in flight wins."""
        payment = await start_payment(services, fake_daraja)

        [stale] = await services.supervisor.find_stale(later())
        await services.engine.handle_gateway_callback(
            make_stk_callback(payment["checkout_request_id"], receipt="CBRECEIPT")
        )
        fake_daraja.query_response = httpx.Response(503)

        action = await services.supervisor.process_transaction(stale)

        assert action == SupervisorAction.SKIPPED
        transaction = await services.payments.get_transaction(payment["transaction_id"])
        assert transaction.status == TransactionStatus.COMPLETED.value
        assert transaction.retry_count == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unacknowledged_pending_is_cancelled(self, services: Any, fake_daraja: Any) -> None:
        """Test that a pending record with an unknown outcome is eventually cancelled."""
        fake_daraja.push_response = lambda request: httpx.ReadTimeout("timed out", request=request)
        with pytest.raises(PaymentInitiationError):
            await services.payments.initiate_payment(
                PaymentIntent(
                    amount=1000,
                    payer_reference="0712345678",
                    purpose="other",
                    description="Other fee",
                )
            )

        report = await services.supervisor.run_cycle(now=later())

        assert report.actions == {SupervisorAction.ABANDONED: 1}
        result = await services.payments.list_payments(status=TransactionStatus.CANCELLED.value)
        assert result["pagination"]["total"] == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_overdue_disbursement_fails(self, services: Any, session_factory: Any) -> None:
        """Test that a refund payout with no result past its deadline fails."""
        refund_id = uuid.uuid4()
        async with session_factory() as db:
            db.add(
                PaymentTransaction(
                    id=refund_id,
                    amount=100,
                    payer_reference="254712345678",
                    purpose="refund",
                    description="Refund",
                    status=TransactionStatus.PROCESSING.value,
                    conversation_id="AG_overdue",
                )
            )
            await db.commit()
            await db.execute(
                update(PaymentTransaction)
                .where(PaymentTransaction.id == refund_id)
                .values(created_at=utcnow() - timedelta(hours=2))
            )
            await db.commit()

        expired = await services.supervisor.expire_disbursements()

        assert expired == 1
        transaction = await services.payments.get_transaction(refund_id)
        assert transaction.status == TransactionStatus.FAILED.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cycle_resolves_batch_concurrently(
        self, services: Any, session_factory: Any, test_settings: Any
    ) -> None:
        """Test that one cycle queries every stale transaction once."""
        async with session_factory() as db:
            for n in range(4):
                db.add(
                    PaymentTransaction(
                        amount=100,
                        payer_reference="254712345678",
                        purpose="case_fee",
                        description=f"Case fee {n}",
                        status=TransactionStatus.PROCESSING.value,
                        checkout_request_id=f"ws_CO_batch{n}",
                    )
                )
            await db.commit()

        gateway = AsyncMock(spec=DarajaClient)
        gateway.query_status.side_effect = lambda checkout_request_id, context: StatusQueryResult(
            result_code=0 if checkout_request_id.endswith(("0", "2")) else 1032,
            result_desc="resolved",
            checkout_request_id=checkout_request_id,
        )
        supervisor = RetryTimeoutSupervisor(
            session_factory, gateway, services.engine, settings=test_settings
        )

        report = await supervisor.run_cycle(now=later())

        assert report.scanned == 4
        assert report.actions == {SupervisorAction.RESOLVED: 4}
        assert gateway.query_status.await_count == 4
        completed = await services.payments.list_payments(status=TransactionStatus.COMPLETED.value)
        failed = await services.payments.list_payments(status=TransactionStatus.FAILED.value)
        assert completed["pagination"]["total"] == 2
        assert failed["pagination"]["total"] == 2


class TestRetryScheduling:
    """Retry bookkeeping follows the cycle's clock."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_backoff_measured_from_cycle_time(
        self, services: Any, fake_daraja: Any, test_settings: Any
    ) -> None:
        """Test that last_retry_at and next_retry_at derive from the time passed to run_cycle."""
        payment = await start_payment(services, fake_daraja)
        fake_daraja.query_response = httpx.Response(503)
        cycle_time = later(240)

        report = await services.supervisor.run_cycle(now=cycle_time)

        assert report.actions == {SupervisorAction.RETRY_SCHEDULED: 1}
        transaction = await services.payments.get_transaction(payment["transaction_id"])
        assert naive(transaction.last_retry_at) == naive(cycle_time)
        assert naive(transaction.next_retry_at) == naive(
            cycle_time + timedelta(seconds=test_settings.retry_base_delay_seconds)
        )


class TestRefundSupervision:
    """Refunds whose payout outcome is unknown never free their reservation."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_abandoned_refund_keeps_reservation(
        self, services: Any, fake_daraja: Any, make_stk_callback: Any
    ) -> None:
        """Test that cancelling a refund with an undelivered ack leaves the balance reserved."""
        payment = await completed_payment(services, fake_daraja, make_stk_callback)
        fake_daraja.b2c_response = lambda request: httpx.ReadTimeout("timed out", request=request)
        with pytest.raises(PaymentInitiationError) as exc_info:
            await services.disbursements.refund(payment["transaction_id"])
        assert exc_info.value.outcome_unknown

        cancelled = await services.supervisor.abandon_unacknowledged(now=later())

        assert cancelled == 1
        refund_txn = await services.payments.get_transaction(exc_info.value.transaction_id)
        assert refund_txn.status == TransactionStatus.CANCELLED.value
        assert refund_txn.failure_reason == REFUND_UNKNOWN_REASON
        source = await services.payments.get_transaction(payment["transaction_id"])
        assert source.status == TransactionStatus.COMPLETED.value
        assert source.refund_pending_amount == 1000
        assert source.refundable_balance == 0

        fake_daraja.accept_b2c()
        with pytest.raises(RefundValidationError):
            await services.disbursements.refund(payment["transaction_id"])

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expired_refund_keeps_reservation(
        self, services: Any, fake_daraja: Any, make_stk_callback: Any
    ) -> None:
        """Test that a refund failed for lack of a result cannot be refunded again."""
        payment = await completed_payment(services, fake_daraja, make_stk_callback)
        fake_daraja.accept_b2c("AG_silent")
        refund = await services.disbursements.refund(payment["transaction_id"])

        expired = await services.supervisor.expire_disbursements(now=later(120))

        assert expired == 1
        refund_txn = await services.payments.get_transaction(refund["refund_transaction_id"])
        assert refund_txn.status == TransactionStatus.FAILED.value
        source = await services.payments.get_transaction(payment["transaction_id"])
        assert source.refund_pending_amount == 1000
        assert source.refundable_balance == 0

        fake_daraja.accept_b2c()
        with pytest.raises(RefundValidationError):
            await services.disbursements.refund(payment["transaction_id"])
        assert len(fake_daraja.calls_to("/mpesa/b2c/v1/paymentrequest")) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expiry_applies_logged_orphan_result(
        self,
        services: Any,
        fake_daraja: Any,
        make_stk_callback: Any,
        make_b2c_result: Any,
    ) -> None:
        """Test that a result logged as an orphan settles the refund instead of expiring it."""
        payment = await completed_payment(services, fake_daraja, make_stk_callback)
        fake_daraja.accept_b2c("AG_late")
        refund = await services.disbursements.refund(payment["transaction_id"])
        await services.transaction_log.record(
            services.transaction_log.build_entry(
                InteractionType.DISBURSEMENT_RESULT,
                correlation_id="AG_late",
                response_payload=make_b2c_result("AG_late"),
                status_code=200,
                error_code=ORPHAN_ERROR_CODE,
            )
        )

        expired = await services.supervisor.expire_disbursements(now=later(120))

        assert expired == 0
        refund_txn = await services.payments.get_transaction(refund["refund_transaction_id"])
        assert refund_txn.status == TransactionStatus.COMPLETED.value
        assert refund_txn.receipt_number == "QKL1REF456"
        source = await services.payments.get_transaction(payment["transaction_id"])
        assert source.status == TransactionStatus.REFUNDED.value
        assert source.refund_pending_amount == 0
