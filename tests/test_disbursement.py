"""
Tests for refund disbursement and refundable balance accounting.
"""
import asyncio
from typing import Any, Dict

import httpx
import pytest

from mpesa_payments.core.errors import (
    PaymentInitiationError,
    RefundValidationError,
    TransactionNotFoundError,
)
from mpesa_payments.core.payment_service import PaymentIntent
from mpesa_payments.core.reconciliation import ReconciliationOutcome
from mpesa_payments.database.models import PaymentPurpose, TransactionStatus


async def paid(services: Any, fake_daraja: Any, make_stk_callback: Any, amount: int = 1000) -> Dict[str, Any]:
    """A completed payment."""
    fake_daraja.accept_push()
    payment = await services.payments.initiate_payment(
        PaymentIntent(
            amount=amount,
            payer_reference="0712345678",
            purpose="consultation_fee",
            description="Consultation fee",
        )
    )
    await services.engine.handle_gateway_callback(
        make_stk_callback(payment["checkout_request_id"], amount=amount)
    )
    return payment


class TestDisbursementWorkflow:
    """Test suite for DisbursementWorkflow."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_full_refund_round_trip(
        self, services: Any, fake_daraja: Any, make_stk_callback: Any, make_b2c_result: Any
    ) -> None:
        """Test refund, B2C result, and a rejected second refund."""
        payment = await paid(services, fake_daraja, make_stk_callback)
        fake_daraja.accept_b2c("AG_full")

        refund = await services.disbursements.refund(
            payment["transaction_id"], reason="Appointment cancelled", requested_by="admin-1"
        )

        assert refund["amount"] == 1000
        assert refund["status"] == TransactionStatus.PROCESSING.value
        assert refund["conversation_id"] == "AG_full"

        source = await services.payments.get_transaction(payment["transaction_id"])
        assert source.refund_pending_amount == 1000
        assert source.refundable_balance == 0

        await services.engine.handle_gateway_callback(make_b2c_result("AG_full"))

        refund_txn = await services.payments.get_transaction(refund["refund_transaction_id"])
        assert refund_txn.status == TransactionStatus.COMPLETED.value
        assert refund_txn.purpose == PaymentPurpose.REFUND.value
        assert refund_txn.receipt_number == "QKL1REF456"

        source = await services.payments.get_transaction(payment["transaction_id"])
        assert source.status == TransactionStatus.REFUNDED.value
        assert source.refunded_amount == 1000
        assert source.refundable_balance == 0

        with pytest.raises(RefundValidationError):
            await services.disbursements.refund(payment["transaction_id"], amount=1)
        assert len(await services.payments.list_refunds(payment["transaction_id"])) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_over_balance_rejected_without_record(
        self, services: Any, fake_daraja: Any, make_stk_callback: Any
    ) -> None:
        """Test that refunds above the balance create nothing and send nothing."""
        payment = await paid(services, fake_daraja, make_stk_callback)

        with pytest.raises(RefundValidationError):
            await services.disbursements.refund(payment["transaction_id"], amount=1500)

        assert await services.payments.list_refunds(payment["transaction_id"]) == []
        assert fake_daraja.calls_to("/mpesa/b2c/v1/paymentrequest") == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -1, True])
    async def test_invalid_amount_rejected(
        self, services: Any, fake_daraja: Any, make_stk_callback: Any, amount: Any
    ) -> None:
        payment = await paid(services, fake_daraja, make_stk_callback)

        with pytest.raises(RefundValidationError):
            await services.disbursements.refund(payment["transaction_id"], amount=amount)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_partial_refunds(
        self, services: Any, fake_daraja: Any, make_stk_callback: Any, make_b2c_result: Any
    ) -> None:
        """Test two partial refunds that together pay back the whole amount."""
        payment = await paid(services, fake_daraja, make_stk_callback)

        fake_daraja.accept_b2c("AG_part1")
        await services.disbursements.refund(payment["transaction_id"], amount=400)
        await services.engine.handle_gateway_callback(make_b2c_result("AG_part1", amount=400))

        source = await services.payments.get_transaction(payment["transaction_id"])
        assert source.status == TransactionStatus.COMPLETED.value
        assert source.refunded_amount == 400
        assert source.refundable_balance == 600

        fake_daraja.accept_b2c("AG_part2")
        second = await services.disbursements.refund(payment["transaction_id"])
        assert second["amount"] == 600
        await services.engine.handle_gateway_callback(make_b2c_result("AG_part2", amount=600))

        source = await services.payments.get_transaction(payment["transaction_id"])
        assert source.status == TransactionStatus.REFUNDED.value
        assert source.refunded_amount == 1000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_payout_releases_reservation(
        self, services: Any, fake_daraja: Any, make_stk_callback: Any, make_b2c_result: Any
    ) -> None:
        """Test that a failed B2C result returns the amount to the balance."""
        payment = await paid(services, fake_daraja, make_stk_callback)
        fake_daraja.accept_b2c("AG_fail")
        refund = await services.disbursements.refund(payment["transaction_id"], amount=300)

        await services.engine.handle_gateway_callback(make_b2c_result("AG_fail", result_code=2001))

        refund_txn = await services.payments.get_transaction(refund["refund_transaction_id"])
        assert refund_txn.status == TransactionStatus.FAILED.value
        source = await services.payments.get_transaction(payment["transaction_id"])
        assert source.status == TransactionStatus.COMPLETED.value
        assert source.refund_pending_amount == 0
        assert source.refundable_balance == 1000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rejected_payout_request_releases_reservation(
        self, services: Any, fake_daraja: Any, make_stk_callback: Any
    ) -> None:
        """Test that a B2C request refused by the gateway fails the refund."""
        payment = await paid(services, fake_daraja, make_stk_callback)
        fake_daraja.b2c_response = httpx.Response(
            400, json={"errorCode": "401.002.01", "errorMessage": "Error - Invalid Access Token"}
        )

        with pytest.raises(PaymentInitiationError) as exc_info:
            await services.disbursements.refund(payment["transaction_id"])

        refund_txn = await services.payments.get_transaction(exc_info.value.transaction_id)
        assert refund_txn.status == TransactionStatus.FAILED.value
        source = await services.payments.get_transaction(payment["transaction_id"])
        assert source.refundable_balance == 1000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unsettled_payment_not_refundable(self, services: Any, fake_daraja: Any) -> None:
        """Test that a payment still awaiting its callback cannot be refunded."""
        fake_daraja.accept_push()
        payment = await services.payments.initiate_payment(
            PaymentIntent(
                amount=1000,
                payer_reference="0712345678",
                purpose="case_fee",
                description="Case fee",
            )
        )

        with pytest.raises(RefundValidationError):
            await services.disbursements.refund(payment["transaction_id"])

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_source(self, services: Any) -> None:
        with pytest.raises(TransactionNotFoundError):
            await services.disbursements.refund("7d3f4a52-0000-4000-8000-000000000000")

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_refunds_never_exceed_amount(
        self, services: Any, fake_daraja: Any, make_stk_callback: Any
    ) -> None:
        """Test that racing refunds cannot together exceed the original amount."""
        payment = await paid(services, fake_daraja, make_stk_callback)
        fake_daraja.b2c_response = lambda request: httpx.Response(
            200,
            json={
                "ConversationID": f"AG_{id(request)}",
                "OriginatorConversationID": "oc-race",
                "ResponseCode": "0",
                "ResponseDescription": "Accept the service request successfully.",
            },
        )

        results = await asyncio.gather(
            *(
                services.disbursements.refund(payment["transaction_id"], amount=700)
                for _ in range(3)
            ),
            return_exceptions=True,
        )

        accepted = [r for r in results if isinstance(r, dict)]
        rejected = [r for r in results if isinstance(r, RefundValidationError)]
        assert len(accepted) == 1
        assert len(rejected) == 2

        source = await services.payments.get_transaction(payment["transaction_id"])
        assert source.refund_pending_amount == 700
        assert len(await services.payments.list_refunds(payment["transaction_id"])) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_result_before_acknowledgement_commit_is_applied(
        self,
        services: Any,
        fake_daraja: Any,
        make_stk_callback: Any,
        make_b2c_result: Any,
        mocker: Any,
    ) -> None:
        """Test that a B2C result landing before the refund stores its ids still settles it."""
        payment = await paid(services, fake_daraja, make_stk_callback)
        fake_daraja.accept_b2c("AG_early")
        initiate_disbursement = services.gateway.initiate_disbursement
        early_outcomes = []

        async def result_delivered_first(*args: Any, **kwargs: Any) -> Any:
            ack = await initiate_disbursement(*args, **kwargs)
            early_outcomes.append(
                await services.engine.handle_gateway_callback(make_b2c_result(ack.conversation_id))
            )
            return ack

        mocker.patch.object(
            services.gateway, "initiate_disbursement", side_effect=result_delivered_first
        )

        refund = await services.disbursements.refund(payment["transaction_id"])

        assert early_outcomes == [ReconciliationOutcome.ORPHAN]
        assert refund["status"] == TransactionStatus.COMPLETED.value
        refund_txn = await services.payments.get_transaction(refund["refund_transaction_id"])
        assert refund_txn.status == TransactionStatus.COMPLETED.value
        assert refund_txn.receipt_number == "QKL1REF456"
        assert refund_txn.callback_received

        source = await services.payments.get_transaction(payment["transaction_id"])
        assert source.status == TransactionStatus.REFUNDED.value
        assert source.refunded_amount == 1000
        with pytest.raises(RefundValidationError):
            await services.disbursements.refund(payment["transaction_id"])
