"""
Pydantic schemas for API request/response models.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from mpesa_payments.database.models import PaymentPurpose


class CreatePaymentRequest(BaseModel):
    """Request schema for initiating a push payment."""

    amount: int = Field(..., description="Amount in whole shillings (minimum 1)")
    payer_reference: str = Field(..., min_length=9, max_length=15, description="Payer phone number")
    purpose: str = Field(..., description="Payment purpose category")
    description: str = Field(..., min_length=1, max_length=500, description="What the payment is for")
    linked_entity_type: Optional[str] = Field(
        default=None, max_length=50, description="Type of business entity paid for (appointment, case)"
    )
    linked_entity_id: Optional[str] = Field(
        default=None, max_length=100, description="Identifier of the business entity paid for"
    )

    @field_validator("purpose")
    @classmethod
    def validate_purpose(cls, v: str) -> str:
        """Reject unknown purposes and refunds, which have their own endpoint."""
        allowed = [p.value for p in PaymentPurpose if p != PaymentPurpose.REFUND]
        if v not in allowed:
            raise ValueError(f"purpose must be one of {', '.join(allowed)}")
        return v

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "amount": 1000,
                    "payer_reference": "0712345678",
                    "purpose": "consultation_fee",
                    "description": "Consultation fee for appointment 42",
                    "linked_entity_type": "appointment",
                    "linked_entity_id": "42",
                }
            ]
        }
    }


class CreatePaymentResponse(BaseModel):
    """Response schema for an accepted push payment."""

    transaction_id: str = Field(..., description="Internal transaction id")
    status: str = Field(..., description="Transaction status")
    checkout_request_id: str = Field(..., description="Gateway correlation id")
    merchant_request_id: str = Field(..., description="Gateway merchant request id")
    customer_message: Optional[str] = Field(default=None, description="Message shown to the payer")


class PaymentStatusResponse(BaseModel):
    """Response schema for payment status."""

    transaction_id: str = Field(..., description="Internal transaction id")
    status: str = Field(..., description="Transaction status")
    amount: int = Field(..., description="Amount in whole shillings")
    currency: str = Field(..., description="Currency code")
    purpose: str = Field(..., description="Payment purpose")
    receipt_number: Optional[str] = Field(default=None, description="Gateway receipt when completed")
    result_code: Optional[int] = Field(default=None, description="Gateway result code")
    result_desc: Optional[str] = Field(default=None, description="Human-readable result")
    refunded_amount: int = Field(..., description="Amount refunded so far")
    refundable_balance: int = Field(..., description="Amount still refundable")
    created_at: Optional[str] = Field(default=None, description="Creation timestamp (ISO 8601)")
    completed_at: Optional[str] = Field(default=None, description="Resolution timestamp (ISO 8601)")


class Pagination(BaseModel):
    """Pagination envelope."""

    page: int
    limit: int
    total: int
    pages: int
    has_next: bool
    has_prev: bool


class PaymentListResponse(BaseModel):
    """Response schema for a page of transactions."""

    transactions: List[Dict[str, Any]] = Field(..., description="Transactions, newest first")
    pagination: Pagination


class RefundRequest(BaseModel):
    """Request schema for refunding a payment."""

    amount: Optional[int] = Field(
        default=None, description="Partial refund amount (remaining balance if not specified)"
    )
    reason: str = Field(default="Refund", max_length=100, description="Refund reason")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"amount": 500, "reason": "Appointment cancelled"},
                {"reason": "Duplicate payment"},
            ]
        }
    }


class RefundResponse(BaseModel):
    """Response schema for refund."""

    refund_transaction_id: str = Field(..., description="Refund transaction id")
    source_transaction_id: str = Field(..., description="Refunded payment id")
    amount: int = Field(..., description="Refund amount")
    status: str = Field(..., description="Refund status")
    conversation_id: str = Field(..., description="Gateway correlation id")


class CallbackAck(BaseModel):
    """Acknowledgement returned to the gateway for every callback."""

    ResultCode: int = Field(default=0)
    ResultDesc: str = Field(default="Accepted")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
