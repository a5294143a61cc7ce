"""FastAPI application and routes."""
from .main import app, create_app
from .schemas import (
    CreatePaymentRequest,
    CreatePaymentResponse,
    PaymentStatusResponse,
    RefundRequest,
    RefundResponse,
)

__all__ = [
    "app",
    "create_app",
    "CreatePaymentRequest",
    "CreatePaymentResponse",
    "PaymentStatusResponse",
    "RefundRequest",
    "RefundResponse",
]
