"""Core payment orchestration logic."""
from .errors import (
    DuplicateCallbackError,
    MalformedCallbackError,
    OrphanCallbackError,
    PaymentError,
    PaymentInitiationError,
    RefundValidationError,
    TransactionNotFoundError,
    ValidationError,
)

__all__ = [
    "DuplicateCallbackError",
    "MalformedCallbackError",
    "OrphanCallbackError",
    "PaymentError",
    "PaymentInitiationError",
    "RefundValidationError",
    "TransactionNotFoundError",
    "ValidationError",
]
