"""Domain exceptions for payment orchestration."""
import uuid
from typing import Optional


class PaymentError(Exception):
    """Base exception for payment processing errors."""

    pass


class ValidationError(PaymentError):
    """Raised when a request is rejected before any gateway call."""

    pass


class RefundValidationError(ValidationError):
    """Raised when a refund request breaks a refund rule (status, balance)."""

    pass


class TransactionNotFoundError(PaymentError):
    """Raised when a transaction id does not exist."""

    pass


class PaymentInitiationError(PaymentError):
    """
    Raised when a push or disbursement could not be initiated.

    ``transaction_id`` is set when a record was kept, either because the
    provider rejected the request (the record is ``failed``) or because the
    request may have reached the provider (the record stays ``pending`` for
    the supervisor to resolve).
    """

    def __init__(
        self,
        message: str,
        transaction_id: Optional[uuid.UUID] = None,
        retryable: bool = False,
        outcome_unknown: bool = False,
    ):
        super().__init__(message)
        self.transaction_id = transaction_id
        self.retryable = retryable
        self.outcome_unknown = outcome_unknown


class OrphanCallbackError(PaymentError):
    """A gateway notification references an unknown correlation id."""

    def __init__(self, correlation_id: Optional[str]):
        super().__init__(f"No transaction for correlation id {correlation_id!r}")
        self.correlation_id = correlation_id


class DuplicateCallbackError(PaymentError):
    """A gateway notification arrived for a transaction already out of processing."""

    def __init__(self, transaction_id: uuid.UUID, status: str):
        super().__init__(f"Transaction {transaction_id} already {status}")
        self.transaction_id = transaction_id
        self.status = status


class MalformedCallbackError(PaymentError):
    """A gateway notification does not match any known payload shape."""

    pass
