"""Database package for the M-Pesa payment service."""
from .connection import close_db, get_session_factory, init_db
from .models import (
    Base,
    InteractionType,
    PaymentPurpose,
    PaymentTransaction,
    TransactionLogEntry,
    TransactionStatus,
)
from .repository import TransactionStore

__all__ = [
    "Base",
    "InteractionType",
    "PaymentPurpose",
    "PaymentTransaction",
    "TransactionLogEntry",
    "TransactionStatus",
    "TransactionStore",
    "close_db",
    "get_session_factory",
    "init_db",
]
