"""External integrations for mobile-money payments."""
from .callbacks import CallbackNotification, parse_callback
from .daraja_client import (
    DarajaClient,
    GatewayAuthError,
    GatewayBusinessError,
    GatewayError,
    GatewayErrorType,
    GatewayTransportError,
    TokenCache,
)

__all__ = [
    "CallbackNotification",
    "DarajaClient",
    "GatewayAuthError",
    "GatewayBusinessError",
    "GatewayError",
    "GatewayErrorType",
    "GatewayTransportError",
    "TokenCache",
    "parse_callback",
]
