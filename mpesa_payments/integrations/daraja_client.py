"""
M-Pesa Daraja API client with token caching and error classification.

Implements:
- Lazily fetched, mutex-guarded OAuth token cache
- STK push (customer-to-business) requests
- STK push status queries
- B2C (business-to-customer) disbursement requests
- Transient/permanent error classification
- One transaction log entry per outbound call, failures included
"""
import asyncio
import base64
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from mpesa_payments.config import Settings, get_settings
from mpesa_payments.core.errors import ValidationError
from mpesa_payments.core.transaction_log import LogContext, TransactionLog
from mpesa_payments.database.models import InteractionType
from mpesa_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

EAST_AFRICA_TIME = timezone(timedelta(hours=3))
PHONE_NUMBER_PATTERN = re.compile(r"^254[17]\d{8}$")

# Status query answer while the payer has not yet responded to the prompt
STILL_PROCESSING_ERROR_CODE = "500.001.1001"

# Payload fields that must never reach logs or the audit trail
SECRET_FIELDS = ("Password", "SecurityCredential")


class GatewayErrorType(Enum):
    """Classification of gateway errors for retry decisions."""

    TRANSIENT = "transient"  # Network, timeout, provider 5xx: retry later
    PERMANENT = "permanent"  # Credentials, invalid request, business rejection


class GatewayError(Exception):
    """Base exception for gateway-related errors."""

    def __init__(
        self,
        message: str,
        error_type: GatewayErrorType,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        request_sent: bool = True,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize gateway error.

        Args:
            message: Error message
            error_type: Classification of error
            status_code: HTTP status returned by the gateway, if any
            error_code: Gateway error or response code, if any
            request_sent: Whether the request may have reached the gateway
            original_error: Underlying exception
        """
        super().__init__(message)
        self.error_type = error_type
        self.status_code = status_code
        self.error_code = error_code
        self.request_sent = request_sent
        self.original_error = original_error

    @property
    def is_transient(self) -> bool:
        return self.error_type == GatewayErrorType.TRANSIENT


class GatewayTransportError(GatewayError):
    """Network failure, timeout or provider-side outage. Retryable."""

    def __init__(self, message: str, **kwargs: Any):
        super().__init__(message, GatewayErrorType.TRANSIENT, **kwargs)


class GatewayBusinessError(GatewayError):
    """The gateway understood and rejected the request. Not retryable."""

    def __init__(self, message: str, **kwargs: Any):
        super().__init__(message, GatewayErrorType.PERMANENT, **kwargs)


class GatewayAuthError(GatewayError):
    """Credentials were refused. Not retryable."""

    def __init__(self, message: str, **kwargs: Any):
        super().__init__(message, GatewayErrorType.PERMANENT, **kwargs)


def format_phone_number(phone_number: str) -> str:
    """
    Normalize a Kenyan MSISDN to the 2547XXXXXXXX form the gateway expects.

    Accepts 07..., 7..., 01..., 1..., 254... and +254... inputs.
    """
    cleaned = re.sub(r"\D", "", phone_number or "")
    if cleaned.startswith("254"):
        return cleaned
    if cleaned.startswith("0"):
        return "254" + cleaned[1:]
    if cleaned.startswith(("7", "1")):
        return "254" + cleaned
    return cleaned


def validate_phone_number(phone_number: str) -> str:
    """
    Normalize and validate a payer/payee reference.

    Raises:
        ValidationError: If the number is not a valid mobile-money MSISDN
    """
    formatted = format_phone_number(phone_number)
    if not PHONE_NUMBER_PATTERN.match(formatted):
        raise ValidationError(f"Invalid phone number format: {phone_number!r}")
    return formatted


def validate_amount(amount: Any) -> int:
    """
    Validate a monetary amount in whole currency units.

    Raises:
        ValidationError: If the amount is not a positive integer
    """
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError("Amount must be a whole number")
    if amount < 1:
        raise ValidationError("Amount must be at least 1")
    return amount


def generate_timestamp(now: Optional[datetime] = None) -> str:
    """Gateway timestamp, YYYYMMDDHHMMSS in East Africa Time."""
    now = now or datetime.now(EAST_AFRICA_TIME)
    return now.strftime("%Y%m%d%H%M%S")


def generate_password(shortcode: str, passkey: str, timestamp: str) -> str:
    """STK password: base64(shortcode + passkey + timestamp)."""
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()


def redact(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of a request payload with secrets masked."""
    return {k: ("***" if k in SECRET_FIELDS else v) for k, v in payload.items()}


@dataclass
class PushAcknowledgement:
    """Gateway acceptance of an STK push request."""

    merchant_request_id: str
    checkout_request_id: str
    response_code: str
    response_description: Optional[str]
    customer_message: Optional[str]
    request_payload: Dict[str, Any] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StatusQueryResult:
    """Final outcome of an STK push as reported by a status query."""

    result_code: int
    result_desc: Optional[str]
    merchant_request_id: Optional[str] = None
    checkout_request_id: Optional[str] = None
    receipt_number: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DisbursementAcknowledgement:
    """Gateway acceptance of a B2C payment request."""

    conversation_id: str
    originator_conversation_id: Optional[str]
    response_code: str
    response_description: Optional[str]
    request_payload: Dict[str, Any] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict)


class TokenCache:
    """
    Single-slot OAuth token cache shared by every request of one client.

    The slot is read and refreshed under one lock, so concurrent callers
    that find the token missing or expired trigger a single
    re-authentication and then all reuse its result.
    """

    def __init__(self, expiry_buffer_seconds: int = 300):
        """
        Initialize token cache.

        Args:
            expiry_buffer_seconds: Treat tokens as expired this long before
                the gateway-declared expiry
        """
        self.expiry_buffer_seconds = expiry_buffer_seconds
        self._lock = asyncio.Lock()
        self._token: Optional[str] = None
        self._expires_at: float = 0.0

    def _is_valid(self) -> bool:
        return self._token is not None and time.monotonic() < self._expires_at

    async def get_token(self, fetch: Callable[[], Awaitable[tuple[str, int]]]) -> str:
        """
        Return the cached token, fetching a new one if missing or expired.

        Args:
            fetch: Coroutine returning (access_token, expires_in_seconds)

        Returns:
            str: A usable access token
        """
        async with self._lock:
            if not self._is_valid():
                token, expires_in = await fetch()
                self._token = token
                self._expires_at = time.monotonic() + max(
                    0, expires_in - self.expiry_buffer_seconds
                )
            return self._token  # type: ignore[return-value]

    def invalidate(self) -> None:
        """Drop the cached token so the next request re-authenticates."""
        self._token = None
        self._expires_at = 0.0


def _is_unsent_transport_error(error: BaseException) -> bool:
    return (
        isinstance(error, GatewayTransportError)
        and not error.request_sent
    )


class DarajaClient:
    """
    Wrapper for the Daraja API with production-grade error handling.

    Features:
    - Lazy OAuth with a shared, lock-protected token cache
    - Automatic retry of requests that never left this process
    - Error classification into transient and permanent failures
    - Audit entry for every push, status query and disbursement call
    """

    def __init__(
        self,
        transaction_log: TransactionLog,
        settings: Optional[Settings] = None,
        token_cache: Optional[TokenCache] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Initialize Daraja client.

        Args:
            transaction_log: Audit log receiving one entry per call
            settings: Optional settings (defaults to environment settings)
            token_cache: Optional token cache owned by the caller
            http_client: Optional preconfigured HTTP client
        """
        self.settings = settings or get_settings()
        self.transaction_log = transaction_log
        self.token_cache = token_cache or TokenCache(self.settings.token_expiry_buffer_seconds)
        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            base_url=self.settings.base_url,
            timeout=self.settings.request_timeout_seconds,
        )

        logger.info(
            "daraja_client_initialized",
            environment=self.settings.mpesa_environment,
            base_url=self.settings.base_url,
        )

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_http_client:
            await self.http_client.aclose()

    @staticmethod
    def _classify_transport_error(error: httpx.TransportError) -> GatewayTransportError:
        """
        Classify a transport failure.

        Connection failures never reached the gateway; read/write failures
        and timeouts after connecting may have.
        """
        request_sent = not isinstance(
            error, (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)
        )
        kind = "timeout" if isinstance(error, httpx.TimeoutException) else "network"
        return GatewayTransportError(
            f"Gateway {kind} error: {error.__class__.__name__}: {error}",
            error_code=error.__class__.__name__,
            request_sent=request_sent,
            original_error=error,
        )

    @staticmethod
    def _classify_http_error(response: httpx.Response) -> GatewayError:
        """Classify a non-2xx gateway response."""
        try:
            body = response.json()
        except ValueError:
            body = {}
        error_code = body.get("errorCode") if isinstance(body, dict) else None
        message = (
            (body.get("errorMessage") if isinstance(body, dict) else None)
            or response.text
            or response.reason_phrase
        )

        if response.status_code == 401:
            return GatewayAuthError(
                f"Gateway rejected credentials: {message}",
                status_code=401,
                error_code=error_code,
            )
        if response.status_code >= 500 or response.status_code == 429:
            return GatewayTransportError(
                f"Gateway unavailable ({response.status_code}): {message}",
                status_code=response.status_code,
                error_code=error_code,
            )
        return GatewayBusinessError(
            f"Gateway rejected request ({response.status_code}): {message}",
            status_code=response.status_code,
            error_code=error_code,
        )

    @retry(
        retry=retry_if_exception(lambda e: isinstance(e, GatewayTransportError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        reraise=True,
    )
    async def _fetch_token(self) -> tuple[str, int]:
        """
        Request a new OAuth access token.

        Failures are raised with ``request_sent`` cleared: the request the
        token was fetched for has not been sent yet.

        Returns:
            tuple[str, int]: (access_token, expires_in_seconds)

        Raises:
            GatewayAuthError: If the credentials are refused
            GatewayTransportError: If the gateway cannot be reached
        """
        logger.info("gateway_token_refresh_started")
        start = time.monotonic()
        try:
            response = await self.http_client.get(
                "/oauth/v1/generate",
                params={"grant_type": "client_credentials"},
                auth=(self.settings.mpesa_consumer_key, self.settings.mpesa_consumer_secret),
                timeout=self.settings.auth_timeout_seconds,
            )
        except httpx.TransportError as e:
            metrics.record_token_refresh("error")
            error = self._classify_transport_error(e)
            error.request_sent = False
            raise error

        duration = time.monotonic() - start
        if response.status_code != 200:
            metrics.record_token_refresh("error")
            error = self._classify_http_error(response)
            if response.status_code in (400, 403):
                error = GatewayAuthError(
                    str(error), status_code=response.status_code, error_code=error.error_code
                )
            error.request_sent = False
            logger.error(
                "gateway_token_refresh_failed",
                status_code=response.status_code,
                error_type=error.error_type.value,
            )
            raise error

        data = response.json()
        metrics.record_token_refresh("success")
        logger.info(
            "gateway_token_refreshed",
            expires_in=data.get("expires_in"),
            duration_seconds=duration,
        )
        return data["access_token"], int(data.get("expires_in", 3599))

    async def _get_token(self) -> str:
        return await self.token_cache.get_token(self._fetch_token)

    @retry(
        retry=retry_if_exception(_is_unsent_transport_error),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        reraise=True,
    )
    async def _send(self, path: str, payload: Dict[str, Any], token: str) -> httpx.Response:
        """
        POST one authenticated JSON request.

        Requests that failed before reaching the gateway are retried; any
        request that may have been delivered is not, since pushes and
        disbursements are not idempotent at the gateway.
        """
        try:
            return await self.http_client.post(
                path,
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TransportError as e:
            raise self._classify_transport_error(e)

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        POST a request and decode the gateway's answer.

        A 401 invalidates the cached token and the request is sent once
        more with a fresh one.

        Raises:
            GatewayError: Classified failure
        """
        response = await self._send(path, payload, await self._get_token())
        if response.status_code == 401:
            logger.warning("gateway_token_rejected", path=path)
            self.token_cache.invalidate()
            response = await self._send(path, payload, await self._get_token())

        if response.status_code >= 400:
            error = self._classify_http_error(response)
            if isinstance(error, GatewayAuthError):
                self.token_cache.invalidate()
            raise error

        return response.json()

    async def _call(
        self,
        operation: str,
        interaction_type: InteractionType,
        path: str,
        payload: Dict[str, Any],
        context: Optional[LogContext],
        correlation_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Perform one gateway call and record exactly one audit entry for it.

        Raises:
            GatewayError: Classified failure (already logged)
        """
        context = context or LogContext()
        start = time.monotonic()
        try:
            data = await self._post(path, payload)
        except GatewayError as e:
            duration = time.monotonic() - start
            metrics.record_gateway_call(operation, "error", duration)
            metrics.record_gateway_error(operation, e.error_type.value)
            logger.error(
                "gateway_call_failed",
                operation=operation,
                transaction_id=str(context.transaction_id) if context.transaction_id else None,
                error_type=e.error_type.value,
                status_code=e.status_code,
                error_code=e.error_code,
                request_sent=e.request_sent,
                error=str(e),
            )
            await self.transaction_log.record(
                self.transaction_log.build_entry(
                    interaction_type,
                    transaction_id=context.transaction_id,
                    correlation_id=correlation_id,
                    request_payload=redact(payload),
                    status_code=e.status_code,
                    latency_ms=duration * 1000,
                    success=False,
                    error_code=e.error_code or e.error_type.value,
                    error_message=str(e),
                    caller=context.caller,
                    retry_attempt=context.retry_attempt,
                )
            )
            raise

        duration = time.monotonic() - start
        metrics.record_gateway_call(operation, "success", duration)
        response_code = data.get("ResponseCode", data.get("ResultCode"))
        await self.transaction_log.record(
            self.transaction_log.build_entry(
                interaction_type,
                transaction_id=context.transaction_id,
                correlation_id=correlation_id
                or data.get("CheckoutRequestID")
                or data.get("ConversationID"),
                request_payload=redact(payload),
                response_payload=data,
                status_code=200,
                latency_ms=duration * 1000,
                success=str(response_code) == "0",
                error_code=None if str(response_code) == "0" else str(response_code),
                error_message=None
                if str(response_code) == "0"
                else data.get("ResponseDescription") or data.get("ResultDesc"),
                caller=context.caller,
                retry_attempt=context.retry_attempt,
            )
        )
        return data

    async def initiate_push(
        self,
        amount: int,
        payer_reference: str,
        account_reference: str,
        description: str,
        context: Optional[LogContext] = None,
    ) -> PushAcknowledgement:
        """
        Send an STK push prompt to the payer's phone.

        Args:
            amount: Amount in whole shillings
            payer_reference: Payer MSISDN (any accepted format)
            account_reference: Reference shown to the payer (max 12 chars)
            description: Transaction description (max 13 chars used)
            context: Audit correlation details

        Returns:
            PushAcknowledgement: Correlation ids for the pending request

        Raises:
            ValidationError: Before any network call, on bad input
            GatewayError: Classified gateway failure
        """
        amount = validate_amount(amount)
        phone = validate_phone_number(payer_reference)
        if not self.settings.mpesa_stk_callback_url:
            raise ValidationError("STK callback URL not configured")

        timestamp = generate_timestamp()
        shortcode = self.settings.mpesa_shortcode
        payload = {
            "BusinessShortCode": shortcode,
            "Password": generate_password(shortcode, self.settings.mpesa_passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": amount,
            "PartyA": phone,
            "PartyB": shortcode,
            "PhoneNumber": phone,
            "CallBackURL": self.settings.mpesa_stk_callback_url,
            "AccountReference": account_reference[:12],
            "TransactionDesc": (description or "Payment")[:13],
        }

        logger.info(
            "initiating_stk_push",
            amount=amount,
            account_reference=payload["AccountReference"],
            transaction_id=str(context.transaction_id) if context and context.transaction_id else None,
        )

        data = await self._call(
            "push", InteractionType.PUSH_REQUEST, "/mpesa/stkpush/v1/processrequest", payload, context
        )

        if str(data.get("ResponseCode")) != "0":
            raise GatewayBusinessError(
                f"STK push rejected: {data.get('ResponseDescription')}",
                error_code=str(data.get("ResponseCode")),
            )

        logger.info(
            "stk_push_acknowledged",
            merchant_request_id=data.get("MerchantRequestID"),
            checkout_request_id=data.get("CheckoutRequestID"),
        )

        return PushAcknowledgement(
            merchant_request_id=data["MerchantRequestID"],
            checkout_request_id=data["CheckoutRequestID"],
            response_code=str(data.get("ResponseCode")),
            response_description=data.get("ResponseDescription"),
            customer_message=data.get("CustomerMessage"),
            request_payload=redact(payload),
            raw=data,
        )

    async def query_status(
        self, checkout_request_id: str, context: Optional[LogContext] = None
    ) -> StatusQueryResult:
        """
        Ask the gateway for the final result of an STK push.

        Args:
            checkout_request_id: CheckoutRequestID of the push
            context: Audit correlation details

        Returns:
            StatusQueryResult: Resolved outcome

        Raises:
            GatewayTransportError: Gateway unreachable or the push is still in progress
            GatewayError: Other classified failures
        """
        if not checkout_request_id:
            raise ValidationError("checkout_request_id is required")

        timestamp = generate_timestamp()
        shortcode = self.settings.mpesa_shortcode
        payload = {
            "BusinessShortCode": shortcode,
            "Password": generate_password(shortcode, self.settings.mpesa_passkey, timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }

        logger.info("querying_stk_push_status", checkout_request_id=checkout_request_id)

        try:
            data = await self._call(
                "status_query",
                InteractionType.STATUS_QUERY,
                "/mpesa/stkpushquery/v1/query",
                payload,
                context,
                correlation_id=checkout_request_id,
            )
        except GatewayError as e:
            if e.error_code == STILL_PROCESSING_ERROR_CODE:
                raise GatewayTransportError(
                    "Push still being processed by the gateway",
                    status_code=e.status_code,
                    error_code=e.error_code,
                    original_error=e,
                )
            raise

        if "ResultCode" not in data:
            raise GatewayTransportError(
                "Status query returned no result", error_code=str(data.get("ResponseCode"))
            )

        return StatusQueryResult(
            result_code=int(data["ResultCode"]),
            result_desc=data.get("ResultDesc"),
            merchant_request_id=data.get("MerchantRequestID"),
            checkout_request_id=data.get("CheckoutRequestID", checkout_request_id),
            receipt_number=data.get("MpesaReceiptNumber"),
            raw=data,
        )

    async def initiate_disbursement(
        self,
        amount: int,
        payee_reference: str,
        remarks: str,
        occasion: str = "Refund",
        context: Optional[LogContext] = None,
    ) -> DisbursementAcknowledgement:
        """
        Send money from the business shortcode to a customer (B2C).

        Args:
            amount: Amount in whole shillings
            payee_reference: Payee MSISDN (any accepted format)
            remarks: Reason shown on the disbursement
            occasion: Optional occasion label
            context: Audit correlation details

        Returns:
            DisbursementAcknowledgement: Conversation ids for the pending payout

        Raises:
            ValidationError: Before any network call, on bad input
            GatewayError: Classified gateway failure
        """
        amount = validate_amount(amount)
        phone = validate_phone_number(payee_reference)
        if not self.settings.mpesa_b2c_result_url or not self.settings.mpesa_b2c_timeout_url:
            raise ValidationError("B2C callback URLs not configured")

        payload = {
            "InitiatorName": self.settings.mpesa_initiator_name,
            "SecurityCredential": self.settings.mpesa_security_credential,
            "CommandID": "BusinessPayment",
            "Amount": amount,
            "PartyA": self.settings.mpesa_shortcode,
            "PartyB": phone,
            "Remarks": (remarks or "Refund")[:100],
            "QueueTimeOutURL": self.settings.mpesa_b2c_timeout_url,
            "ResultURL": self.settings.mpesa_b2c_result_url,
            "Occasion": occasion,
        }

        logger.info(
            "initiating_b2c_payment",
            amount=amount,
            transaction_id=str(context.transaction_id) if context and context.transaction_id else None,
        )

        data = await self._call(
            "disbursement",
            InteractionType.DISBURSEMENT_REQUEST,
            "/mpesa/b2c/v1/paymentrequest",
            payload,
            context,
        )

        if str(data.get("ResponseCode")) != "0":
            raise GatewayBusinessError(
                f"B2C payment rejected: {data.get('ResponseDescription')}",
                error_code=str(data.get("ResponseCode")),
            )

        logger.info(
            "b2c_payment_acknowledged",
            conversation_id=data.get("ConversationID"),
            originator_conversation_id=data.get("OriginatorConversationID"),
        )

        return DisbursementAcknowledgement(
            conversation_id=data["ConversationID"],
            originator_conversation_id=data.get("OriginatorConversationID"),
            response_code=str(data.get("ResponseCode")),
            response_description=data.get("ResponseDescription"),
            request_payload=redact(payload),
            raw=data,
        )
