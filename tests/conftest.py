"""
Pytest configuration and fixtures.
"""
import uuid
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from mpesa_payments.config import Settings
from mpesa_payments.core.services import ServiceContainer, build_services
from mpesa_payments.core.transaction_log import TransactionLog
from mpesa_payments.database.connection import create_engine_from_url, init_db, make_session_factory
from mpesa_payments.integrations.daraja_client import DarajaClient, TokenCache

GATEWAY_URL = "https://daraja.test"


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests without external services")
    config.addinivalue_line("markers", "race: concurrent callback/status-query scenarios")
    config.addinivalue_line("markers", "integration: end-to-end flows through the HTTP API")


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        mpesa_environment="sandbox",
        mpesa_base_url=GATEWAY_URL,
        mpesa_consumer_key="test-consumer-key",
        mpesa_consumer_secret="test-consumer-secret",
        mpesa_passkey="test-passkey",
        mpesa_shortcode="174379",
        mpesa_security_credential="test-credential",
        mpesa_stk_callback_url="https://payments.test/payments/gateway/callback/stk",
        mpesa_b2c_result_url="https://payments.test/payments/gateway/callback/b2c",
        mpesa_b2c_timeout_url="https://payments.test/payments/gateway/timeout",
        admin_api_key="test-admin-key",
        app_name="mpesa-payments-test",
        app_env="test",
        log_level="DEBUG",
        staleness_threshold_seconds=30,
        max_retries=3,
        retry_base_delay_seconds=1,
        retry_max_delay_seconds=10,
    )


@pytest_asyncio.fixture
async def db_engine(tmp_path: Any) -> AsyncGenerator[AsyncEngine, Any]:
    """File-backed SQLite database, one per test."""
    engine = create_engine_from_url(
        f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )

    # Take the write lock at BEGIN so concurrent writers queue instead of
    # failing to upgrade a shared lock.
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(db_engine)


@pytest.fixture
def transaction_log(
    session_factory: async_sessionmaker[AsyncSession], test_settings: Settings
) -> TransactionLog:
    return TransactionLog(session_factory, environment=test_settings.mpesa_environment)


class FakeDaraja:
    """
    In-memory stand-in for the Daraja API, served through httpx.MockTransport.

    Each endpoint answer may be a JSON dict (200), an httpx.Response, an
    exception instance to raise, or a callable taking the request.
    """

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.token_requests = 0
        self.token_response: Any = {"access_token": "token-1", "expires_in": "3599"}
        self.push_response: Any = None
        self.query_response: Any = None
        self.b2c_response: Any = None

    def accept_push(self, checkout_request_id: Optional[str] = None) -> Dict[str, Any]:
        checkout_request_id = checkout_request_id or f"ws_CO_{uuid.uuid4().hex[:16]}"
        self.push_response = {
            "MerchantRequestID": f"mr-{uuid.uuid4().hex[:10]}",
            "CheckoutRequestID": checkout_request_id,
            "ResponseCode": "0",
            "ResponseDescription": "Success. Request accepted for processing",
            "CustomerMessage": "Success. Request accepted for processing",
        }
        return self.push_response

    def accept_b2c(self, conversation_id: Optional[str] = None) -> Dict[str, Any]:
        conversation_id = conversation_id or f"AG_{uuid.uuid4().hex[:16]}"
        self.b2c_response = {
            "ConversationID": conversation_id,
            "OriginatorConversationID": f"oc-{uuid.uuid4().hex[:10]}",
            "ResponseCode": "0",
            "ResponseDescription": "Accept the service request successfully.",
        }
        return self.b2c_response

    def calls_to(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    @staticmethod
    def _answer(answer: Any, request: httpx.Request) -> httpx.Response:
        if callable(answer) and not isinstance(answer, httpx.Response):
            answer = answer(request)
        if isinstance(answer, Exception):
            raise answer
        if isinstance(answer, httpx.Response):
            return answer
        if answer is None:
            return httpx.Response(500, json={"errorMessage": "no answer configured"})
        return httpx.Response(200, json=answer)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/oauth/v1/generate":
            self.token_requests += 1
            return self._answer(self.token_response, request)
        if path == "/mpesa/stkpush/v1/processrequest":
            return self._answer(self.push_response, request)
        if path == "/mpesa/stkpushquery/v1/query":
            return self._answer(self.query_response, request)
        if path == "/mpesa/b2c/v1/paymentrequest":
            return self._answer(self.b2c_response, request)
        return httpx.Response(404, json={"errorMessage": f"unknown path {path}"})


@pytest.fixture
def fake_daraja() -> FakeDaraja:
    return FakeDaraja()


@pytest_asyncio.fixture
async def http_client(fake_daraja: FakeDaraja) -> AsyncGenerator[httpx.AsyncClient, Any]:
    async with httpx.AsyncClient(
        base_url=GATEWAY_URL, transport=httpx.MockTransport(fake_daraja)
    ) as client:
        yield client


@pytest.fixture
def gateway(
    transaction_log: TransactionLog,
    test_settings: Settings,
    http_client: httpx.AsyncClient,
) -> DarajaClient:
    return DarajaClient(
        transaction_log,
        settings=test_settings,
        token_cache=TokenCache(test_settings.token_expiry_buffer_seconds),
        http_client=http_client,
    )


@pytest.fixture
def services(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    http_client: httpx.AsyncClient,
) -> ServiceContainer:
    """Fully wired components against the fake gateway and test database."""
    return build_services(test_settings, session_factory, http_client=http_client)


def stk_callback(
    checkout_request_id: str,
    result_code: int = 0,
    receipt: str = "QKJ7ABC123",
    amount: int = 1000,
) -> Dict[str, Any]:
    """Gateway STK callback body."""
    callback: Dict[str, Any] = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully."
        if result_code == 0
        else "Request cancelled by user",
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "TransactionDate", "Value": 20261018102115},
                {"Name": "PhoneNumber", "Value": 254712345678},
            ]
        }
    return {"Body": {"stkCallback": callback}}


def b2c_result(
    conversation_id: str,
    result_code: int = 0,
    receipt: str = "QKL1REF456",
    amount: int = 1000,
) -> Dict[str, Any]:
    """Gateway B2C result body."""
    result: Dict[str, Any] = {
        "ResultType": 0,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully."
        if result_code == 0
        else "The balance is insufficient for the transaction.",
        "OriginatorConversationID": "10571-7910404-1",
        "ConversationID": conversation_id,
        "TransactionID": receipt,
    }
    if result_code == 0:
        result["ResultParameters"] = {
            "ResultParameter": [
                {"Key": "TransactionAmount", "Value": amount},
                {"Key": "TransactionReceipt", "Value": receipt},
                {"Key": "ReceiverPartyPublicName", "Value": "254712345678 - Jane Doe"},
                {"Key": "TransactionCompletedDateTime", "Value": "18.10.2026 10:21:15"},
            ]
        }
    return {"Result": result}


@pytest.fixture
def make_stk_callback() -> Callable[..., Dict[str, Any]]:
    return stk_callback


@pytest.fixture
def make_b2c_result() -> Callable[..., Dict[str, Any]]:
    return b2c_result


@pytest.fixture
def sample_payment_data() -> Dict[str, Any]:
    """Sample payment request data."""
    return {
        "amount": 1000,
        "payer_reference": "0712345678",
        "purpose": "consultation_fee",
        "description": "Consultation fee for appointment 42",
        "linked_entity_type": "appointment",
        "linked_entity_id": "42",
    }
