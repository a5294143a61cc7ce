"""Wiring of the payment components shared by the API and the supervisor worker."""
from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mpesa_payments.config import Settings, get_settings
from mpesa_payments.core.disbursement import DisbursementWorkflow
from mpesa_payments.core.payment_service import PaymentService
from mpesa_payments.core.reconciliation import ReconciliationEngine
from mpesa_payments.core.supervisor import RetryTimeoutSupervisor
from mpesa_payments.core.transaction_log import TransactionLog
from mpesa_payments.database.connection import get_session_factory
from mpesa_payments.database.repository import TransactionStore
from mpesa_payments.integrations.daraja_client import DarajaClient, TokenCache
from mpesa_payments.monitoring.health import HealthCheck


@dataclass
class ServiceContainer:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    transaction_log: TransactionLog
    gateway: DarajaClient
    engine: ReconciliationEngine
    payments: PaymentService
    disbursements: DisbursementWorkflow
    supervisor: RetryTimeoutSupervisor
    health: HealthCheck

    async def close(self) -> None:
        await self.gateway.close()


def build_services(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> ServiceContainer:
    """
    Build the component graph around one token cache and one session factory.

    Args:
        settings: Optional settings (defaults to environment settings)
        session_factory: Optional session factory (defaults to the global one)
        http_client: Optional HTTP client for the gateway

    Returns:
        ServiceContainer: Wired components
    """
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()
    store = TransactionStore()

    transaction_log = TransactionLog(session_factory, environment=settings.mpesa_environment)
    gateway = DarajaClient(
        transaction_log,
        settings=settings,
        token_cache=TokenCache(settings.token_expiry_buffer_seconds),
        http_client=http_client,
    )
    engine = ReconciliationEngine(session_factory, transaction_log, store=store)

    return ServiceContainer(
        settings=settings,
        session_factory=session_factory,
        transaction_log=transaction_log,
        gateway=gateway,
        engine=engine,
        payments=PaymentService(
            session_factory, gateway, engine, transaction_log, settings=settings, store=store
        ),
        disbursements=DisbursementWorkflow(
            session_factory, gateway, engine, settings=settings, store=store
        ),
        supervisor=RetryTimeoutSupervisor(
            session_factory, gateway, engine, settings=settings, store=store
        ),
        health=HealthCheck(session_factory, settings=settings),
    )
