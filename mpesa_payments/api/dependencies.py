"""FastAPI dependencies resolving the shared services and request identity."""
import secrets
from typing import Optional

from fastapi import Depends, HTTPException, Request, status

from mpesa_payments.core.disbursement import DisbursementWorkflow
from mpesa_payments.core.payment_service import PaymentService
from mpesa_payments.core.reconciliation import ReconciliationEngine
from mpesa_payments.core.services import ServiceContainer
from mpesa_payments.core.transaction_log import CallerContext
from mpesa_payments.monitoring.health import HealthCheck


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def get_payment_service(services: ServiceContainer = Depends(get_services)) -> PaymentService:
    return services.payments


def get_disbursement_workflow(
    services: ServiceContainer = Depends(get_services),
) -> DisbursementWorkflow:
    return services.disbursements


def get_reconciliation_engine(
    services: ServiceContainer = Depends(get_services),
) -> ReconciliationEngine:
    return services.engine


def get_health_check(services: ServiceContainer = Depends(get_services)) -> HealthCheck:
    return services.health


def get_caller(request: Request) -> CallerContext:
    """Network metadata recorded with gateway interactions."""
    forwarded = request.headers.get("x-forwarded-for")
    client_ip = (
        forwarded.split(",")[0].strip()
        if forwarded
        else (request.client.host if request.client else None)
    )
    return CallerContext(client_ip=client_ip, user_agent=request.headers.get("user-agent"))


def get_requester(request: Request) -> Optional[str]:
    """Requester identity forwarded by the calling application."""
    return request.headers.get("x-user-id")


def require_admin(
    request: Request, services: ServiceContainer = Depends(get_services)
) -> str:
    """
    Guard for privileged endpoints.

    Raises:
        HTTPException: 403 if no admin key is configured or the header does not match
    """
    expected = services.settings.admin_api_key
    provided = request.headers.get(services.settings.admin_api_key_header)
    if not expected or not provided or not secrets.compare_digest(provided, expected):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return request.headers.get("x-user-id") or "admin"
