"""
API routes for mobile-money payments.
"""
import time
from datetime import datetime
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from mpesa_payments.core.disbursement import DisbursementWorkflow
from mpesa_payments.core.errors import (
    PaymentInitiationError,
    RefundValidationError,
    TransactionNotFoundError,
    ValidationError,
)
from mpesa_payments.core.payment_service import PaymentIntent, PaymentService
from mpesa_payments.core.reconciliation import ReconciliationEngine
from mpesa_payments.core.transaction_log import CallerContext
from mpesa_payments.monitoring.health import HealthCheck

from .dependencies import (
    get_caller,
    get_disbursement_workflow,
    get_health_check,
    get_payment_service,
    get_reconciliation_engine,
    get_requester,
    require_admin,
)
from .schemas import (
    CallbackAck,
    CreatePaymentRequest,
    CreatePaymentResponse,
    HealthCheckResponse,
    PaymentListResponse,
    PaymentStatusResponse,
    RefundRequest,
    RefundResponse,
)

logger = structlog.get_logger(__name__)

payment_router = APIRouter(prefix="/payments", tags=["payments"])
gateway_router = APIRouter(prefix="/payments/gateway", tags=["gateway"])
monitoring_router = APIRouter(tags=["monitoring"])


def _initiation_error(e: PaymentInitiationError) -> HTTPException:
    """Map an initiation failure to an HTTP error."""
    if e.outcome_unknown:
        return HTTPException(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            detail={"message": str(e), "transaction_id": str(e.transaction_id)},
        )
    if e.transaction_id is not None:
        return HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={"message": str(e), "transaction_id": str(e.transaction_id)},
        )
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@payment_router.post(
    "",
    response_model=CreatePaymentResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Initiate a push payment",
    description="Prompt the payer's phone for a payment; the result arrives asynchronously",
)
async def create_payment(
    request: CreatePaymentRequest,
    payments: PaymentService = Depends(get_payment_service),
    caller: CallerContext = Depends(get_caller),
    requested_by: Optional[str] = Depends(get_requester),
) -> Dict[str, Any]:
    """Initiate a push payment and return its correlation ids."""
    start_time = time.time()
    intent = PaymentIntent(
        amount=request.amount,
        payer_reference=request.payer_reference,
        purpose=request.purpose,
        description=request.description,
        requested_by=requested_by,
        linked_entity_type=request.linked_entity_type,
        linked_entity_id=request.linked_entity_id,
    )

    try:
        result = await payments.initiate_payment(intent, caller)
    except ValidationError as e:
        logger.warning("api_create_payment_validation_error", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except PaymentInitiationError as e:
        logger.error(
            "api_create_payment_initiation_error",
            error=str(e),
            transaction_id=str(e.transaction_id) if e.transaction_id else None,
        )
        raise _initiation_error(e)

    logger.info(
        "api_create_payment_accepted",
        transaction_id=result["transaction_id"],
        duration_seconds=time.time() - start_time,
    )
    return result


@payment_router.get(
    "",
    response_model=PaymentListResponse,
    summary="List payments",
)
async def list_payments(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status_filter: Optional[str] = Query(None, alias="status"),
    method: Optional[str] = Query(None),
    purpose: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    search: Optional[str] = Query(None, max_length=100),
    requested_by: Optional[str] = Query(None),
    payments: PaymentService = Depends(get_payment_service),
) -> Dict[str, Any]:
    """Paginated listing filterable by status, method, purpose, dates and free text."""
    return await payments.list_payments(
        page=page,
        limit=limit,
        status=status_filter,
        method=method,
        purpose=purpose,
        start_date=start_date,
        end_date=end_date,
        search=search,
        requested_by=requested_by,
    )


@payment_router.get(
    "/analytics",
    summary="Payment analytics",
    description="Aggregate volume, success rates and gateway error analysis (privileged)",
)
async def payment_analytics(
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    payments: PaymentService = Depends(get_payment_service),
    admin: str = Depends(require_admin),
) -> Dict[str, Any]:
    """Aggregate statistics for the requested period."""
    return await payments.analytics(start_date, end_date)


@payment_router.get(
    "/{transaction_id}/status",
    response_model=PaymentStatusResponse,
    summary="Get payment status",
)
async def get_payment_status(
    transaction_id: str,
    payments: PaymentService = Depends(get_payment_service),
) -> Dict[str, Any]:
    """Current status, receipt and result description."""
    try:
        return await payments.get_status(transaction_id)
    except TransactionNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Transaction not found")


@payment_router.get(
    "/{transaction_id}/refunds",
    summary="List refunds issued against a payment",
)
async def list_payment_refunds(
    transaction_id: str,
    payments: PaymentService = Depends(get_payment_service),
    admin: str = Depends(require_admin),
) -> Dict[str, Any]:
    try:
        refunds = await payments.list_refunds(transaction_id)
    except TransactionNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Transaction not found")
    return {"transaction_id": transaction_id, "refunds": refunds}


@payment_router.post(
    "/{transaction_id}/refund",
    response_model=RefundResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Refund a payment",
    description="Full or partial refund via disbursement (privileged)",
)
async def refund_payment(
    transaction_id: str,
    request: RefundRequest,
    disbursements: DisbursementWorkflow = Depends(get_disbursement_workflow),
    caller: CallerContext = Depends(get_caller),
    admin: str = Depends(require_admin),
) -> Dict[str, Any]:
    """Refund all or part of a completed payment."""
    logger.info(
        "api_refund_request",
        transaction_id=transaction_id,
        amount=request.amount,
        requested_by=admin,
    )
    try:
        return await disbursements.refund(
            transaction_id,
            amount=request.amount,
            reason=request.reason,
            requested_by=admin,
            caller=caller,
        )
    except TransactionNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Transaction not found")
    except RefundValidationError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except PaymentInitiationError as e:
        logger.error("api_refund_initiation_error", error=str(e))
        raise _initiation_error(e)


async def _accept_callback(
    request: Request, engine: ReconciliationEngine, caller: CallerContext
) -> Dict[str, Any]:
    """
    Hand a gateway delivery to the reconciliation engine.

    The gateway always gets a 200 acknowledgement; duplicates and failures
    are handled internally, and a non-200 would only trigger redelivery.
    """
    body = await request.body()
    try:
        payload: Any = await request.json()
    except ValueError:
        payload = body.decode("utf-8", errors="replace")

    try:
        outcome = await engine.handle_gateway_callback(payload, caller)
        logger.info("api_callback_processed", path=request.url.path, outcome=outcome.value)
    except Exception as e:
        logger.error(
            "api_callback_processing_error",
            path=request.url.path,
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
    return CallbackAck().model_dump()


@gateway_router.post("/callback", response_model=CallbackAck, summary="Gateway callback")
async def gateway_callback(
    request: Request,
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
    caller: CallerContext = Depends(get_caller),
) -> Dict[str, Any]:
    """Push payment or disbursement result; the body shape selects which."""
    return await _accept_callback(request, engine, caller)


@gateway_router.post("/callback/stk", response_model=CallbackAck, summary="Push payment callback")
async def stk_callback(
    request: Request,
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
    caller: CallerContext = Depends(get_caller),
) -> Dict[str, Any]:
    return await _accept_callback(request, engine, caller)


@gateway_router.post("/callback/b2c", response_model=CallbackAck, summary="Disbursement result")
async def b2c_callback(
    request: Request,
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
    caller: CallerContext = Depends(get_caller),
) -> Dict[str, Any]:
    return await _accept_callback(request, engine, caller)


@gateway_router.post("/timeout", response_model=CallbackAck, summary="Disbursement queue timeout")
async def b2c_timeout(
    request: Request,
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
    caller: CallerContext = Depends(get_caller),
) -> Dict[str, Any]:
    """The gateway gave up on a queued disbursement; its body carries a failure result."""
    return await _accept_callback(request, engine, caller)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Overall health with individual dependency checks."""
    return await health_check.check_all()


@monitoring_router.get("/health/live", summary="Liveness probe")
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get("/health/ready", summary="Readiness probe")
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness probe; 503 while a dependency is unavailable."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get("/metrics", summary="Prometheus metrics")
async def prometheus_metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
