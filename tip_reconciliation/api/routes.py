"""
API routes for tip payments, staff payouts and provider callbacks.
"""
import json
import time
import uuid
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from tip_reconciliation.bootstrap import Services
from tip_reconciliation.core.domain import TransactionKind, TransactionState
from tip_reconciliation.core.errors import (
    CallbackValidationError,
    DuplicateCorrelation,
    TransactionNotFound,
    ValidationError,
)
from tip_reconciliation.core.gateway import GatewayError, GatewayUnreachable
from tip_reconciliation.core.ingestion import ACKNOWLEDGEMENT
from tip_reconciliation.core.payout_processor import PayoutRequest
from tip_reconciliation.integrations import result_codes
from tip_reconciliation.integrations.callback_payloads import CallbackKind

from .deps import get_services
from .schemas import (
    CallbackAck,
    CreateTransactionRequest,
    CreateTransactionResponse,
    HealthCheckResponse,
    PayoutBatchRequest,
    PayoutBatchResponse,
    TransactionStatusResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
transaction_router = APIRouter(prefix="/transactions", tags=["transactions"])
payout_router = APIRouter(prefix="/payouts", tags=["payouts"])
webhook_router = APIRouter(prefix="/webhooks/mpesa", tags=["webhooks"])
monitoring_router = APIRouter(tags=["monitoring"])


@transaction_router.post(
    "",
    response_model=CreateTransactionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a transaction",
    description="Start an STK push for a tip or a B2C payout to a staff member",
)
async def create_transaction(
    request: CreateTransactionRequest,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """
    Start a tip payment or payout.

    Returns once the provider has acknowledged the request. The final result
    arrives later through a callback or the status endpoint.
    """
    start_time = time.time()
    logger.info(
        "api_create_transaction_request",
        kind=request.kind.value,
        amount=request.amount,
    )

    try:
        if request.kind == TransactionKind.PAYOUT:
            initiated = await services.payouts.initiate(
                PayoutRequest(
                    amount=request.amount,
                    phone_number=request.counterparty_ref,
                    reference=request.reference or "",
                    staff_name=request.staff_name or "",
                    remarks=request.remarks or "",
                    occasion=request.occasion or "",
                    metadata=request.account_metadata,
                )
            )
        else:
            initiated = await services.payments.initiate(
                amount=request.amount,
                phone_number=request.counterparty_ref,
                metadata=request.account_metadata,
            )

    except ValidationError as e:
        logger.warning("api_create_transaction_validation_error", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    except DuplicateCorrelation as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    except GatewayUnreachable as e:
        logger.error("api_create_transaction_provider_unreachable", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider is unavailable. Please try again later.",
        )

    except GatewayError as e:
        logger.warning("api_create_transaction_provider_rejected", error=str(e))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    logger.info(
        "api_create_transaction_success",
        transaction_id=str(initiated.transaction_id),
        correlation_id=initiated.correlation_id,
        duration_seconds=time.time() - start_time,
    )
    return {
        "transaction_id": str(initiated.transaction_id),
        "correlation_id": initiated.correlation_id,
        "state": initiated.transaction.state.value,
        "acceptance_message": initiated.acceptance_message,
    }


@transaction_router.get(
    "/{transaction_id}/status",
    response_model=TransactionStatusResponse,
    summary="Get transaction status",
    description="Reconcile a transaction against the provider and return its current state",
)
async def get_transaction_status(
    transaction_id: uuid.UUID,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    try:
        view = await services.reconciler.reconcile(transaction_id)
    except TransactionNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Transaction not found")

    result = view.get("provider_result")
    if result is not None:
        code = result["result_code"]
        if code is None and view["state"] == TransactionState.TIMED_OUT.value:
            code = result_codes.USER_UNREACHABLE
        view["customer_message"] = result_codes.user_message(code)
    return view


@payout_router.post(
    "/batch",
    response_model=PayoutBatchResponse,
    summary="Send a payout batch",
    description="Send staff payouts one after another; a failed item does not stop the batch",
)
async def create_payout_batch(
    request: PayoutBatchRequest,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    batch = await services.payouts.process_batch(
        [
            PayoutRequest(
                amount=item.amount,
                phone_number=item.phone_number,
                reference=item.reference or "",
                staff_name=item.staff_name or "",
                remarks=item.remarks or "",
                occasion=item.occasion or "",
                metadata=item.account_metadata,
            )
            for item in request.payouts
        ]
    )
    return {
        "success": batch.success,
        "total_payouts": batch.total_payouts,
        "successful_payouts": batch.successful_payouts,
        "failed_payouts": batch.failed_payouts,
        "total_amount": batch.total_amount,
        "results": [
            {
                "reference": r.reference,
                "amount": r.amount,
                "success": r.success,
                "transaction_id": str(r.transaction_id) if r.transaction_id else None,
                "correlation_id": r.correlation_id,
                "error": r.error,
            }
            for r in batch.results
        ],
    }


async def _read_body(request: Request) -> Any:
    raw = await request.body()
    try:
        return json.loads(raw)
    except ValueError:
        return None


async def _ingest_result(request: Request, services: Services, kind: CallbackKind) -> Dict[str, Any]:
    """Result callbacks: malformed bodies get a 400, everything else is acknowledged."""
    body = await _read_body(request)
    try:
        await services.ingestion.ingest(kind, body)
    except CallbackValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return ACKNOWLEDGEMENT


async def _ingest_timeout(request: Request, services: Services, kind: CallbackKind) -> Dict[str, Any]:
    """Timeout callbacks are acknowledged whatever their shape."""
    body = await _read_body(request)
    try:
        await services.ingestion.ingest(kind, body)
    except CallbackValidationError:
        # Already logged and recorded by ingestion
        pass
    return ACKNOWLEDGEMENT


@webhook_router.post(
    "/callback",
    response_model=CallbackAck,
    summary="STK push result callback",
)
async def stk_callback(
    request: Request,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await _ingest_result(request, services, CallbackKind.PUSH_RESULT)


@webhook_router.post(
    "/timeout",
    response_model=CallbackAck,
    summary="STK push timeout callback",
)
async def stk_timeout(
    request: Request,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await _ingest_timeout(request, services, CallbackKind.PUSH_TIMEOUT)


@webhook_router.post(
    "/b2c/result",
    response_model=CallbackAck,
    summary="B2C payout result callback",
)
async def b2c_result(
    request: Request,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await _ingest_result(request, services, CallbackKind.PAYOUT_RESULT)


@webhook_router.post(
    "/b2c/timeout",
    response_model=CallbackAck,
    summary="B2C payout queue timeout callback",
)
async def b2c_timeout(
    request: Request,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await _ingest_timeout(request, services, CallbackKind.PAYOUT_TIMEOUT)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await services.health.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    result = await services.health.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
