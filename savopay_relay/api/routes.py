"""
API routes for the payment relay.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from savopay_relay.core import (
    ReconciliationDriver,
    ReconciliationError,
    build_daily_report,
    daily_summary_csv,
    parse_report_date,
    payments_to_csv,
    supported_assets,
)
from savopay_relay.integrations import ForumPayClient, ProviderError
from savopay_relay.monitoring.health import HealthCheck
from savopay_relay.store import PaymentNotFoundError, PaymentStore, WebhookEventLog

from .schemas import (
    DailyReportResponse,
    ErrorResponse,
    HealthCheckResponse,
    PaymentResponse,
    ReceiptResponse,
    RecheckResponse,
    StartPaymentRequest,
    SupportedAssetsResponse,
    SweepResponse,
    WebhookEventsResponse,
)
from .security import require_admin

logger = structlog.get_logger(__name__)

# Documentation-range address used when the client IP is unknown
DEFAULT_PAYER_IP = "203.0.113.10"

FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")

def _errors(*codes: int) -> Dict[int, Dict[str, Any]]:
    return {code: {"model": ErrorResponse} for code in codes}


# Create routers
payment_router = APIRouter(tags=["payments"])
webhook_router = APIRouter(prefix="/api/forumpay", tags=["webhooks"])
admin_router = APIRouter(
    tags=["admin"], dependencies=[Depends(require_admin)], responses=_errors(401, 403)
)
meta_router = APIRouter(prefix="/meta", tags=["meta"])
monitoring_router = APIRouter(tags=["monitoring"])


def get_store(request: Request) -> PaymentStore:
    return request.app.state.store


def get_events(request: Request) -> WebhookEventLog:
    return request.app.state.events


def get_driver(request: Request) -> ReconciliationDriver:
    return request.app.state.driver


def get_provider(request: Request) -> ForumPayClient:
    return request.app.state.provider


def get_health_check(request: Request) -> HealthCheck:
    return request.app.state.health_check


async def _read_callback_body(request: Request) -> Any:
    """Decode a JSON or form body; unparseable text comes back as ``{"raw": text}``."""
    content_type = request.headers.get("content-type", "").lower()
    if content_type.startswith(FORM_CONTENT_TYPES):
        form = await request.form()
        return {key: value for key, value in form.items() if isinstance(value, str)}

    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        return await request.json()
    except ValueError:
        return {"raw": raw.decode("utf-8", "replace")}


@webhook_router.post(
    "/callback",
    summary="ForumPay webhook endpoint",
    responses=_errors(400, 403, 500),
    description="Receive a payment status signal and reconcile it against ForumPay",
)
async def forumpay_callback(
    request: Request,
    token: Optional[str] = Query(default=None, description="Shared webhook secret"),
    driver: ReconciliationDriver = Depends(get_driver),
) -> JSONResponse:
    """
    Handle ForumPay callbacks.

    Every delivery is written to the webhook audit log, whatever its outcome.
    """
    payload = await _read_callback_body(request)
    outcome = await driver.handle_callback(token, payload)
    return JSONResponse(status_code=outcome.http_status, content=outcome.body)


@payment_router.get(
    "/payments",
    response_model=List[PaymentResponse],
    summary="List payments",
    description="Most recently active payments first",
)
async def list_payments(
    limit: Optional[int] = Query(default=None, description="Maximum rows (clamped)"),
    store: PaymentStore = Depends(get_store),
) -> List[Dict[str, Any]]:
    """List stored payments."""
    return await store.list(limit)


@payment_router.get(
    "/payments.csv",
    summary="Export payments as CSV",
    response_class=Response,
)
async def export_payments_csv(
    limit: Optional[int] = Query(default=None, description="Maximum rows (clamped)"),
    store: PaymentStore = Depends(get_store),
) -> Response:
    """Export stored payments as CSV."""
    rows = await store.list(limit)
    return Response(
        content=payments_to_csv(rows),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="payments.csv"'},
    )


@payment_router.get(
    "/payments/{payment_id}",
    response_model=PaymentResponse,
    summary="Get payment",
    responses=_errors(404),
)
async def get_payment(
    payment_id: str,
    store: PaymentStore = Depends(get_store),
) -> Dict[str, Any]:
    """Get one stored payment."""
    payment = await store.get(payment_id)
    if payment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")
    return payment


@payment_router.post(
    "/payments/{payment_id}/recheck",
    response_model=RecheckResponse,
    summary="Recheck a payment",
    responses=_errors(404, 500),
    description="Ask ForumPay for the current status and store it",
)
async def recheck_payment(
    payment_id: str,
    driver: ReconciliationDriver = Depends(get_driver),
) -> Dict[str, Any]:
    """Manually recheck a payment."""
    try:
        return await driver.recheck(payment_id)

    except PaymentNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")

    except ReconciliationError as e:
        logger.error("api_recheck_error", payment_id=payment_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "recheck failed", "detail": str(e)},
        )


@payment_router.post(
    "/start-payment",
    summary="Start a payment",
    responses=_errors(502),
    description="Start a payment at ForumPay and record it as created",
)
async def start_payment(
    request: Request,
    body: Optional[StartPaymentRequest] = None,
    provider: ForumPayClient = Depends(get_provider),
    store: PaymentStore = Depends(get_store),
) -> Any:
    """Start a ForumPay payment and store the initial record."""
    body = body or StartPaymentRequest()
    now = datetime.now(timezone.utc)
    order_id = "SVP-" + now.strftime("%Y%m%dT%H%M%S%fZ")

    logger.info(
        "api_start_payment_request",
        order_id=order_id,
        invoice_amount=body.invoice_amount,
        invoice_currency=body.invoice_currency,
        currency=body.currency,
    )

    try:
        data = await provider.start_payment(
            order_id=order_id,
            invoice_amount=body.invoice_amount,
            invoice_currency=body.invoice_currency,
            currency=body.currency,
            payer_id=body.payer_id or "walk-in",
            payer_ip_address=request.client.host if request.client else DEFAULT_PAYER_IP,
        )
    except ProviderError as e:
        logger.error("api_start_payment_error", order_id=order_id, error=str(e))
        return JSONResponse(
            status_code=e.status_code or status.HTTP_502_BAD_GATEWAY,
            content={"error": "StartPayment failed", "detail": e.body or str(e)},
        )

    if not isinstance(data, dict) or not data.get("payment_id"):
        logger.error("api_start_payment_missing_id", order_id=order_id)
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={"error": "StartPayment returned no payment_id", "detail": data},
        )

    await store.upsert_on_create(
        {
            "payment_id": str(data["payment_id"]),
            "order_id": order_id,
            "pos_id": provider.settings.forumpay_pos_id,
            "address": data.get("address"),
            "currency": body.currency,
            "invoice_amount": body.invoice_amount,
            "invoice_currency": body.invoice_currency,
            "amount": data.get("amount"),
            "crypto_amount": data.get("amount"),
            "status": "Created",
            "state": "created",
            "confirmed": 0,
            "payer_id": body.payer_id or "walk-in",
            "customer_email": body.customer_email,
            "print_string": data.get("print_string"),
            "amount_exchange": data.get("amount_exchange"),
            "network_processing_fee": data.get("network_processing_fee"),
            "raw_json": data,
            "created_at": now,
        }
    )

    logger.info("api_start_payment_success", order_id=order_id, payment_id=data["payment_id"])
    return data


@payment_router.get(
    "/receipt/{payment_id}",
    response_model=ReceiptResponse,
    summary="Get receipt text",
    responses=_errors(404),
)
async def get_receipt(
    payment_id: str,
    store: PaymentStore = Depends(get_store),
    driver: ReconciliationDriver = Depends(get_driver),
) -> Dict[str, Any]:
    """Return the printable receipt, fetching it from ForumPay when missing."""
    payment = await store.get(payment_id)
    if payment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")

    print_string = await driver.ensure_print_string(payment)
    return {"payment_id": payment["payment_id"], "print_string": print_string}


def _report_day(value: Optional[str]):
    try:
        return parse_report_date(value)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="date must be YYYY-MM-DD"
        )


@admin_router.get(
    "/report/daily",
    response_model=DailyReportResponse,
    summary="Daily report",
    responses=_errors(400),
)
async def daily_report(
    date: Optional[str] = Query(default=None, description="Day (YYYY-MM-DD, UTC)"),
    store: PaymentStore = Depends(get_store),
) -> Dict[str, Any]:
    """Confirmed and total counts for one day, with the recent payment listing."""
    day = _report_day(date)
    return await build_daily_report(store, store, day)


@admin_router.get(
    "/report/daily.csv",
    summary="Daily report as CSV",
    response_class=Response,
)
async def daily_report_csv(
    date: Optional[str] = Query(default=None, description="Day (YYYY-MM-DD, UTC)"),
    store: PaymentStore = Depends(get_store),
) -> Response:
    """Daily summary as ``date,confirmed,total`` CSV."""
    day = _report_day(date)
    summary = await store.daily_summary(day)
    return Response(content=daily_summary_csv(day, summary), media_type="text/csv")


@admin_router.get(
    "/admin/webhook-events",
    response_model=WebhookEventsResponse,
    summary="Recent webhook deliveries",
)
async def list_webhook_events(
    limit: Optional[int] = Query(default=None, description="Maximum events (at most 500)"),
    events: WebhookEventLog = Depends(get_events),
) -> Dict[str, Any]:
    """List webhook audit entries, newest first."""
    return {"events": await events.list_recent(limit)}


@admin_router.post(
    "/admin/recheck-pending",
    response_model=SweepResponse,
    summary="Recheck pending payments",
    description="Run one pending sweep now",
)
async def recheck_pending(
    request: Request,
    driver: ReconciliationDriver = Depends(get_driver),
) -> Dict[str, Any]:
    """Run one pending sweep with the configured age and batch size."""
    settings = request.app.state.settings
    result = await driver.sweep_pending(settings.pending_min_age_seconds, settings.sweep_batch_size)
    logger.info("api_recheck_pending_completed", checked=result["checked"], failed=result["failed"])
    return {"ok": True, **result}


@meta_router.get(
    "/supported",
    response_model=SupportedAssetsResponse,
    summary="Supported assets",
)
async def get_supported_assets(request: Request) -> Dict[str, Any]:
    """Crypto currencies and networks the point-of-sale may offer."""
    return {"assets": supported_assets(request.app.state.settings.supported_assets)}


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
