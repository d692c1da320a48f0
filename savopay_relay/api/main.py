"""
Main FastAPI application.

Payment relay API with:
- ForumPay webhook intake and reconciliation
- Background pending sweep
- Request ID tracking and structured logging
- Prometheus metrics
"""
import asyncio
import time
import uuid
from contextlib import asynccontextmanager, suppress
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from savopay_relay.config import Settings, get_settings
from savopay_relay.core import ReconciliationDriver
from savopay_relay.database.connection import close_db, init_db
from savopay_relay.integrations import ForumPayClient
from savopay_relay.monitoring.health import HealthCheck
from savopay_relay.monitoring.logging import app_context, setup_logging
from savopay_relay.store import PaymentStore, StoreError, WebhookEventLog, create_stores
from savopay_relay.workers import PendingSweeper

from .routes import (
    admin_router,
    meta_router,
    monitoring_router,
    payment_router,
    webhook_router,
)

# Setup logging first
setup_logging()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Creates tables for the SQL backend, runs the pending sweeper and
    releases the provider client and database pool on shutdown.
    """
    settings: Settings = app.state.settings
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        store_backend=settings.store_backend,
        sandbox=settings.is_sandbox,
    )

    if app.state.owns_database:
        try:
            await init_db()
            logger.info("database_initialized")
        except Exception as e:
            logger.error("database_initialization_failed", error=str(e))
            raise

    sweep_task: Optional[asyncio.Task] = None
    if not settings.disable_auto_recheck:
        sweep_task = asyncio.create_task(app.state.sweeper.start())

    yield

    logger.info("application_shutdown")
    if sweep_task is not None:
        app.state.sweeper.stop()
        sweep_task.cancel()
        with suppress(asyncio.CancelledError):
            await sweep_task

    await app.state.provider.close()
    if app.state.owns_database:
        try:
            await close_db()
            logger.info("database_connections_closed")
        except Exception as e:
            logger.error("database_shutdown_error", error=str(e))


async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
    """
    Add request ID to all requests for tracing.

    Also adds timing information and structured logging context.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    start_time = time.time()

    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=time.time() - start_time,
        )
        return response

    except Exception as e:
        logger.error(
            "request_failed",
            error=str(e),
            duration_seconds=time.time() - start_time,
        )
        raise

    finally:
        structlog.contextvars.clear_contextvars()


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Render HTTP errors as ``{"error": ...}``."""
    if isinstance(exc.detail, dict):
        content = exc.detail
    else:
        content = {"error": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"error": "Invalid request", "detail": jsonable_encoder(exc.errors())},
    )


async def store_exception_handler(request: Request, exc: StoreError) -> JSONResponse:
    """Storage outages are reported as 503 so clients retry."""
    logger.error("store_unavailable", error=str(exc), path=request.url.path)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"error": "Store unavailable", "detail": str(exc)},
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled exceptions.
    """
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal error", "detail": str(exc)},
    )


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[PaymentStore] = None,
    events: Optional[WebhookEventLog] = None,
    provider: Optional[ForumPayClient] = None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Services are built eagerly and kept on ``app.state`` so tests can
    inject stores and a provider client without running the lifespan.

    Args:
        settings: Optional settings (defaults to environment settings)
        store: Optional payment store (defaults to ``settings.store_backend``)
        events: Optional webhook audit log
        provider: Optional ForumPay client
    """
    settings = settings or get_settings()
    app_context.bind(settings)
    owns_database = store is None and settings.store_backend == "sql"

    if store is None or events is None:
        default_store, default_events = create_stores(settings)
        if store is None:
            store = default_store
        if events is None:
            events = default_events
    if provider is None:
        provider = ForumPayClient(settings)
    driver = ReconciliationDriver(store, events, provider, settings)

    app = FastAPI(
        title="SavoPay Relay",
        description=(
            "Crypto payment relay for ForumPay: webhook intake, reconciliation, "
            "pending sweeps, receipts and daily reports."
        ),
        version="1.0.0",
        lifespan=lifespan,
        # API docs are not published in production
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
        openapi_url=None if settings.is_production else "/openapi.json",
    )

    app.state.settings = settings
    app.state.store = store
    app.state.events = events
    app.state.provider = provider
    app.state.driver = driver
    app.state.health_check = HealthCheck(store, events)
    app.state.sweeper = PendingSweeper(
        driver,
        interval_seconds=settings.recheck_interval_seconds,
        min_age_seconds=settings.pending_min_age_seconds,
        batch_size=settings.sweep_batch_size,
    )
    app.state.owns_database = owns_database

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(add_request_id_middleware)

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StoreError, store_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    app.include_router(webhook_router)
    app.include_router(payment_router)
    app.include_router(admin_router)
    app.include_router(meta_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": "1.0.0",
            "status": "operational",
            "environment": settings.app_env,
            "sandbox": settings.is_sandbox,
            "docs": None if settings.is_production else "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "savopay_relay.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
