"""
Main FastAPI application.

Tip payment and payout reconciliation API with:
- CORS configuration
- Error handling
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tip_reconciliation import __version__
from tip_reconciliation.bootstrap import Services, build_sql_services
from tip_reconciliation.config import get_settings
from tip_reconciliation.monitoring.logging import setup_logging

from .routes import monitoring_router, payout_router, transaction_router, webhook_router

logger = structlog.get_logger(__name__)


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build the application.

    Args:
        services: Prebuilt services (tests); when None the lifespan builds
            database-backed services and closes them on shutdown.
    """
    settings = services.settings if services is not None else get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        setup_logging(settings)
        logger.info(
            "application_startup",
            app_name=settings.app_name,
            env=settings.app_env,
            mpesa_environment=settings.mpesa_environment,
        )

        owned = services is None
        if owned:
            try:
                app.state.services = await build_sql_services(settings)
            except Exception as e:
                logger.error("services_initialization_failed", error=str(e))
                raise
        else:
            app.state.services = services

        yield

        logger.info("application_shutdown")
        if owned:
            try:
                await app.state.services.close()
            except Exception as e:
                logger.error("services_shutdown_error", error=str(e))
        else:
            await app.state.services.drain()

    app = FastAPI(
        title="Tip Reconciliation Service",
        description=(
            "Tip payments and staff payouts over M-Pesa. Reconciles STK push and B2C "
            "acknowledgements, provider callbacks and status queries into one "
            "idempotent transaction record."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # Available before the lifespan runs (ASGI transports without lifespan support)
    if services is not None:
        app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
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

        logger.info(
            "request_started",
            client_host=request.client.host if request.client else None,
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

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        logger.warning("request_validation_failed", path=request.url.path, errors=len(exc.errors()))
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": "Invalid request", "errors": jsonable_errors(exc)},
        )

    @app.exception_handler(Exception)
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
            content={
                "error": "Internal server error",
                "message": "An unexpected error occurred. Please try again later.",
            },
        )

    app.include_router(transaction_router)
    app.include_router(payout_router)
    app.include_router(webhook_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": "tip-reconciliation",
            "version": __version__,
            "status": "operational",
            "environment": settings.app_env,
            "mpesa_environment": settings.mpesa_environment,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", ""), "type": error.get("type", "")}
        for error in exc.errors()
    ]


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "tip_reconciliation.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_config=None,
    )
