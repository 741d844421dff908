"""
Main FastAPI application.

M-Pesa payment service with:
- STK Push initiation
- Idempotent callback reconciliation
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
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from paymentservice import __version__
from paymentservice.config import Settings, get_settings
from paymentservice.core.exceptions import PaymentError
from paymentservice.monitoring.logging import setup_logging

from .dependencies import ServiceContainer
from .routes import admin_router, callback_router, monitoring_router, payment_router

logger = structlog.get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    container: Optional[ServiceContainer] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Application settings (loaded from the environment if omitted)
        container: Prebuilt services, e.g. with mocked HTTP transports

    Returns:
        FastAPI: Configured application
    """
    if settings is None:
        settings = container.settings if container is not None else get_settings()
    setup_logging(settings)

    if container is None:
        container = ServiceContainer.build(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        """
        Application lifespan manager.

        Handles startup and shutdown events.
        """
        logger.info(
            "application_startup",
            app_name=settings.app_name,
            env=settings.app_env,
            sandbox=settings.is_sandbox,
        )

        try:
            await container.startup()
        except Exception as e:
            logger.error("application_startup_failed", error=str(e))
            raise

        yield

        logger.info("application_shutdown")
        try:
            await container.shutdown()
        except Exception as e:
            logger.error("application_shutdown_error", error=str(e))

    app = FastAPI(
        title="M-Pesa Payment Service",
        description=(
            "Initiates M-Pesa STK Push payments for orders and reconciles the "
            "gateway's asynchronous callbacks into order status updates."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.container = container
    app.state.settings = settings

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """
        Add request ID to all requests for tracing.

        Also adds timing information and structured logging context.
        """
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.perf_counter()

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
                duration_seconds=time.perf_counter() - start_time,
            )
            return response

        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                duration_seconds=time.perf_counter() - start_time,
            )
            raise

        finally:
            structlog.contextvars.clear_contextvars()

    @app.exception_handler(PaymentError)
    async def payment_error_handler(request: Request, exc: PaymentError) -> JSONResponse:
        """Render domain errors as {"error", "detail"} with the error's status code."""
        log = logger.warning if exc.status_code < 500 else logger.error
        log(
            "payment_error",
            error_code=exc.error_code,
            error=exc.message,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.message, "detail": jsonable_encoder(exc.detail)},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Body schema violations are plain 400s."""
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": "Invalid request format",
                "detail": jsonable_encoder(exc.errors()),
            },
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
                "detail": "An unexpected error occurred. Please try again later.",
            },
        )

    app.include_router(payment_router)
    app.include_router(callback_router)
    app.include_router(admin_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": __version__,
            "status": "operational",
            "environment": settings.app_env,
            "sandbox": settings.is_sandbox,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "paymentservice.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
