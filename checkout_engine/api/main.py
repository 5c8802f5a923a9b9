"""
Main FastAPI application.

Checkout API with:
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

from checkout_engine import __version__
from checkout_engine.config import get_settings
from checkout_engine.database.connection import close_db, init_db
from checkout_engine.domain.errors import CheckoutError
from checkout_engine.monitoring.logging import setup_logging
from checkout_engine.services import Services, build_services

from .routes import admin_router, cart_router, monitoring_router, order_router, webhook_router

logger = structlog.get_logger(__name__)


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build the application.

    Args:
        services: Pre-built services (tests); built from settings on startup
            when omitted

    Returns:
        FastAPI: The configured application
    """
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        """
        Application lifespan manager.

        Handles startup and shutdown events.
        """
        if services is not None:
            yield
            return

        # Startup
        setup_logging("api")
        logger.info(
            "application_startup",
            app_name=settings.app_name,
            env=settings.app_env,
            payment_backend=settings.payment_backend,
            test_mode=settings.is_test_mode,
        )

        try:
            await init_db()
            logger.info("database_initialized")
        except Exception as e:
            logger.error("database_initialization_failed", error=str(e))
            raise

        app.state.services = build_services(settings)

        yield

        # Shutdown
        logger.info("application_shutdown")
        try:
            await app.state.services.close()
            await close_db()
            logger.info("connections_closed")
        except Exception as e:
            logger.error("shutdown_error", error=str(e))

    app = FastAPI(
        title="Checkout Engine",
        description=(
            "Inventory reservation and checkout service. Features: soft cart holds with "
            "expiry, oversell-safe order creation with compensation, Stripe or broker "
            "payments, and idempotent payment reconciliation."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    if services is not None:
        app.state.services = services

    # CORS configuration
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

        Honours an incoming X-Request-ID so traces join up across services.
        """
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
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

    @app.exception_handler(CheckoutError)
    async def checkout_error_handler(request: Request, exc: CheckoutError) -> JSONResponse:
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            "checkout_error",
            error=exc.error_name,
            message=exc.message,
            status_code=exc.status_code,
            path=request.url.path,
            **exc.context,
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = exc.errors()
        message = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'][1:])}: {error['msg']}"
            for error in errors
        )
        logger.warning("request_validation_failed", path=request.url.path, message=message)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": "InvalidRequest", "message": message},
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
                "success": False,
                "error": "InternalError",
                "message": "An unexpected error occurred. Please try again later.",
            },
        )

    # Include routers
    app.include_router(cart_router)
    app.include_router(order_router)
    app.include_router(webhook_router)
    app.include_router(admin_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": "checkout-engine",
            "version": __version__,
            "status": "operational",
            "environment": settings.app_env,
            "payment_backend": settings.payment_backend,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


app = create_app()


def run() -> None:
    """Console entry point."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "checkout_engine.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
