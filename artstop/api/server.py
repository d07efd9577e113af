"""
ArtStop Order Service
=====================
FastAPI application with:
- Payments: gateway order creation, signature verification, refunds
- Gateway webhooks (signature-authenticated)
- Customer order history, cancellation and tracking
- Admin order management
- Health monitoring

pip install fastapi uvicorn pydantic stripe structlog asyncpg PyJWT
"""

import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from artstop import __version__
from artstop.api.responses import send_error
from artstop.api.routes import admin, orders, payments, webhooks
from artstop.config import Settings, configure_logging
from artstop.errors import ArtStopError
from artstop.pipeline.gateway_client import IPaymentGatewayClient, StripeGatewayClient
from artstop.pipeline.order_lifecycle import OrderLifecycle
from artstop.pipeline.order_queries import OrderQueries
from artstop.pipeline.webhooks import WebhookProcessor
from artstop.storage.base import Store
from artstop.storage.memory import InMemoryStore
from artstop.storage.postgres import PostgresStore

logger = structlog.get_logger().bind(component="server")

START_TIME = datetime.now(timezone.utc)


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    uptime_seconds: float


def _build_store(settings: Settings) -> Store:
    if settings.database_url:
        return PostgresStore(settings)
    logger.warning("using_in_memory_store", reason="DATABASE_URL not set")
    return InMemoryStore()


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[Store] = None,
    gateway: Optional[IPaymentGatewayClient] = None,
) -> FastAPI:
    """Wire settings, store, gateway and services into a FastAPI app."""
    settings = settings or Settings.from_env()
    configure_logging(settings)

    store = store or _build_store(settings)
    gateway = gateway or StripeGatewayClient(settings)
    lifecycle = OrderLifecycle(store, gateway, settings)

    # =========================================================================
    # LIFESPAN MANAGEMENT
    # =========================================================================

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("server_starting", version=__version__, env=settings.env)
        await store.initialize()
        yield
        logger.info("server_shutting_down")
        await store.close()

    app = FastAPI(
        title="ArtStop Order Service",
        description="Order and payment lifecycle for the ArtStop storefront",
        version=__version__,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.store = store
    app.state.lifecycle = lifecycle
    app.state.queries = OrderQueries(store)
    app.state.webhooks = WebhookProcessor(lifecycle, settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # =========================================================================
    # MIDDLEWARE
    # =========================================================================

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing and request ID headers"""
        request_id = str(uuid4())[:8]
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start = time.perf_counter()

        response = await call_next(request)

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration, 2),
        )
        return response

    # =========================================================================
    # ERROR HANDLERS
    # =========================================================================

    @app.exception_handler(ArtStopError)
    async def handle_service_error(request: Request, exc: ArtStopError):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log("request_failed", path=request.url.path, error_type=type(exc).__name__, error=exc.message)
        return send_error(exc.message, exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        errors = [
            {
                "field": ".".join(str(part) for part in err["loc"][1:]) or str(err["loc"][0]),
                "message": err["msg"],
            }
            for err in exc.errors()
        ]
        logger.warning("request_validation_failed", path=request.url.path, errors=len(errors))
        return send_error("Validation failed", 400, errors=errors)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            error_type=type(exc).__name__,
            error=str(exc),
            exc_info=exc,
        )
        return send_error("Internal server error", 500)

    # =========================================================================
    # ROUTES
    # =========================================================================

    app.include_router(payments.router)
    app.include_router(webhooks.router)
    app.include_router(orders.router)
    app.include_router(admin.router)

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        uptime = (datetime.now(timezone.utc) - START_TIME).total_seconds()
        return HealthResponse(status="healthy", version=__version__, uptime_seconds=uptime)

    return app


# =============================================================================
# MAIN
# =============================================================================

def main():
    settings = Settings.from_env()
    uvicorn.run(
        "artstop.api.server:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
