"""
Main FastAPI application.

Subscription billing API:
- Cardcom hosted payment sessions, status tracking and webhooks
- Subscription lifecycle and admin repair endpoints
- Request ID propagation into structured logs
- Health checks and Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import get_settings
from database.connection import close_db, init_db
from integrations.cardcom_client import CardcomError
from monitoring.logging import setup_logging

from .routes import (
    admin_router,
    cardcom_client,
    monitoring_router,
    payment_router,
    subscription_router,
    webhook_handler,
    webhook_router,
)

setup_logging()
logger = structlog.get_logger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """Create tables on startup; close the gateway, Redis and database on shutdown."""
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        terminal=settings.cardcom_terminal_number,
        webhook_url=settings.webhook_url,
    )

    try:
        await init_db()
        logger.info("database_initialized")
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    yield

    logger.info("application_shutdown")
    for name, close in (
        ("cardcom_client", cardcom_client.close),
        ("webhook_redis", webhook_handler.close),
        ("database", close_db),
    ):
        try:
            await close()
        except Exception as e:
            logger.error("shutdown_close_failed", resource=name, error=str(e))
    logger.info("connections_closed")


app = FastAPI(
    title="Subscription Billing",
    description=(
        "Trading journal subscriptions billed through Cardcom hosted payment pages: "
        "payment sessions, realtime status tracking, webhook settlement, "
        "recurring token charges, grace periods and subscription repair."
    ),
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next: Any) -> Response:
    """
    Bind a request ID to every log line of the request.

    The caller's ``X-Request-ID`` is reused when present, so a checkout can
    be followed from the front end through status polls and the webhook.
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
    except Exception as e:
        logger.error(
            "request_failed",
            error=str(e),
            duration_seconds=time.time() - start_time,
        )
        raise
    else:
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=time.time() - start_time,
        )
        return response
    finally:
        structlog.contextvars.clear_contextvars()


@app.exception_handler(CardcomError)
async def cardcom_exception_handler(request: Request, exc: CardcomError) -> JSONResponse:
    """Gateway failures that escaped a route become 502s."""
    logger.error(
        "cardcom_error_unhandled",
        error=str(exc),
        error_type=exc.error_type.value,
        response_code=exc.response_code,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={
            "error": "Payment gateway error",
            "error_type": exc.error_type.value,
            "retryable": exc.retryable,
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
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


app.include_router(payment_router)
app.include_router(webhook_router)
app.include_router(subscription_router)
app.include_router(admin_router)
app.include_router(monitoring_router)


@app.get("/", tags=["root"])
async def root() -> dict[str, Any]:
    """Service information and the gateway circuit state."""
    return {
        "service": settings.app_name,
        "version": "1.0.0",
        "environment": settings.app_env,
        "cardcom_circuit": cardcom_client.circuit_breaker.state,
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics",
    }


def main() -> None:
    import uvicorn

    uvicorn.run(
        "api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
