"""Entitlement sync service - FastAPI application."""

import asyncio
import contextlib
import os
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from entitlement_sync.cache import close_cache_client
from entitlement_sync.config import settings
from entitlement_sync.database import close_database, init_database
from entitlement_sync.dependencies import get_reconciler, get_webhook_router
from entitlement_sync.middleware import AuthMiddleware, RequestIDMiddleware
from entitlement_sync.middleware.request_id import get_request_id
from entitlement_sync.observability import (
    SentryConfig,
    capture_critical_error,
    configure_logging,
    flush,
    init_sentry,
)
from entitlement_sync.routes import billing, webhooks

SERVICE_NAME = "entitlement-sync"

logger = structlog.get_logger()


async def _global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Return a generic 500 without leaking internal details."""
    error_id = str(uuid.uuid4())[:8]
    logger.exception(
        "Unhandled exception",
        error_id=error_id,
        request_id=get_request_id(request),
        path=str(request.url.path),
        method=request.method,
        exc_type=type(exc).__name__,
    )
    return JSONResponse(
        status_code=500,
        content={
            "detail": "An internal error occurred. Please try again later.",
            "error_id": error_id,
        },
    )


class _BackgroundTasks:
    """Container for background tasks to avoid global statement."""

    reconciliation: asyncio.Task[None] | None = None


_tasks = _BackgroundTasks()


def _task_exception_callback(task: asyncio.Task[None], task_name: str) -> None:
    """Log exceptions from background tasks as soon as they finish."""
    try:
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task failed with exception",
                task_name=task_name,
                exc_info=exc,
            )
    except asyncio.CancelledError:
        # Expected during shutdown
        pass


def create_monitored_task(coro: Any, name: str) -> asyncio.Task[None]:
    """Create an asyncio task with exception monitoring."""
    task = asyncio.create_task(coro)
    task.add_done_callback(lambda t: _task_exception_callback(t, name))
    return task


async def reconciliation_background_task() -> None:
    """Run the billing reconciliation sweep every RECONCILIATION_INTERVAL_SECONDS."""
    while True:
        try:
            await asyncio.sleep(settings.RECONCILIATION_INTERVAL_SECONDS)
            report = await get_reconciler().run()
            if report.mismatches or report.errors:
                logger.info(
                    "Scheduled reconciliation finished with findings",
                    mismatches=report.mismatches,
                    fixed=report.fixed,
                    errors=report.errors,
                )
        except asyncio.CancelledError:
            logger.info("Reconciliation task cancelled")
            break
        except Exception as e:
            capture_critical_error(
                "Billing reconciliation crashed",
                error=e,
                context={"route": "reconciliation_background_task"},
            )
            await asyncio.sleep(300)  # Wait 5 minutes before retrying


def _init_sentry() -> None:
    sentry_config = SentryConfig(
        service_name=SERVICE_NAME,
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        release=f"{SERVICE_NAME}@{settings.VERSION}",
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        profiles_sample_rate=settings.SENTRY_PROFILES_SAMPLE_RATE,
    )
    init_sentry(SERVICE_NAME, sentry_config)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    _init_sentry()
    configure_logging(SERVICE_NAME, settings.LOG_LEVEL)
    logger.info("Starting entitlement sync", version=settings.VERSION)

    await init_database()
    logger.info(
        "Webhook handlers registered",
        event_types=get_webhook_router().handled_event_types,
    )

    if settings.RECONCILIATION_ENABLED:
        _tasks.reconciliation = create_monitored_task(
            reconciliation_background_task(), "billing_reconciliation"
        )
        logger.info(
            "Reconciliation background task started",
            interval_seconds=settings.RECONCILIATION_INTERVAL_SECONDS,
        )

    yield

    logger.info("Shutting down entitlement sync")

    if _tasks.reconciliation:
        _tasks.reconciliation.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _tasks.reconciliation
        logger.info("Reconciliation background task stopped")

    await close_database()
    await close_cache_client()
    flush()


app = FastAPI(
    title="Entitlement Sync",
    description="Keeps user entitlements consistent with Stripe subscriptions.",
    version=settings.VERSION,
    lifespan=lifespan,
)

app.add_exception_handler(Exception, _global_exception_handler)

# First added is last executed
app.add_middleware(AuthMiddleware)
app.add_middleware(RequestIDMiddleware)

app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
app.include_router(billing.router, tags=["billing"])


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Liveness check."""
    return {"status": "healthy", "version": settings.VERSION}


if __name__ == "__main__":
    import uvicorn

    host = os.environ.get("HOST", "127.0.0.1")
    uvicorn.run(
        "entitlement_sync.main:app",
        host=host,
        port=settings.PORT,
        reload=settings.ENVIRONMENT == "development",
        log_level="info",
    )
