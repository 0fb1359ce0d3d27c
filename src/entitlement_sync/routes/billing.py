"""Entitlement read API, billing health and the reconciliation trigger."""

from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from entitlement_sync.billing.health import BillingHealthChecker, HealthStatus
from entitlement_sync.billing.reconciliation import BillingReconciler
from entitlement_sync.billing.store import BillingStore
from entitlement_sync.cache import (
    billing_audit_key,
    billing_generation_key,
    billing_status_key,
    cache_generation,
    cache_get,
    cache_set,
)
from entitlement_sync.config import settings
from entitlement_sync.dependencies import get_billing_store, get_health_checker, get_reconciler
from entitlement_sync.middleware.auth import get_current_user_id, verify_cron_secret
from entitlement_sync.observability import capture_critical_error

router = APIRouter()

Store = Annotated[BillingStore, Depends(get_billing_store)]


# ============== Response models ==============


class BillingStatusResponse(BaseModel):
    """Current entitlement of the authenticated user."""

    is_pro: bool
    plan: str
    stripe_customer_id: str | None = None
    stripe_subscription_id: str | None = None
    billing_version: int
    last_billing_event_at: datetime | None = None


class BillingAuditEntryResponse(BaseModel):
    id: str
    event_type: str
    source: str
    previous_state: dict[str, Any]
    new_state: dict[str, Any]
    stripe_event_id: str | None = None
    metadata: dict[str, Any]
    occurred_at: datetime


# ============== Read API ==============


@router.get("/billing/status", response_model=BillingStatusResponse)
async def get_billing_status(request: Request, store: Store) -> BillingStatusResponse:
    """Get the current user's entitlement, served from a short-lived cache."""
    user_id = get_current_user_id(request)
    # Read before the database so a write that lands meanwhile retires this key
    generation = await cache_generation(billing_generation_key(user_id))
    cache_key = billing_status_key(user_id, generation) if generation is not None else None

    if cache_key:
        cached = await cache_get(cache_key)
        if cached is not None:
            return BillingStatusResponse.model_validate(cached)

    record = await store.get_billing_record(user_id)
    if record is None:
        raise HTTPException(status_code=404, detail="User not found")

    response = BillingStatusResponse(
        is_pro=record.is_pro,
        plan=record.plan or ("pro" if record.is_pro else "free"),
        stripe_customer_id=record.stripe_customer_id,
        stripe_subscription_id=record.stripe_subscription_id,
        billing_version=record.billing_version,
        last_billing_event_at=record.last_billing_event_at,
    )
    if cache_key:
        await cache_set(cache_key, response, ttl=settings.BILLING_STATUS_CACHE_TTL)
    return response


@router.get("/billing/audit-log", response_model=list[BillingAuditEntryResponse])
async def get_billing_audit_log(
    request: Request,
    store: Store,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
) -> list[BillingAuditEntryResponse]:
    """Get the current user's billing history, newest first."""
    user_id = get_current_user_id(request)
    generation = await cache_generation(billing_generation_key(user_id))
    cache_key = billing_audit_key(user_id, generation, limit) if generation is not None else None

    if cache_key:
        cached = await cache_get(cache_key)
        if cached is not None:
            return [BillingAuditEntryResponse.model_validate(entry) for entry in cached]

    entries = await store.list_audit_entries(user_id, limit)
    response = [
        BillingAuditEntryResponse(
            id=entry.id,
            event_type=entry.event_type,
            source=entry.source,
            previous_state=entry.previous_state,
            new_state=entry.new_state,
            stripe_event_id=entry.stripe_event_id,
            metadata=entry.event_metadata,
            occurred_at=entry.occurred_at,
        )
        for entry in entries
    ]
    if cache_key:
        await cache_set(
            cache_key,
            [entry.model_dump(mode="json") for entry in response],
            ttl=settings.BILLING_STATUS_CACHE_TTL,
        )
    return response


# ============== Operations ==============


@router.get("/billing/health")
async def get_billing_health(
    checker: Annotated[BillingHealthChecker, Depends(get_health_checker)],
) -> JSONResponse:
    """Billing sync health; 503 when any check is critical."""
    report = await checker.run()
    status_code = 503 if report.status == HealthStatus.CRITICAL else 200
    return JSONResponse(
        status_code=status_code,
        content=report.to_dict(),
        headers={"Cache-Control": "no-store"},
    )


@router.post(
    "/internal/cron/billing-reconciliation",
    dependencies=[Depends(verify_cron_secret)],
)
async def run_billing_reconciliation(
    reconciler: Annotated[BillingReconciler, Depends(get_reconciler)],
) -> JSONResponse:
    """Run one reconciliation sweep on behalf of an external scheduler."""
    try:
        report = await reconciler.run()
    except Exception as e:
        capture_critical_error(
            "Billing reconciliation crashed",
            error=e,
            context={"route": "internal/cron/billing-reconciliation"},
        )
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Reconciliation failed"},
        )

    return JSONResponse(
        status_code=200,
        content={
            "success": report.success,
            **report.stats(),
            "error_messages": report.error_messages,
        },
    )
