"""Stripe webhook endpoint."""

from typing import Annotated

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from entitlement_sync.billing.router import WebhookRouter
from entitlement_sync.dependencies import get_webhook_router

router = APIRouter()

NO_STORE_HEADERS = {"Cache-Control": "no-store"}


@router.post("/billing")
@router.post("/stripe", include_in_schema=False)
async def handle_billing_webhook(
    request: Request,
    webhook_router: Annotated[WebhookRouter, Depends(get_webhook_router)],
) -> JSONResponse:
    """Receive a Stripe event.

    The raw body is needed for signature verification, so it is read before
    any JSON parsing. The status code tells Stripe whether to redeliver.
    """
    payload = await request.body()
    result = await webhook_router.route(payload, request.headers.get("stripe-signature"))
    return JSONResponse(
        status_code=result.status_code,
        content=result.body,
        headers=NO_STORE_HEADERS,
    )
