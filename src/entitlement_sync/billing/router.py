"""Verification, deduplication and dispatch of Stripe webhook deliveries.

The status code returned here drives Stripe's retry behaviour: 2xx means
done (processed, skipped or duplicate), 5xx means redeliver later, 4xx means
the delivery itself is bad.
"""

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import stripe
import structlog

from entitlement_sync.billing.handlers import WebhookHandler
from entitlement_sync.billing.references import get_object_id
from entitlement_sync.billing.store import BillingStore
from entitlement_sync.billing.types import (
    REASON_VALIDATION_ERROR,
    InboundEvent,
    WebhookContext,
)
from entitlement_sync.exceptions import WebhookPayloadError, WebhookVerificationError
from entitlement_sync.observability import capture_critical_error

logger = structlog.get_logger()


@dataclass(frozen=True)
class WebhookResponse:
    """HTTP status and JSON body for a webhook delivery."""

    status_code: int
    body: dict[str, Any] = field(default_factory=dict)


class WebhookRouter:
    """Routes one raw Stripe delivery to its handler."""

    def __init__(
        self,
        *,
        handlers: Mapping[str, WebhookHandler],
        store: BillingStore,
        webhook_secret: str | None,
        tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE,
    ) -> None:
        self._handlers = dict(handlers)
        self._store = store
        self._webhook_secret = webhook_secret
        self._tolerance = tolerance

    @property
    def handled_event_types(self) -> list[str]:
        return sorted(self._handlers)

    def verify(self, payload: bytes, signature: str | None) -> InboundEvent:
        """Check the signature and parse the event.

        Raises:
            WebhookVerificationError: missing or invalid signature
            WebhookPayloadError: verified body is not a usable event
        """
        if not signature:
            raise WebhookVerificationError("missing Stripe-Signature header")
        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise WebhookPayloadError("body is not UTF-8") from e
        try:
            stripe.WebhookSignature.verify_header(
                body, signature, self._webhook_secret, self._tolerance
            )
        except stripe.SignatureVerificationError as e:
            raise WebhookVerificationError(str(e)) from e

        try:
            return InboundEvent.from_payload(json.loads(body))
        except (ValueError, KeyError, TypeError) as e:
            raise WebhookPayloadError(str(e)) from e

    async def route(self, payload: bytes, signature: str | None) -> WebhookResponse:
        if not self._webhook_secret:
            logger.error(
                "STRIPE_WEBHOOK_SECRET not configured - webhook signature verification is required"
            )
            return WebhookResponse(503, {"detail": "Webhook verification not configured"})

        try:
            event = self.verify(payload, signature)
        except WebhookVerificationError as e:
            logger.warning("Invalid webhook signature", error=e.detail)
            return WebhookResponse(400, {"detail": "Invalid signature"})
        except WebhookPayloadError as e:
            logger.warning("Invalid webhook payload", error=e.detail)
            return WebhookResponse(
                400, {"detail": "Invalid payload", "reason": REASON_VALIDATION_ERROR}
            )

        log = logger.bind(event_type=event.type, stripe_event_id=event.id)
        log.info("Received Stripe webhook", livemode=event.livemode)

        try:
            claimed = await self._store.claim_event(event, get_object_id(event.data_object))
        except Exception:
            log.exception("Failed to claim webhook event")
            return WebhookResponse(500, {"detail": "Webhook processing failed"})

        if not claimed:
            log.info("Skipping duplicate webhook event")
            return WebhookResponse(200, {"received": True, "duplicate": True})

        handler = self._handlers.get(event.type)
        if handler is None:
            log.debug("Unhandled webhook event")
            await self._mark_processed(event.id, "unhandled_event_type")
            return WebhookResponse(200, {"received": True, "handled": False})

        try:
            result = await handler.handle(WebhookContext(event=event))
        except Exception as e:
            await self._release(event.id)
            capture_critical_error(
                "Webhook handler raised",
                error=e,
                context={
                    "route": "webhooks/billing",
                    "event": event.type,
                    "stripe_event_id": event.id,
                },
            )
            return WebhookResponse(500, {"detail": "Webhook processing failed"})

        if not result.success:
            await self._release(event.id)
            log.warning(
                "Webhook handler failed, Stripe will redeliver",
                user_id=result.user_id,
                reason=result.reason,
                error=result.error,
            )
            return WebhookResponse(500, {"detail": "Webhook processing failed"})

        await self._mark_processed(event.id, result.reason if result.skipped else None)
        if result.skipped:
            log.info(
                "Webhook skipped",
                user_id=result.user_id,
                reason=result.reason,
                error=result.error,
            )
        else:
            log.info(
                "Webhook processed",
                user_id=result.user_id,
                is_active=result.is_active,
                plan=result.plan,
            )
        body: dict[str, Any] = {"received": True}
        if result.skipped:
            body.update(skipped=True, reason=result.reason)
        return WebhookResponse(200, body)

    async def _mark_processed(self, stripe_event_id: str, note: str | None) -> None:
        # The event was handled; a failure here only leaves the marker in "processing"
        try:
            await self._store.mark_event_processed(stripe_event_id, note)
        except Exception as e:
            logger.warning(
                "Failed to mark webhook event processed",
                stripe_event_id=stripe_event_id,
                error=str(e),
            )

    async def _release(self, stripe_event_id: str) -> None:
        try:
            await self._store.release_event(stripe_event_id)
        except Exception as e:
            # The stale-claim takeover lets a later redelivery through
            logger.warning(
                "Failed to release webhook claim",
                stripe_event_id=stripe_event_id,
                error=str(e),
            )
