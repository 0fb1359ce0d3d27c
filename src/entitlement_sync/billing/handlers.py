"""Stripe webhook event handlers.

Each handler is an independent object registered by event type. The steps
they share (read back the subscription, resolve the user, map status and
price, write, invalidate caches) live in SubscriptionSync, which handlers
hold rather than inherit from.
"""

from collections.abc import Mapping
from typing import Any, Protocol

import structlog

from entitlement_sync.billing.cache import BillingCacheInvalidator
from entitlement_sync.billing.errors import classify_error
from entitlement_sync.billing.plans import PAYMENT_FAILURE_STATUSES, PlanResolver
from entitlement_sync.billing.provider import BillingProvider
from entitlement_sync.billing.references import (
    get_invoice_subscription_id,
    get_object_id,
    get_price_id,
)
from entitlement_sync.billing.resolver import UserResolver
from entitlement_sync.billing.store import BillingStore
from entitlement_sync.billing.types import (
    REASON_NO_SUBSCRIPTION,
    REASON_NO_USER,
    REASON_STALE_EVENT,
    REASON_USER_NOT_FOUND,
    BillingEventType,
    BillingSource,
    BillingState,
    ClassifiedError,
    ErrorKind,
    EventMeta,
    HandlerResult,
    WebhookContext,
)
from entitlement_sync.billing.writer import BillingStateWriter
from entitlement_sync.observability import capture_critical_error

logger = structlog.get_logger()

# Skip reasons specific to individual handlers
REASON_PAYMENT_SUCCESS_ERROR = "error_processing_payment_success"
REASON_PAYMENT_FAILURE_ERROR = "error_processing_payment_failure"
REASON_SUBSCRIPTION_ERROR = "error_processing_subscription"
REASON_CHECKOUT_ERROR = "error_processing_checkout"
REASON_NOT_IN_FAILURE_STATUS = "subscription_not_in_failure_status"
REASON_NOT_CURRENT_SUBSCRIPTION = "subscription_not_current"
REASON_CHECKOUT_NO_SUBSCRIPTION = "checkout_has_no_subscription"


class WebhookHandler(Protocol):
    """A handler for one or more Stripe event types."""

    event_types: tuple[str, ...]

    async def handle(self, context: WebhookContext) -> HandlerResult: ...


# =============================================================================
# SHARED STEPS
# =============================================================================


class SubscriptionSync:
    """Steps shared by every handler that projects a subscription onto a user."""

    def __init__(
        self,
        *,
        provider: BillingProvider,
        resolver: UserResolver,
        writer: BillingStateWriter,
        invalidator: BillingCacheInvalidator,
        plans: PlanResolver,
        store: BillingStore,
        retry_on_provider_error: bool = False,
    ) -> None:
        self.provider = provider
        self.resolver = resolver
        self.writer = writer
        self.invalidator = invalidator
        self.plans = plans
        self.store = store
        self.retry_on_provider_error = retry_on_provider_error

    async def fetch_subscription(
        self,
        subscription_id: str,
        context: WebhookContext,
        failure_reason: str,
    ) -> tuple[dict[str, Any] | None, HandlerResult | None]:
        """Read the current subscription from Stripe.

        Returns:
            (subscription, None) on success, (None, result) when the read failed
        """
        try:
            subscription = await self.provider.retrieve_subscription(subscription_id)
        except Exception as e:
            classified = classify_error(e)
            return None, self.read_back_failure(
                classified, context, failure_reason, subscription_id=subscription_id
            )
        return subscription, None

    def read_back_failure(
        self,
        classified: ClassifiedError,
        context: WebhookContext,
        failure_reason: str,
        *,
        subscription_id: str | None = None,
    ) -> HandlerResult:
        """Turn a failed Stripe read into a handler result.

        not_found is expected and only logged. Anything else is reported as a
        critical error but still acknowledged, unless provider retries are
        enabled and the error came from Stripe.
        """
        log_context = {
            "route": "webhooks/billing",
            "event": context.event.type,
            "stripe_event_id": context.stripe_event_id,
            "subscription_id": subscription_id,
            "error_kind": classified.kind.value,
        }
        if classified.kind == ErrorKind.NOT_FOUND:
            logger.info(
                "Subscription no longer exists in Stripe",
                event_type=context.event.type,
                stripe_event_id=context.stripe_event_id,
            )
            return HandlerResult.skip(failure_reason, error=classified.message)

        capture_critical_error(
            "Stripe subscription read-back failed",
            error=classified.cause if classified.cause is not None else classified.message,
            context=log_context,
        )
        if classified.kind == ErrorKind.PROVIDER_ERROR and self.retry_on_provider_error:
            return HandlerResult.fail(classified.message, reason=failure_reason)
        return HandlerResult.skip(failure_reason, error=classified.message)

    async def apply_subscription(
        self,
        user_id: str,
        subscription: Mapping[str, Any],
        context: WebhookContext,
        event_type: BillingEventType,
        metadata: dict[str, Any] | None = None,
    ) -> HandlerResult:
        state = self.plans.state_for(subscription)
        return await self.write(
            user_id,
            state,
            context,
            event_type,
            metadata={
                "subscription_id": get_object_id(subscription),
                "subscription_status": subscription.get("status"),
                "price_id": get_price_id(subscription),
                **(metadata or {}),
            },
        )

    async def write(
        self,
        user_id: str,
        state: BillingState,
        context: WebhookContext,
        event_type: BillingEventType,
        metadata: dict[str, Any] | None = None,
    ) -> HandlerResult:
        """Write through BillingStateWriter and map its result."""
        result = await self.writer.write(
            user_id,
            state,
            EventMeta(
                source=BillingSource.WEBHOOK,
                event_type=event_type,
                event_timestamp=context.stripe_event_timestamp,
                stripe_event_id=context.stripe_event_id,
                reason=context.event.type,
                metadata=metadata or {},
            ),
        )

        if result.success and result.skipped:
            return HandlerResult.skip(result.reason or REASON_STALE_EVENT, user_id=user_id)
        if result.success:
            await self.invalidator.invalidate(user_id)
            return HandlerResult.ok(
                user_id=user_id,
                is_active=state.is_pro,
                plan=state.effective_plan,
            )
        if result.reason == REASON_USER_NOT_FOUND:
            return HandlerResult.skip(REASON_USER_NOT_FOUND, user_id=user_id)

        # Already reported by the writer
        logger.error(
            "Billing write failed, asking Stripe to redeliver",
            user_id=user_id,
            stripe_event_id=context.stripe_event_id,
            error=result.error,
        )
        return HandlerResult.fail(result.error or "billing write failed", user_id=user_id)


# =============================================================================
# EVENT HANDLERS
# =============================================================================


class PaymentSucceededHandler:
    """invoice.payment_succeeded: re-sync the subscription the invoice paid for."""

    event_types = ("invoice.payment_succeeded",)

    def __init__(self, sync: SubscriptionSync) -> None:
        self._sync = sync

    async def handle(self, context: WebhookContext) -> HandlerResult:
        invoice = context.event.data_object
        subscription_id = get_invoice_subscription_id(invoice)
        if not subscription_id:
            return HandlerResult.skip(REASON_NO_SUBSCRIPTION)

        subscription, failure = await self._sync.fetch_subscription(
            subscription_id, context, REASON_PAYMENT_SUCCESS_ERROR
        )
        if failure is not None or subscription is None:
            return failure or HandlerResult.skip(REASON_PAYMENT_SUCCESS_ERROR)

        user_id = await self._sync.resolver.resolve(subscription)
        if not user_id:
            return HandlerResult.skip(REASON_NO_USER)

        return await self._sync.apply_subscription(
            user_id,
            subscription,
            context,
            BillingEventType.PAYMENT_SUCCEEDED,
            metadata={"invoice_id": get_object_id(invoice)},
        )


class PaymentFailedHandler:
    """invoice.payment_failed: downgrade once Stripe has moved the subscription to a failure status."""

    event_types = ("invoice.payment_failed",)

    def __init__(self, sync: SubscriptionSync) -> None:
        self._sync = sync

    async def handle(self, context: WebhookContext) -> HandlerResult:
        invoice = context.event.data_object
        subscription_id = get_invoice_subscription_id(invoice)
        if not subscription_id:
            return HandlerResult.skip(REASON_NO_SUBSCRIPTION)

        subscription, failure = await self._sync.fetch_subscription(
            subscription_id, context, REASON_PAYMENT_FAILURE_ERROR
        )
        if failure is not None or subscription is None:
            return failure or HandlerResult.skip(REASON_PAYMENT_FAILURE_ERROR)

        user_id = await self._sync.resolver.resolve(subscription)
        if not user_id:
            return HandlerResult.skip(REASON_NO_USER)

        status = subscription.get("status")
        if status not in PAYMENT_FAILURE_STATUSES:
            # Stripe is still retrying the charge; the subscription stays live
            return HandlerResult.skip(REASON_NOT_IN_FAILURE_STATUS, user_id=user_id)

        return await self._sync.write(
            user_id,
            BillingState(
                is_pro=False,
                stripe_subscription_id=None,
                stripe_customer_id=get_object_id(subscription.get("customer")),
            ),
            context,
            BillingEventType.PAYMENT_FAILED,
            metadata={
                "subscription_id": subscription_id,
                "subscription_status": status,
                "invoice_id": get_object_id(invoice),
                "attempt_count": invoice.get("attempt_count"),
            },
        )


class SubscriptionChangedHandler:
    """customer.subscription.* lifecycle events other than deletion."""

    event_types = (
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.paused",
        "customer.subscription.resumed",
    )

    def __init__(self, sync: SubscriptionSync) -> None:
        self._sync = sync

    async def handle(self, context: WebhookContext) -> HandlerResult:
        subscription_id = get_object_id(context.event.data_object)
        if not subscription_id:
            return HandlerResult.skip(REASON_NO_SUBSCRIPTION)

        # The payload is a snapshot; several events for one subscription can race
        subscription, failure = await self._sync.fetch_subscription(
            subscription_id, context, REASON_SUBSCRIPTION_ERROR
        )
        if failure is not None or subscription is None:
            return failure or HandlerResult.skip(REASON_SUBSCRIPTION_ERROR)

        user_id = await self._sync.resolver.resolve(subscription)
        if not user_id:
            return HandlerResult.skip(REASON_NO_USER)

        event_type = (
            BillingEventType.SUBSCRIPTION_CREATED
            if context.event.type == "customer.subscription.created"
            else BillingEventType.SUBSCRIPTION_UPDATED
        )
        return await self._sync.apply_subscription(user_id, subscription, context, event_type)


class SubscriptionDeletedHandler:
    """customer.subscription.deleted: terminal, so the payload is trusted as is."""

    event_types = ("customer.subscription.deleted",)

    def __init__(self, sync: SubscriptionSync) -> None:
        self._sync = sync

    async def handle(self, context: WebhookContext) -> HandlerResult:
        subscription = context.event.data_object
        subscription_id = get_object_id(subscription)
        if not subscription_id:
            return HandlerResult.skip(REASON_NO_SUBSCRIPTION)

        user_id = await self._sync.resolver.resolve(subscription)
        if not user_id:
            return HandlerResult.skip(REASON_NO_USER)

        # A user who switched subscriptions must not lose the new one
        try:
            record = await self._sync.store.get_billing_record(user_id)
        except Exception as e:
            logger.warning(
                "Failed to read billing record for subscription deletion",
                user_id=user_id,
                stripe_event_id=context.stripe_event_id,
                error=str(e),
            )
            return HandlerResult.fail(str(e), reason=REASON_SUBSCRIPTION_ERROR, user_id=user_id)

        if (
            record is not None
            and record.stripe_subscription_id
            and record.stripe_subscription_id != subscription_id
        ):
            logger.info(
                "Ignoring deletion of a subscription the user no longer holds",
                user_id=user_id,
                stripe_event_id=context.stripe_event_id,
            )
            return HandlerResult.skip(REASON_NOT_CURRENT_SUBSCRIPTION, user_id=user_id)

        return await self._sync.write(
            user_id,
            BillingState(
                is_pro=False,
                stripe_subscription_id=None,
                stripe_customer_id=get_object_id(subscription.get("customer")),
            ),
            context,
            BillingEventType.SUBSCRIPTION_DELETED,
            metadata={
                "subscription_id": subscription_id,
                "subscription_status": subscription.get("status"),
                "canceled_at": subscription.get("canceled_at"),
            },
        )


class CheckoutCompletedHandler:
    """checkout.session.completed: link the customer and activate the new subscription."""

    event_types = ("checkout.session.completed",)

    def __init__(self, sync: SubscriptionSync) -> None:
        self._sync = sync

    async def handle(self, context: WebhookContext) -> HandlerResult:
        session = context.event.data_object
        subscription_id = get_object_id(session.get("subscription"))
        if session.get("mode") not in (None, "subscription") or not subscription_id:
            return HandlerResult.skip(REASON_CHECKOUT_NO_SUBSCRIPTION)

        subscription, failure = await self._sync.fetch_subscription(
            subscription_id, context, REASON_CHECKOUT_ERROR
        )
        if failure is not None or subscription is None:
            return failure or HandlerResult.skip(REASON_CHECKOUT_ERROR)

        client_reference_id = session.get("client_reference_id")
        user_id = (
            self._sync.resolver.from_metadata(session)
            or (client_reference_id if isinstance(client_reference_id, str) else None)
            or await self._sync.resolver.resolve(subscription)
        )
        if not user_id:
            return HandlerResult.skip(REASON_NO_USER)

        # Checkout is where a customer first gets linked to a user
        if not get_object_id(subscription.get("customer")):
            subscription = {**subscription, "customer": session.get("customer")}

        return await self._sync.apply_subscription(
            user_id,
            subscription,
            context,
            BillingEventType.CHECKOUT_COMPLETED,
            metadata={"checkout_session_id": get_object_id(session)},
        )


# =============================================================================
# HANDLER REGISTRY
# =============================================================================


def build_handler_registry(sync: SubscriptionSync) -> dict[str, WebhookHandler]:
    """Map every handled Stripe event type to its handler."""
    handlers: list[WebhookHandler] = [
        PaymentSucceededHandler(sync),
        PaymentFailedHandler(sync),
        SubscriptionChangedHandler(sync),
        SubscriptionDeletedHandler(sync),
        CheckoutCompletedHandler(sync),
    ]
    return {event_type: handler for handler in handlers for event_type in handler.event_types}
