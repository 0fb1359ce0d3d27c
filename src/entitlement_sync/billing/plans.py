"""Mapping from Stripe subscription state to the local entitlement."""

from collections.abc import Mapping
from typing import Any

import structlog

from entitlement_sync.billing.references import get_object_id, get_price_id
from entitlement_sync.billing.types import BillingState
from entitlement_sync.observability import capture_warning

logger = structlog.get_logger()

# Subscription statuses that grant paid features
ENTITLED_STATUSES = frozenset({"active", "trialing"})

# Statuses a failed invoice payment can leave a subscription in
PAYMENT_FAILURE_STATUSES = frozenset({"past_due", "unpaid", "incomplete", "incomplete_expired"})

# Statuses a subscription never leaves; the local reference is dropped
TERMINAL_STATUSES = frozenset({"canceled", "incomplete_expired"})

DEFAULT_PAID_PLAN = "pro"
FREE_PLAN = "free"


def is_entitled_status(status: str | None) -> bool:
    """Return True if a subscription in this status grants paid features."""
    return status in ENTITLED_STATUSES


class PlanResolver:
    """Maps Stripe price ids to plan codes."""

    def __init__(self, price_plans: Mapping[str, str]) -> None:
        self._price_plans = dict(price_plans)

    def plan_for(self, price_id: str | None, *, is_pro: bool) -> str:
        """Return the plan code for a subscription's price.

        A paid subscription on an unmapped price still gets the default paid
        plan, so a missing mapping never downgrades a paying customer.
        """
        if not is_pro:
            return FREE_PLAN
        if price_id and price_id in self._price_plans:
            return self._price_plans[price_id]
        capture_warning(
            "Unmapped Stripe price on paid subscription",
            context={"price_id": price_id, "fallback_plan": DEFAULT_PAID_PLAN},
        )
        return DEFAULT_PAID_PLAN

    def state_for(self, subscription: Mapping[str, Any]) -> BillingState:
        """Map a live subscription to the billing state it implies."""
        status = subscription.get("status")
        is_pro = is_entitled_status(status)
        return BillingState(
            is_pro=is_pro,
            plan=self.plan_for(get_price_id(subscription), is_pro=is_pro),
            stripe_subscription_id=(
                None if status in TERMINAL_STATUSES else get_object_id(subscription)
            ),
            stripe_customer_id=get_object_id(subscription.get("customer")),
        )
