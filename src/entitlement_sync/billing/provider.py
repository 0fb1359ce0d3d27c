"""Read-only Stripe client used by webhook handlers and reconciliation."""

import asyncio
from collections.abc import Callable
from typing import Any, Protocol, TypeVar

import stripe
import structlog

from entitlement_sync.exceptions import ProviderTimeoutError, StripeNotConfiguredError

logger = structlog.get_logger()

T = TypeVar("T")

STRIPE_PAGE_SIZE = 100


class BillingProvider(Protocol):
    """Stripe reads the engine depends on."""

    async def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]: ...

    async def list_active_subscriptions(
        self, customer_id: str, limit: int = 1
    ) -> list[dict[str, Any]]: ...

    async def count_active_subscriptions(self, max_pages: int) -> tuple[int, bool]: ...


def _to_dict(obj: Any) -> dict[str, Any]:
    if isinstance(obj, stripe.StripeObject):
        return obj.to_dict()
    return dict(obj)


class StripeBillingProvider:
    """Stripe SDK reads with an explicit API key and a per-call timeout.

    The SDK is synchronous, so every call runs in a worker thread. No
    module-level stripe.api_key is set.
    """

    def __init__(self, api_key: str | None, timeout: float) -> None:
        self._api_key = api_key
        self._timeout = timeout

    async def _call(self, operation: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        if not self._api_key:
            raise StripeNotConfiguredError
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, api_key=self._api_key, **kwargs),
                timeout=self._timeout,
            )
        except TimeoutError as e:
            logger.warning("Stripe call timed out", operation=operation, timeout=self._timeout)
            raise ProviderTimeoutError(operation, self._timeout) from e

    async def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        subscription = await self._call(
            "subscription.retrieve", stripe.Subscription.retrieve, subscription_id
        )
        return _to_dict(subscription)

    async def list_active_subscriptions(
        self, customer_id: str, limit: int = 1
    ) -> list[dict[str, Any]]:
        page = await self._call(
            "subscription.list",
            stripe.Subscription.list,
            customer=customer_id,
            status="active",
            limit=limit,
        )
        return [_to_dict(sub) for sub in page.data]

    async def count_active_subscriptions(self, max_pages: int) -> tuple[int, bool]:
        """Count active subscriptions across the account.

        Returns:
            (count, complete) - complete is False when max_pages was hit first
        """
        count = 0
        starting_after: str | None = None
        for _ in range(max_pages):
            params: dict[str, Any] = {"status": "active", "limit": STRIPE_PAGE_SIZE}
            if starting_after:
                params["starting_after"] = starting_after
            page = await self._call("subscription.list", stripe.Subscription.list, **params)
            count += len(page.data)
            if not page.has_more or not page.data:
                return count, True
            starting_after = page.data[-1].id
        return count, False
