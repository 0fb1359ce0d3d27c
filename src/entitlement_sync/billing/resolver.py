"""Resolution of Stripe objects to internal user ids."""

from collections.abc import Mapping
from typing import Any

import structlog

from entitlement_sync.billing.references import get_metadata, get_object_id
from entitlement_sync.billing.store import BillingStore
from entitlement_sync.observability import capture_warning

logger = structlog.get_logger()


class UserResolver:
    """Finds the user that owns a subscription, invoice or checkout session.

    Inline metadata written at checkout wins and costs no I/O. Otherwise the
    customer reference is looked up in the users table.
    """

    def __init__(self, store: BillingStore, metadata_key: str = "user_id") -> None:
        self._store = store
        self._metadata_key = metadata_key

    def from_metadata(self, obj: Mapping[str, Any]) -> str | None:
        value = get_metadata(obj).get(self._metadata_key)
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None

    async def resolve(self, obj: Mapping[str, Any]) -> str | None:
        """Return the owning user id, or None if it cannot be determined."""
        user_id = self.from_metadata(obj)
        if user_id:
            return user_id

        customer_id = get_object_id(obj.get("customer"))
        if not customer_id:
            return None

        try:
            user_id = await self._store.find_user_id_by_customer(customer_id)
        except Exception as e:
            capture_warning(
                "User lookup by customer failed",
                error=e,
                context={"object_id": get_object_id(obj)},
            )
            return None

        if user_id:
            logger.info(
                "Resolved user from customer fallback",
                user_id=user_id,
                object_id=get_object_id(obj),
            )
        return user_id
