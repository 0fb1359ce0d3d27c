"""Invalidation of cached billing views after a successful write."""

import structlog

from entitlement_sync import cache

logger = structlog.get_logger()


class BillingCacheInvalidator:
    """Retires a user's cached entitlement view and audit pages.

    The user's cache generation is bumped first. Readers key their entries by
    the generation they saw before going to the database, so a read that
    raced this write can only repopulate a generation nobody reads again.
    The existing entries are then deleted to free memory.

    Fire-and-forget: failures are logged and never reach the caller.
    """

    async def invalidate(self, user_id: str) -> None:
        try:
            generation = await cache.bump_generation(cache.billing_generation_key(user_id))
            deleted = await cache.invalidate_pattern(cache.billing_status_pattern(user_id))
            deleted += await cache.invalidate_pattern(cache.billing_audit_pattern(user_id))
        except Exception as e:
            logger.warning("Billing cache invalidation failed", user_id=user_id, error=str(e))
            return
        logger.debug(
            "Billing cache invalidated", user_id=user_id, generation=generation, keys=deleted
        )
