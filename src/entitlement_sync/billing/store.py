"""Database reads and the webhook dedup table.

All mutation of the billing columns on users goes through BillingStateWriter;
this module only reads them.
"""

from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from entitlement_sync.billing.types import BillingRecord, InboundEvent
from entitlement_sync.database.models import (
    BillingAuditLog,
    ReconciliationRun,
    StripeWebhookEvent,
    User,
)

logger = structlog.get_logger()

# Stored error text is truncated to keep dedup rows small
MAX_EVENT_ERROR_LENGTH = 500

# A claim still "processing" after this long is presumed abandoned
STALE_CLAIM_AFTER = timedelta(minutes=10)


def record_from_user(user: User) -> BillingRecord:
    """Snapshot the billing columns of a User row."""
    return BillingRecord(
        user_id=user.id,
        is_pro=user.is_pro,
        plan=user.plan,
        stripe_customer_id=user.stripe_customer_id,
        stripe_subscription_id=user.stripe_subscription_id,
        billing_version=user.billing_version,
        last_billing_event_at=user.last_billing_event_at,
        is_admin=user.is_admin,
    )


class BillingStore:
    """Queries used by the resolver, router, reconciliation and read API."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # =========================================================================
    # Users
    # =========================================================================

    async def find_user_id_by_customer(self, customer_id: str) -> str | None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(User.id).where(
                    User.stripe_customer_id == customer_id,
                    User.deleted_at.is_(None),
                )
            )
            return result.scalar_one_or_none()

    async def get_billing_record(self, user_id: str) -> BillingRecord | None:
        async with self._session_factory() as db:
            result = await db.execute(select(User).where(User.id == user_id))
            user = result.scalar_one_or_none()
            return record_from_user(user) if user else None

    async def list_subscribed_users(
        self, after_user_id: str | None, limit: int
    ) -> list[BillingRecord]:
        """Page through live users holding a subscription id, ordered by id."""
        query = select(User).where(
            User.stripe_subscription_id.is_not(None),
            User.deleted_at.is_(None),
        )
        if after_user_id:
            query = query.where(User.id > after_user_id)
        query = query.order_by(User.id).limit(limit)
        async with self._session_factory() as db:
            result = await db.execute(query)
            return [record_from_user(user) for user in result.scalars().all()]

    async def list_pro_users_without_subscription(self, limit: int) -> list[BillingRecord]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(User)
                .where(
                    User.is_pro.is_(True),
                    User.stripe_subscription_id.is_(None),
                    User.deleted_at.is_(None),
                )
                .order_by(User.id)
                .limit(limit)
            )
            return [record_from_user(user) for user in result.scalars().all()]

    async def list_deleted_users_with_customer(self, limit: int) -> list[BillingRecord]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(User)
                .where(
                    User.deleted_at.is_not(None),
                    User.stripe_customer_id.is_not(None),
                )
                .order_by(User.deleted_at.desc())
                .limit(limit)
            )
            return [record_from_user(user) for user in result.scalars().all()]

    async def count_pro_users(self) -> int:
        async with self._session_factory() as db:
            result = await db.execute(
                select(func.count(User.id)).where(
                    User.is_pro.is_(True),
                    User.stripe_subscription_id.is_not(None),
                    User.deleted_at.is_(None),
                )
            )
            return int(result.scalar_one())

    async def list_audit_entries(self, user_id: str, limit: int) -> list[BillingAuditLog]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(BillingAuditLog)
                .where(BillingAuditLog.user_id == user_id)
                .order_by(BillingAuditLog.occurred_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    # =========================================================================
    # Webhook dedup markers
    # =========================================================================

    async def claim_event(
        self,
        event: InboundEvent,
        object_id: str | None,
        stale_claim_after: timedelta = STALE_CLAIM_AFTER,
    ) -> bool:
        """Claim a Stripe event id for processing.

        A claim left in "processing" longer than stale_claim_after (a crashed
        worker, a failed release) can be taken over by a redelivery.

        Returns:
            True if this call owns the claim, False if the event is taken
        """
        stmt = (
            insert(StripeWebhookEvent)
            .values(
                stripe_event_id=event.id,
                event_type=event.type,
                stripe_object_id=object_id,
                livemode=event.livemode,
                status="processing",
            )
            .on_conflict_do_nothing(index_elements=[StripeWebhookEvent.stripe_event_id])
            .returning(StripeWebhookEvent.id)
        )
        now = datetime.now(UTC)
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            claimed = result.scalar_one_or_none() is not None
            if not claimed:
                takeover = await db.execute(
                    update(StripeWebhookEvent)
                    .where(
                        StripeWebhookEvent.stripe_event_id == event.id,
                        StripeWebhookEvent.status == "processing",
                        StripeWebhookEvent.received_at < now - stale_claim_after,
                    )
                    .values(received_at=now)
                    .returning(StripeWebhookEvent.id)
                )
                claimed = takeover.scalar_one_or_none() is not None
                if claimed:
                    logger.warning("Took over stale webhook claim", stripe_event_id=event.id)
            await db.commit()
        return claimed

    async def release_event(self, stripe_event_id: str) -> None:
        """Delete a claim so Stripe's redelivery can process the event again."""
        async with self._session_factory() as db:
            await db.execute(
                delete(StripeWebhookEvent).where(
                    StripeWebhookEvent.stripe_event_id == stripe_event_id
                )
            )
            await db.commit()

    async def mark_event_processed(self, stripe_event_id: str, note: str | None = None) -> None:
        async with self._session_factory() as db:
            await db.execute(
                update(StripeWebhookEvent)
                .where(StripeWebhookEvent.stripe_event_id == stripe_event_id)
                .values(
                    status="processed",
                    processed_at=datetime.now(UTC),
                    error=note[:MAX_EVENT_ERROR_LENGTH] if note else None,
                )
            )
            await db.commit()

    async def purge_events_before(self, cutoff: datetime) -> int:
        """Delete processed markers older than the redelivery window."""
        async with self._session_factory() as db:
            result = await db.execute(
                delete(StripeWebhookEvent).where(
                    StripeWebhookEvent.received_at < cutoff,
                    StripeWebhookEvent.status == "processed",
                )
            )
            await db.commit()
            return int(result.rowcount or 0)

    async def count_events_since(self, since: datetime) -> int:
        async with self._session_factory() as db:
            result = await db.execute(
                select(func.count(StripeWebhookEvent.id)).where(
                    StripeWebhookEvent.received_at >= since
                )
            )
            return int(result.scalar_one())

    async def count_stuck_events(self, claimed_before: datetime) -> int:
        """Count claims still processing since before the cutoff."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(func.count(StripeWebhookEvent.id)).where(
                    StripeWebhookEvent.status == "processing",
                    StripeWebhookEvent.received_at < claimed_before,
                )
            )
            return int(result.scalar_one())

    # =========================================================================
    # Reconciliation runs
    # =========================================================================

    async def record_reconciliation_run(
        self,
        *,
        started_at: datetime,
        finished_at: datetime,
        success: bool,
        stats: dict[str, Any],
        errors: list[str],
    ) -> None:
        async with self._session_factory() as db:
            db.add(
                ReconciliationRun(
                    started_at=started_at,
                    finished_at=finished_at,
                    success=success,
                    stats=stats,
                    errors=errors,
                )
            )
            await db.commit()

    async def last_reconciliation_at(self) -> datetime | None:
        async with self._session_factory() as db:
            result = await db.execute(select(func.max(ReconciliationRun.finished_at)))
            return result.scalar_one_or_none()
