"""The single write path for a user's billing columns."""

from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from entitlement_sync.billing.store import record_from_user
from entitlement_sync.billing.types import (
    REASON_RECORD_CHANGED,
    REASON_STALE_EVENT,
    REASON_USER_NOT_FOUND,
    BillingSource,
    BillingState,
    EventMeta,
    WriteResult,
)
from entitlement_sync.database.models import BillingAuditLog, User
from entitlement_sync.observability import capture_critical_error

logger = structlog.get_logger()


def _as_utc_aware(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


class BillingStateWriter:
    """Applies billing state to a user row and appends the audit entry.

    The user row is locked for the whole transaction, so concurrent writes
    for one user serialize while different users proceed in parallel.
    Webhook writes carrying an event no newer than the stored one are
    ignored. Reconciliation writes are stamped with the current time and
    apply unless the row changed after the reconciler read it.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def write(self, user_id: str, next_state: BillingState, meta: EventMeta) -> WriteResult:
        now = datetime.now(UTC)
        try:
            async with self._session_factory() as db, db.begin():
                result = await db.execute(
                    select(User).where(User.id == user_id).with_for_update()
                )
                user = result.scalar_one_or_none()
                if user is None:
                    logger.warning("Billing write for unknown user", user_id=user_id)
                    return WriteResult(success=False, reason=REASON_USER_NOT_FOUND)

                if (
                    meta.expected_billing_version is not None
                    and (user.billing_version or 0) != meta.expected_billing_version
                ):
                    logger.info(
                        "Billing record changed since it was read, skipping write",
                        user_id=user_id,
                        source=meta.source.value,
                        expected_billing_version=meta.expected_billing_version,
                        billing_version=user.billing_version,
                    )
                    return WriteResult(
                        success=True,
                        skipped=True,
                        reason=REASON_RECORD_CHANGED,
                        billing_version=user.billing_version,
                    )

                last_event_at = (
                    _as_utc_aware(user.last_billing_event_at)
                    if user.last_billing_event_at
                    else None
                )

                if meta.source == BillingSource.WEBHOOK:
                    event_at = _as_utc_aware(meta.event_timestamp or now)
                    if last_event_at is not None and event_at <= last_event_at:
                        logger.info(
                            "Ignoring stale billing event",
                            user_id=user_id,
                            stripe_event_id=meta.stripe_event_id,
                            event_type=meta.event_type.value,
                            event_at=event_at.isoformat(),
                            last_billing_event_at=last_event_at.isoformat(),
                        )
                        return WriteResult(
                            success=True,
                            skipped=True,
                            reason=REASON_STALE_EVENT,
                            billing_version=user.billing_version,
                        )
                else:
                    # Authoritative, but never moves the ordering key backwards
                    event_at = max(now, last_event_at) if last_event_at else now

                previous_state = record_from_user(user).snapshot()

                user.is_pro = next_state.is_pro
                user.plan = next_state.effective_plan
                user.stripe_subscription_id = next_state.stripe_subscription_id
                if next_state.stripe_customer_id is not None:
                    user.stripe_customer_id = next_state.stripe_customer_id
                user.billing_version = (user.billing_version or 0) + 1
                user.last_billing_event_at = event_at
                user.billing_updated_at = now

                metadata: dict[str, Any] = {
                    **meta.metadata,
                    "reason": meta.reason,
                    "billing_version": user.billing_version,
                }
                db.add(
                    BillingAuditLog(
                        user_id=user_id,
                        event_type=meta.event_type.value,
                        source=meta.source.value,
                        previous_state=previous_state,
                        new_state=record_from_user(user).snapshot(),
                        stripe_event_id=meta.stripe_event_id,
                        event_metadata=metadata,
                        occurred_at=now,
                    )
                )
                billing_version = user.billing_version
        except SQLAlchemyError as e:
            capture_critical_error(
                "Billing state write failed",
                error=e,
                context={
                    "user_id": user_id,
                    "event_type": meta.event_type.value,
                    "source": meta.source.value,
                    "stripe_event_id": meta.stripe_event_id,
                },
            )
            return WriteResult(success=False, error=str(e))

        logger.info(
            "Billing state updated",
            user_id=user_id,
            is_pro=next_state.is_pro,
            plan=next_state.effective_plan,
            source=meta.source.value,
            event_type=meta.event_type.value,
            reason=meta.reason,
            billing_version=billing_version,
        )
        return WriteResult(success=True, billing_version=billing_version)
