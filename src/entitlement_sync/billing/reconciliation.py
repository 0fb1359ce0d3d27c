"""Periodic reconciliation of stored entitlements against Stripe.

Webhooks can be lost, delayed or mishandled; this sweep bounds how long a
user's billing record can disagree with Stripe. Each user is reconciled
independently and a failure for one never stops the sweep.
"""

import asyncio
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from entitlement_sync.billing.cache import BillingCacheInvalidator
from entitlement_sync.billing.errors import classify_error
from entitlement_sync.billing.plans import PlanResolver, is_entitled_status
from entitlement_sync.billing.provider import BillingProvider
from entitlement_sync.billing.references import get_object_id
from entitlement_sync.billing.store import BillingStore
from entitlement_sync.billing.types import (
    BillingEventType,
    BillingRecord,
    BillingSource,
    BillingState,
    ErrorKind,
    EventMeta,
    WriteResult,
)
from entitlement_sync.billing.writer import BillingStateWriter
from entitlement_sync.observability import capture_critical_error, capture_warning

logger = structlog.get_logger()

REASON_STATUS_MISMATCH = "status_mismatch"
REASON_SUBSCRIPTION_NOT_FOUND = "subscription_not_found_in_stripe"
REASON_ORPHAN_CLEARED = "orphaned_subscription_cleared"
REASON_LINKED_SUBSCRIPTION = "linked_active_subscription"
REASON_PRO_WITHOUT_SUBSCRIPTION = "pro_without_subscription"

# Error messages kept on the run record
MAX_REPORTED_ERRORS = 20


@dataclass
class ReconciliationConfig:
    batch_size: int = 100
    max_batches: int = 50
    concurrency: int = 5
    pro_without_subscription_limit: int = 50
    stale_customer_limit: int = 20
    dedup_window: timedelta = timedelta(days=30)


@dataclass
class ReconciliationReport:
    """Counters for one sweep."""

    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None
    users_checked: int = 0
    mismatches: int = 0
    fixed: int = 0
    errors: int = 0
    orphaned_subscriptions: int = 0
    linked_subscriptions: int = 0
    stale_customers: int = 0
    purged_events: int = 0
    batches: int = 0
    hit_batch_limit: bool = False
    # Writes skipped because the row changed between the read and the fix
    changed_during_check: int = 0
    error_messages: list[str] = field(default_factory=list)

    def record_error(self, message: str) -> None:
        self.errors += 1
        if len(self.error_messages) < MAX_REPORTED_ERRORS:
            self.error_messages.append(message)

    @property
    def success(self) -> bool:
        return self.errors == 0

    def stats(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("error_messages")
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return data


class StatusMismatchFixer:
    """Writes provider truth over a record whose entitlement disagrees with Stripe."""

    def __init__(
        self,
        writer: BillingStateWriter,
        invalidator: BillingCacheInvalidator,
        plans: PlanResolver,
    ) -> None:
        self._writer = writer
        self._invalidator = invalidator
        self._plans = plans

    async def fix(self, record: BillingRecord, subscription: Mapping[str, Any]) -> WriteResult:
        status = subscription.get("status")
        expected_is_pro = is_entitled_status(status)
        customer_id = get_object_id(subscription.get("customer"))
        state = BillingState(
            is_pro=expected_is_pro,
            plan=self._plans.state_for(subscription).plan if expected_is_pro else None,
            # A subscription that no longer entitles is no longer the user's current one
            stripe_subscription_id=get_object_id(subscription) if expected_is_pro else None,
            stripe_customer_id=customer_id,
        )
        result = await self._writer.write(
            record.user_id,
            state,
            EventMeta(
                source=BillingSource.RECONCILIATION,
                event_type=BillingEventType.RECONCILIATION_FIX,
                reason=REASON_STATUS_MISMATCH,
                metadata={
                    "db_is_pro": record.is_pro,
                    "stripe_status": status,
                    "expected_is_pro": expected_is_pro,
                    "subscription_id": get_object_id(subscription),
                },
                expected_billing_version=record.billing_version,
            ),
        )
        if not result.success or result.skipped:
            return result

        await self._invalidator.invalidate(record.user_id)
        logger.info(
            "Fixed billing status mismatch",
            user_id=record.user_id,
            db_is_pro=record.is_pro,
            stripe_status=status,
            expected_is_pro=expected_is_pro,
        )
        return result


class BillingReconciler:
    """Runs the reconciliation sweep."""

    def __init__(
        self,
        *,
        store: BillingStore,
        provider: BillingProvider,
        writer: BillingStateWriter,
        invalidator: BillingCacheInvalidator,
        fixer: StatusMismatchFixer,
        plans: PlanResolver,
        config: ReconciliationConfig | None = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._writer = writer
        self._invalidator = invalidator
        self._fixer = fixer
        self._plans = plans
        self._config = config or ReconciliationConfig()

    async def run(self) -> ReconciliationReport:
        report = ReconciliationReport()
        logger.info("Starting billing reconciliation")

        await self._reconcile_subscribed_users(report)
        await self._reconcile_pro_without_subscription(report)
        await self._check_stale_customers(report)
        await self._purge_dedup_markers(report)

        report.finished_at = datetime.now(UTC)
        logger.info("Billing reconciliation finished", **report.stats())

        if report.mismatches or report.errors:
            capture_warning(
                "Billing reconciliation found issues",
                context={**report.stats(), "error_samples": report.error_messages[:5]},
            )

        try:
            await self._store.record_reconciliation_run(
                started_at=report.started_at,
                finished_at=report.finished_at,
                success=report.success,
                stats=report.stats(),
                errors=report.error_messages,
            )
        except Exception as e:
            logger.warning("Failed to record reconciliation run", error=str(e))
        return report

    # =========================================================================
    # Users with a subscription id
    # =========================================================================

    async def _reconcile_subscribed_users(self, report: ReconciliationReport) -> None:
        semaphore = asyncio.Semaphore(self._config.concurrency)
        cursor: str | None = None

        async def bounded(record: BillingRecord) -> None:
            async with semaphore:
                await self.reconcile_user(record, report)

        for _ in range(self._config.max_batches):
            batch = await self._store.list_subscribed_users(cursor, self._config.batch_size)
            if not batch:
                return
            report.batches += 1
            await asyncio.gather(*(bounded(record) for record in batch))
            if len(batch) < self._config.batch_size:
                return
            cursor = batch[-1].user_id

        report.hit_batch_limit = True
        capture_warning(
            "Billing reconciliation hit batch limit",
            context={
                "max_batches": self._config.max_batches,
                "batch_size": self._config.batch_size,
            },
        )

    async def reconcile_user(self, record: BillingRecord, report: ReconciliationReport) -> None:
        """Compare one user against Stripe and converge on Stripe's answer."""
        report.users_checked += 1
        subscription_id = record.stripe_subscription_id
        if not subscription_id:
            return

        try:
            subscription = await self._provider.retrieve_subscription(subscription_id)
        except Exception as e:
            classified = classify_error(e)
            if classified.kind == ErrorKind.NOT_FOUND:
                await self._handle_orphaned(record, report)
                return
            report.record_error(f"Error checking user {record.user_id}: {classified.message}")
            logger.warning(
                "Reconciliation read failed",
                user_id=record.user_id,
                error_kind=classified.kind.value,
                error=classified.message,
            )
            return

        expected_is_pro = is_entitled_status(subscription.get("status"))
        if expected_is_pro == record.is_pro:
            return

        report.mismatches += 1
        try:
            result = await self._fixer.fix(record, subscription)
        except Exception as e:
            capture_critical_error(
                "Reconciliation fix raised",
                error=e,
                context={"user_id": record.user_id, "route": "reconciliation"},
            )
            report.record_error(f"Error fixing user {record.user_id}: {e}")
            return

        if result.skipped:
            report.changed_during_check += 1
        elif result.success:
            report.fixed += 1
        else:
            report.record_error(f"Failed to fix user {record.user_id}: {result.error or result.reason}")

    async def _handle_orphaned(self, record: BillingRecord, report: ReconciliationReport) -> None:
        """The stored subscription id no longer exists in Stripe."""
        report.orphaned_subscriptions += 1
        if record.is_pro:
            report.mismatches += 1
            reason = REASON_SUBSCRIPTION_NOT_FOUND
        else:
            reason = REASON_ORPHAN_CLEARED

        result = await self._write_fix(
            record,
            BillingState(is_pro=False, stripe_subscription_id=None),
            reason,
            {"orphaned_subscription_id": record.stripe_subscription_id, "db_is_pro": record.is_pro},
        )
        if result.skipped:
            report.changed_during_check += 1
        elif result.success and record.is_pro:
            report.fixed += 1
        elif not result.success:
            report.record_error(
                f"Failed to clear orphaned subscription for user {record.user_id}: {result.error}"
            )

    # =========================================================================
    # Pro users with no subscription id
    # =========================================================================

    async def _reconcile_pro_without_subscription(self, report: ReconciliationReport) -> None:
        try:
            records = await self._store.list_pro_users_without_subscription(
                self._config.pro_without_subscription_limit
            )
        except Exception as e:
            report.record_error(f"Failed to list pro users without subscription: {e}")
            return

        for record in records:
            report.users_checked += 1
            try:
                await self._reconcile_pro_without_subscription_user(record, report)
            except Exception as e:
                classified = classify_error(e)
                report.record_error(
                    f"Error processing pro user {record.user_id}: {classified.message}"
                )

    async def _reconcile_pro_without_subscription_user(
        self, record: BillingRecord, report: ReconciliationReport
    ) -> None:
        if record.stripe_customer_id:
            active = await self._provider.list_active_subscriptions(
                record.stripe_customer_id, limit=1
            )
            if active:
                subscription = active[0]
                report.mismatches += 1
                state = self._plans.state_for(subscription)
                result = await self._write_fix(
                    record,
                    state,
                    REASON_LINKED_SUBSCRIPTION,
                    {"subscription_id": get_object_id(subscription)},
                )
                if result.skipped:
                    report.changed_during_check += 1
                elif result.success:
                    report.fixed += 1
                    report.linked_subscriptions += 1
                else:
                    report.record_error(f"Failed to link subscription for user {record.user_id}")
                return

        report.mismatches += 1
        result = await self._write_fix(
            record,
            BillingState(is_pro=False, stripe_subscription_id=None),
            REASON_PRO_WITHOUT_SUBSCRIPTION,
            {"had_customer_id": bool(record.stripe_customer_id)},
        )
        if result.skipped:
            report.changed_during_check += 1
        elif result.success:
            report.fixed += 1
        else:
            report.record_error(f"Failed to fix pro user {record.user_id}: {result.error}")

    # =========================================================================
    # Housekeeping
    # =========================================================================

    async def _check_stale_customers(self, report: ReconciliationReport) -> None:
        """Deleted users still holding a Stripe customer; reported for manual review."""
        try:
            records = await self._store.list_deleted_users_with_customer(
                self._config.stale_customer_limit
            )
        except Exception as e:
            logger.warning("Stale customer check failed", error=str(e))
            return

        report.stale_customers = len(records)
        if records:
            capture_warning(
                "Deleted users still linked to Stripe customers",
                context={
                    "count": len(records),
                    "user_ids": [record.user_id for record in records[:5]],
                },
            )

    async def _purge_dedup_markers(self, report: ReconciliationReport) -> None:
        cutoff = datetime.now(UTC) - self._config.dedup_window
        try:
            report.purged_events = await self._store.purge_events_before(cutoff)
        except Exception as e:
            logger.warning("Failed to purge webhook dedup markers", error=str(e))

    async def _write_fix(
        self,
        record: BillingRecord,
        state: BillingState,
        reason: str,
        metadata: dict[str, Any],
    ) -> WriteResult:
        result = await self._writer.write(
            record.user_id,
            state,
            EventMeta(
                source=BillingSource.RECONCILIATION,
                event_type=BillingEventType.RECONCILIATION_FIX,
                reason=reason,
                metadata=metadata,
                expected_billing_version=record.billing_version,
            ),
        )
        if result.success and not result.skipped:
            await self._invalidator.invalidate(record.user_id)
        return result
