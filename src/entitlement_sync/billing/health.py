"""Operational health of the billing sync.

Each check is independent; one failing check never hides the others.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

import structlog

from entitlement_sync.billing.provider import BillingProvider
from entitlement_sync.billing.store import BillingStore

logger = structlog.get_logger()


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


_SEVERITY = {HealthStatus.HEALTHY: 0, HealthStatus.DEGRADED: 1, HealthStatus.CRITICAL: 2}


@dataclass(frozen=True)
class HealthCheck:
    name: str
    status: HealthStatus
    message: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class HealthReport:
    status: HealthStatus
    checks: list[HealthCheck]
    checked_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "checked_at": self.checked_at.isoformat(),
            "checks": [
                {
                    "name": check.name,
                    "status": check.status.value,
                    "message": check.message,
                    "details": check.details,
                }
                for check in self.checks
            ],
        }


@dataclass
class HealthThresholds:
    stuck_webhook_after: timedelta = timedelta(minutes=30)
    reconciliation_max_age: timedelta = timedelta(hours=2)
    pro_count_tolerance: float = 0.1
    stripe_max_pages: int = 10
    stripe_timeout: float = 10.0


class BillingHealthChecker:
    """Runs the billing health checks against the store and Stripe."""

    def __init__(
        self,
        *,
        store: BillingStore,
        provider: BillingProvider,
        thresholds: HealthThresholds | None = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._thresholds = thresholds or HealthThresholds()

    async def run(self) -> HealthReport:
        checks = [
            await self._guard("webhook_activity", self.check_webhook_activity),
            await self._guard("stuck_webhooks", self.check_stuck_webhooks),
            await self._guard("reconciliation", self.check_reconciliation),
            await self._guard("pro_user_count", self.check_pro_user_count),
        ]
        overall = max((check.status for check in checks), key=_SEVERITY.__getitem__)
        return HealthReport(status=overall, checks=checks, checked_at=datetime.now(UTC))

    async def _guard(self, name: str, check: Any) -> HealthCheck:
        try:
            return await check()
        except Exception as e:
            logger.warning("Billing health check errored", check=name, error=str(e))
            return HealthCheck(name, HealthStatus.CRITICAL, f"Check failed: {e}")

    async def check_webhook_activity(self) -> HealthCheck:
        count = await self._store.count_events_since(datetime.now(UTC) - timedelta(hours=24))
        if count == 0:
            # Quiet periods happen on small accounts
            return HealthCheck(
                "webhook_activity",
                HealthStatus.DEGRADED,
                "No webhooks received in the last 24 hours",
                {"count_24h": 0},
            )
        return HealthCheck(
            "webhook_activity",
            HealthStatus.HEALTHY,
            f"{count} webhooks received in the last 24 hours",
            {"count_24h": count},
        )

    async def check_stuck_webhooks(self) -> HealthCheck:
        cutoff = datetime.now(UTC) - self._thresholds.stuck_webhook_after
        stuck = await self._store.count_stuck_events(cutoff)
        if stuck:
            return HealthCheck(
                "stuck_webhooks",
                HealthStatus.CRITICAL,
                f"{stuck} webhook events stuck in processing",
                {"stuck": stuck},
            )
        return HealthCheck("stuck_webhooks", HealthStatus.HEALTHY, "No stuck webhooks", {"stuck": 0})

    async def check_reconciliation(self) -> HealthCheck:
        last_run = await self._store.last_reconciliation_at()
        if last_run is None:
            return HealthCheck(
                "reconciliation",
                HealthStatus.DEGRADED,
                "Reconciliation has never run",
            )
        if last_run.tzinfo is None:
            last_run = last_run.replace(tzinfo=UTC)
        age = datetime.now(UTC) - last_run
        details = {"last_run": last_run.isoformat(), "age_minutes": int(age.total_seconds() // 60)}
        if age > self._thresholds.reconciliation_max_age:
            return HealthCheck(
                "reconciliation",
                HealthStatus.CRITICAL,
                "Reconciliation has not run recently",
                details,
            )
        return HealthCheck("reconciliation", HealthStatus.HEALTHY, "Reconciliation is current", details)

    async def check_pro_user_count(self) -> HealthCheck:
        """Compare pro users with a subscription id to Stripe's active count."""
        db_count = await self._store.count_pro_users()
        try:
            stripe_count, complete = await asyncio.wait_for(
                self._provider.count_active_subscriptions(self._thresholds.stripe_max_pages),
                timeout=self._thresholds.stripe_timeout,
            )
        except TimeoutError:
            return HealthCheck(
                "pro_user_count",
                HealthStatus.DEGRADED,
                "Timed out counting Stripe subscriptions",
                {"db_count": db_count},
            )

        details = {"db_count": db_count, "stripe_count": stripe_count, "complete": complete}
        if not complete:
            # A partial count can only be a lower bound
            status = HealthStatus.HEALTHY if db_count >= stripe_count else HealthStatus.DEGRADED
            return HealthCheck(
                "pro_user_count", status, "Stripe count truncated at page limit", details
            )

        difference = abs(db_count - stripe_count)
        allowed = max(1, int(stripe_count * self._thresholds.pro_count_tolerance))
        details["difference"] = difference
        if difference > allowed:
            return HealthCheck(
                "pro_user_count",
                HealthStatus.CRITICAL,
                "Pro user count diverges from Stripe",
                details,
            )
        return HealthCheck("pro_user_count", HealthStatus.HEALTHY, "Pro user count matches", details)
