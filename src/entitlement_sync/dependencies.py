"""Construction of the billing engine and its FastAPI dependencies.

Every collaborator is built once from settings and handed to the handlers,
router and reconciler through their constructors. Tests replace the getters
below with app.dependency_overrides.
"""

from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache

from entitlement_sync.billing.cache import BillingCacheInvalidator
from entitlement_sync.billing.handlers import SubscriptionSync, build_handler_registry
from entitlement_sync.billing.health import BillingHealthChecker, HealthThresholds
from entitlement_sync.billing.plans import PlanResolver
from entitlement_sync.billing.provider import StripeBillingProvider
from entitlement_sync.billing.reconciliation import (
    BillingReconciler,
    ReconciliationConfig,
    StatusMismatchFixer,
)
from entitlement_sync.billing.resolver import UserResolver
from entitlement_sync.billing.router import WebhookRouter
from entitlement_sync.billing.store import BillingStore
from entitlement_sync.billing.writer import BillingStateWriter
from entitlement_sync.config import Settings, settings
from entitlement_sync.database import async_session_factory


@dataclass(frozen=True)
class BillingEngine:
    store: BillingStore
    router: WebhookRouter
    reconciler: BillingReconciler
    health: BillingHealthChecker


def create_billing_engine(config: Settings) -> BillingEngine:
    provider = StripeBillingProvider(config.STRIPE_SECRET_KEY, config.STRIPE_API_TIMEOUT)
    store = BillingStore(async_session_factory)
    writer = BillingStateWriter(async_session_factory)
    invalidator = BillingCacheInvalidator()
    plans = PlanResolver(config.STRIPE_PRICE_PLANS)
    resolver = UserResolver(store, config.USER_ID_METADATA_KEY)

    sync = SubscriptionSync(
        provider=provider,
        resolver=resolver,
        writer=writer,
        invalidator=invalidator,
        plans=plans,
        store=store,
        retry_on_provider_error=config.WEBHOOK_RETRY_ON_PROVIDER_ERROR,
    )
    router = WebhookRouter(
        handlers=build_handler_registry(sync),
        store=store,
        webhook_secret=config.STRIPE_WEBHOOK_SECRET,
        tolerance=config.STRIPE_WEBHOOK_TOLERANCE,
    )
    reconciler = BillingReconciler(
        store=store,
        provider=provider,
        writer=writer,
        invalidator=invalidator,
        fixer=StatusMismatchFixer(writer, invalidator, plans),
        plans=plans,
        config=ReconciliationConfig(
            batch_size=config.RECONCILIATION_BATCH_SIZE,
            max_batches=config.RECONCILIATION_MAX_BATCHES,
            concurrency=config.RECONCILIATION_CONCURRENCY,
            pro_without_subscription_limit=config.RECONCILIATION_PRO_WITHOUT_SUB_LIMIT,
            stale_customer_limit=config.RECONCILIATION_STALE_CUSTOMER_LIMIT,
            dedup_window=timedelta(days=config.WEBHOOK_DEDUP_WINDOW_DAYS),
        ),
    )
    health = BillingHealthChecker(
        store=store,
        provider=provider,
        thresholds=HealthThresholds(
            stuck_webhook_after=timedelta(minutes=config.HEALTH_STUCK_WEBHOOK_MINUTES),
            reconciliation_max_age=timedelta(hours=config.HEALTH_RECONCILIATION_MAX_AGE_HOURS),
            pro_count_tolerance=config.HEALTH_PRO_COUNT_TOLERANCE,
            stripe_max_pages=config.HEALTH_STRIPE_MAX_PAGES,
            stripe_timeout=config.STRIPE_API_TIMEOUT,
        ),
    )
    return BillingEngine(store=store, router=router, reconciler=reconciler, health=health)


@lru_cache
def get_billing_engine() -> BillingEngine:
    """Get the process-wide billing engine."""
    return create_billing_engine(settings)


def get_webhook_router() -> WebhookRouter:
    return get_billing_engine().router


def get_billing_store() -> BillingStore:
    return get_billing_engine().store


def get_reconciler() -> BillingReconciler:
    return get_billing_engine().reconciler


def get_health_checker() -> BillingHealthChecker:
    return get_billing_engine().health
