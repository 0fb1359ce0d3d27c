"""Database module for the entitlement sync service."""

from entitlement_sync.database.connection import (
    async_session_factory,
    close_database,
    engine,
    init_database,
)
from entitlement_sync.database.models import (
    Base,
    BillingAuditLog,
    ReconciliationRun,
    StripeWebhookEvent,
    User,
)

__all__ = [
    "Base",
    "BillingAuditLog",
    "ReconciliationRun",
    "StripeWebhookEvent",
    "User",
    "async_session_factory",
    "close_database",
    "engine",
    "init_database",
]
