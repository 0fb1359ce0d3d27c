"""SQLAlchemy models."""

from .base import Base
from .billing import BillingAuditLog, ReconciliationRun, StripeWebhookEvent
from .core import User

__all__ = [
    "Base",
    "BillingAuditLog",
    "ReconciliationRun",
    "StripeWebhookEvent",
    "User",
]
