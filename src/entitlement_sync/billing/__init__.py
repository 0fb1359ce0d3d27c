"""Stripe-driven entitlement sync: webhook handling and reconciliation."""

from entitlement_sync.billing.errors import classify_error
from entitlement_sync.billing.handlers import SubscriptionSync, build_handler_registry
from entitlement_sync.billing.reconciliation import (
    BillingReconciler,
    ReconciliationReport,
    StatusMismatchFixer,
)
from entitlement_sync.billing.router import WebhookResponse, WebhookRouter
from entitlement_sync.billing.writer import BillingStateWriter

__all__ = [
    "BillingReconciler",
    "BillingStateWriter",
    "ReconciliationReport",
    "StatusMismatchFixer",
    "SubscriptionSync",
    "WebhookResponse",
    "WebhookRouter",
    "build_handler_registry",
    "classify_error",
]
