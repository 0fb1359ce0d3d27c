"""Keeps local user entitlements consistent with Stripe subscriptions."""

__version__ = "0.1.0"
