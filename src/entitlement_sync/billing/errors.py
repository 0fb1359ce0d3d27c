"""
Classification of errors raised while reading from Stripe.

This is the only place that inspects error messages or SDK error types;
callers branch on ClassifiedError.kind.
"""

import stripe

from entitlement_sync.billing.types import ClassifiedError, ErrorKind
from entitlement_sync.exceptions import ProviderTimeoutError

# Stripe's "object is gone" signals
NOT_FOUND_PATTERNS = [
    "no such subscription",
]

NOT_FOUND_CODES = {"resource_missing"}


def _is_not_found(error: object, message: str) -> bool:
    message_lower = message.lower()
    if any(pattern in message_lower for pattern in NOT_FOUND_PATTERNS):
        return True
    # Only a missing subscription counts; a missing price or customer is a real error
    if isinstance(error, stripe.InvalidRequestError):
        return error.code in NOT_FOUND_CODES and (error.param or "") in ("", "id", "subscription")
    return False


def classify_error(error: object) -> ClassifiedError:
    """
    Classify a caught error.

    Args:
        error: Anything that was raised or returned as an error, including None

    Returns:
        not_found      - the subscription no longer exists, recoverable
        provider_error - Stripe SDK error or read timeout, not recoverable inline
        unknown        - anything else, not recoverable
    """
    message = str(error)

    if _is_not_found(error, message):
        return ClassifiedError(
            kind=ErrorKind.NOT_FOUND,
            is_recoverable=True,
            message=message,
            cause=error,
        )

    if isinstance(error, stripe.StripeError | ProviderTimeoutError):
        return ClassifiedError(
            kind=ErrorKind.PROVIDER_ERROR,
            is_recoverable=False,
            message=message,
            cause=error,
        )

    return ClassifiedError(
        kind=ErrorKind.UNKNOWN,
        is_recoverable=False,
        message=message,
        cause=error,
    )
