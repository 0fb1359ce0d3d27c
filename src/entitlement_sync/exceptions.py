"""Custom exception classes for the entitlement sync service."""


class ConfigurationError(ValueError):
    """Raised when configuration validation fails."""


class DefaultSecretKeyError(ConfigurationError):
    """Raised when default JWT secret key is used in production."""

    def __init__(self) -> None:
        super().__init__(
            "JWT_SECRET_KEY must be set explicitly in production. "
            "Set the JWT_SECRET_KEY environment variable to the auth service's signing key.",
        )


class ShortSecretKeyError(ConfigurationError):
    """Raised when JWT secret key is too short in production."""

    def __init__(self) -> None:
        super().__init__("JWT_SECRET_KEY must be at least 32 characters in production.")


class StripeNotConfiguredError(ConfigurationError):
    """Raised when a Stripe call is attempted without an API key."""

    def __init__(self) -> None:
        super().__init__("STRIPE_SECRET_KEY is not configured")


# Provider (Stripe) boundary exceptions
class ProviderError(Exception):
    """Base exception for billing provider call failures."""


class ProviderTimeoutError(ProviderError):
    """Raised when a billing provider read exceeds its request timeout."""

    def __init__(self, operation: str, timeout: float) -> None:
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"Stripe {operation} timed out after {timeout:.1f}s")


# Webhook ingestion exceptions
class WebhookError(ValueError):
    """Base class for rejected webhook deliveries."""


class WebhookVerificationError(WebhookError):
    """Raised when the webhook signature header is missing or invalid."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"Invalid webhook signature: {detail}")


class WebhookPayloadError(WebhookError):
    """Raised when a verified webhook body is not a usable event."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"Invalid webhook payload: {detail}")
