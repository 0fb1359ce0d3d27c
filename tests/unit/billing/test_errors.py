"""Tests for Stripe error classification."""

import pytest
import stripe

from entitlement_sync.billing.errors import classify_error
from entitlement_sync.billing.types import ErrorKind
from entitlement_sync.exceptions import ProviderTimeoutError


class TestClassifyError:
    def test_no_such_subscription_message_is_not_found(self) -> None:
        classified = classify_error(Exception("No such subscription: 'sub_gone'"))

        assert classified.kind == ErrorKind.NOT_FOUND
        assert classified.is_recoverable is True
        assert "sub_gone" in classified.message

    def test_message_match_is_case_insensitive(self) -> None:
        assert classify_error(RuntimeError("no SUCH subscription")).kind == ErrorKind.NOT_FOUND

    def test_resource_missing_on_subscription_is_not_found(self) -> None:
        error = stripe.InvalidRequestError("Resource missing", "id", code="resource_missing")

        assert classify_error(error).kind == ErrorKind.NOT_FOUND

    def test_resource_missing_on_other_param_is_provider_error(self) -> None:
        error = stripe.InvalidRequestError("No such price", "price", code="resource_missing")

        classified = classify_error(error)

        assert classified.kind == ErrorKind.PROVIDER_ERROR
        assert classified.is_recoverable is False

    @pytest.mark.parametrize(
        "error",
        [
            stripe.RateLimitError("Too many requests"),
            stripe.APIConnectionError("Connection reset"),
            stripe.AuthenticationError("Invalid API key"),
            stripe.APIError("Something went wrong"),
        ],
    )
    def test_stripe_errors_are_provider_errors(self, error: stripe.StripeError) -> None:
        classified = classify_error(error)

        assert classified.kind == ErrorKind.PROVIDER_ERROR
        assert classified.is_recoverable is False
        assert classified.cause is error

    def test_timeout_is_provider_error(self) -> None:
        classified = classify_error(ProviderTimeoutError("subscription.retrieve", 10.0))

        assert classified.kind == ErrorKind.PROVIDER_ERROR

    def test_generic_exception_is_unknown(self) -> None:
        classified = classify_error(ValueError("boom"))

        assert classified.kind == ErrorKind.UNKNOWN
        assert classified.is_recoverable is False
        assert classified.message == "boom"

    @pytest.mark.parametrize(("value", "message"), [(None, "None"), ("plain string", "plain string")])
    def test_non_exceptions_are_unknown(self, value: object, message: str) -> None:
        classified = classify_error(value)

        assert classified.kind == ErrorKind.UNKNOWN
        assert classified.message == message
