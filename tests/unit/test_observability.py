"""Tests for the error-tracking sink and Sentry scrubbing."""

from unittest.mock import patch

from entitlement_sync.observability import (
    _scrub_event,
    capture_critical_error,
    capture_warning,
    init_sentry,
)


class TestCapture:
    def test_exception_is_sent_with_stack_trace(self) -> None:
        error = RuntimeError("boom")
        with (
            patch("entitlement_sync.observability.sentry_sdk.capture_exception") as capture_exc,
            patch("entitlement_sync.observability.sentry_sdk.capture_message") as capture_msg,
        ):
            capture_exc.return_value = "evt-sentry"
            event_id = capture_critical_error(
                "Failed to write billing state",
                error=error,
                context={"user_id": "user_abc123", "event": "evt_1"},
            )

        assert event_id == "evt-sentry"
        capture_exc.assert_called_once_with(error)
        capture_msg.assert_not_called()

    def test_non_exception_error_becomes_message(self) -> None:
        with patch("entitlement_sync.observability.sentry_sdk.capture_message") as capture_msg:
            capture_critical_error("Writer failed", error="lock timeout", context={"error": "dup"})

        capture_msg.assert_called_once_with("Writer failed")

    def test_warning_level(self) -> None:
        with patch("entitlement_sync.observability.sentry_sdk.capture_message") as capture_msg:
            capture_warning("Billing reconciliation hit batch limit", context={"batches": 50})

        capture_msg.assert_called_once_with(
            "Billing reconciliation hit batch limit", level="warning"
        )


class TestScrubbing:
    def test_filters_headers_and_extras(self) -> None:
        event = {
            "request": {"headers": {"Stripe-Signature": "t=1,v1=abc", "Accept": "*/*"}},
            "extra": {"webhook_secret": "whsec_x", "user_id": "user_abc123"},
        }

        scrubbed = _scrub_event(event)

        assert scrubbed["request"]["headers"]["Stripe-Signature"] == "[Filtered]"
        assert scrubbed["request"]["headers"]["Accept"] == "*/*"
        assert scrubbed["extra"]["webhook_secret"] == "[Filtered]"
        assert scrubbed["extra"]["user_id"] == "user_abc123"

    def test_init_without_dsn_is_noop(self, monkeypatch) -> None:  # noqa: ANN001
        monkeypatch.delenv("SENTRY_DSN", raising=False)

        with patch("entitlement_sync.observability.sentry_sdk.init") as sentry_init:
            assert init_sentry("entitlement-sync") is False

        sentry_init.assert_not_called()
