"""Tests for the webhook event handlers."""

from unittest.mock import AsyncMock, patch

import pytest
import stripe
from sqlalchemy.exc import OperationalError

from entitlement_sync.billing.handlers import (
    CheckoutCompletedHandler,
    PaymentFailedHandler,
    PaymentSucceededHandler,
    SubscriptionChangedHandler,
    SubscriptionDeletedHandler,
    SubscriptionSync,
    build_handler_registry,
)
from entitlement_sync.billing.plans import PlanResolver
from entitlement_sync.billing.resolver import UserResolver
from entitlement_sync.billing.types import (
    BillingEventType,
    BillingRecord,
    BillingSource,
    BillingState,
    WriteResult,
)
from entitlement_sync.billing.writer import BillingStateWriter
from tests.conftest import make_context, make_invoice, make_subscription


@pytest.fixture
def writer() -> AsyncMock:
    mock = AsyncMock(spec=BillingStateWriter)
    mock.write.return_value = WriteResult(success=True, billing_version=1)
    return mock


@pytest.fixture
def sync(
    provider: AsyncMock,
    store: AsyncMock,
    writer: AsyncMock,
    invalidator: AsyncMock,
    plans: PlanResolver,
) -> SubscriptionSync:
    return SubscriptionSync(
        provider=provider,
        resolver=UserResolver(store),
        writer=writer,
        invalidator=invalidator,
        plans=plans,
        store=store,
    )


def written_state(writer: AsyncMock) -> BillingState:
    return writer.write.await_args.args[1]


class TestPaymentSucceeded:
    @pytest.mark.asyncio
    async def test_active_subscription_is_written(
        self, sync: SubscriptionSync, provider: AsyncMock, writer: AsyncMock, invalidator: AsyncMock
    ) -> None:
        provider.retrieve_subscription.return_value = make_subscription()
        context = make_context("invoice.payment_succeeded", make_invoice())

        result = await PaymentSucceededHandler(sync).handle(context)

        assert result.success is True
        assert result.skipped is False
        assert result.user_id == "user_abc123"
        provider.retrieve_subscription.assert_awaited_once_with("sub_123")

        user_id, state, meta = writer.write.await_args.args
        assert user_id == "user_abc123"
        assert state == BillingState(
            is_pro=True,
            plan="standard",
            stripe_subscription_id="sub_123",
            stripe_customer_id="cus_123",
        )
        assert meta.source == BillingSource.WEBHOOK
        assert meta.event_type == BillingEventType.PAYMENT_SUCCEEDED
        assert meta.stripe_event_id == "evt_1"
        assert meta.event_timestamp == context.stripe_event_timestamp
        assert meta.metadata["invoice_id"] == "in_123"
        invalidator.invalidate.assert_awaited_once_with("user_abc123")

    @pytest.mark.asyncio
    async def test_invoice_without_subscription_is_skipped(
        self, sync: SubscriptionSync, provider: AsyncMock, writer: AsyncMock
    ) -> None:
        context = make_context("invoice.payment_succeeded", make_invoice(subscription=None))

        result = await PaymentSucceededHandler(sync).handle(context)

        assert result.success is True
        assert result.skipped is True
        assert result.reason == "invoice_has_no_subscription"
        provider.retrieve_subscription.assert_not_awaited()
        writer.write.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unresolved_user_is_skipped(
        self, sync: SubscriptionSync, provider: AsyncMock, store: AsyncMock, writer: AsyncMock
    ) -> None:
        provider.retrieve_subscription.return_value = make_subscription(user_id=None)
        store.find_user_id_by_customer.return_value = None

        result = await PaymentSucceededHandler(sync).handle(
            make_context("invoice.payment_succeeded", make_invoice())
        )

        assert result.skipped is True
        assert result.reason == "no_user_id_in_subscription_metadata"
        store.find_user_id_by_customer.assert_awaited_once_with("cus_123")
        writer.write.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_not_found_read_back_is_skipped_quietly(
        self, sync: SubscriptionSync, provider: AsyncMock, writer: AsyncMock
    ) -> None:
        provider.retrieve_subscription.side_effect = stripe.InvalidRequestError(
            "No such subscription: 'sub_123'", "id", code="resource_missing"
        )

        with patch("entitlement_sync.billing.handlers.capture_critical_error") as capture:
            result = await PaymentSucceededHandler(sync).handle(
                make_context("invoice.payment_succeeded", make_invoice())
            )

        assert result.success is True
        assert result.skipped is True
        assert result.reason == "error_processing_payment_success"
        assert "No such subscription" in (result.error or "")
        capture.assert_not_called()
        writer.write.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unexpected_read_back_error_is_reported_but_acknowledged(
        self, sync: SubscriptionSync, provider: AsyncMock, writer: AsyncMock
    ) -> None:
        provider.retrieve_subscription.side_effect = RuntimeError("socket closed")

        with patch("entitlement_sync.billing.handlers.capture_critical_error") as capture:
            result = await PaymentSucceededHandler(sync).handle(
                make_context("invoice.payment_succeeded", make_invoice())
            )

        assert result.success is True
        assert result.skipped is True
        assert result.error == "socket closed"
        capture.assert_called_once()
        assert capture.call_args.kwargs["context"]["subscription_id"] == "sub_123"
        writer.write.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_provider_error_fails_when_retry_enabled(
        self, sync: SubscriptionSync, provider: AsyncMock
    ) -> None:
        sync.retry_on_provider_error = True
        provider.retrieve_subscription.side_effect = stripe.APIConnectionError("reset")

        with patch("entitlement_sync.billing.handlers.capture_critical_error"):
            result = await PaymentSucceededHandler(sync).handle(
                make_context("invoice.payment_succeeded", make_invoice())
            )

        assert result.success is False

    @pytest.mark.asyncio
    async def test_unknown_error_is_acknowledged_even_when_retry_enabled(
        self, sync: SubscriptionSync, provider: AsyncMock
    ) -> None:
        sync.retry_on_provider_error = True
        provider.retrieve_subscription.side_effect = KeyError("items")

        with patch("entitlement_sync.billing.handlers.capture_critical_error"):
            result = await PaymentSucceededHandler(sync).handle(
                make_context("invoice.payment_succeeded", make_invoice())
            )

        assert result.success is True
        assert result.skipped is True


class TestWriteResultMapping:
    @pytest.mark.asyncio
    async def test_stale_write_is_skipped_without_invalidation(
        self,
        sync: SubscriptionSync,
        provider: AsyncMock,
        writer: AsyncMock,
        invalidator: AsyncMock,
    ) -> None:
        provider.retrieve_subscription.return_value = make_subscription()
        writer.write.return_value = WriteResult(
            success=True, skipped=True, reason="stale_event_ignored"
        )

        result = await SubscriptionChangedHandler(sync).handle(
            make_context("customer.subscription.updated", make_subscription())
        )

        assert result.success is True
        assert result.skipped is True
        assert result.reason == "stale_event_ignored"
        invalidator.invalidate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_user_not_found_is_skipped(
        self, sync: SubscriptionSync, provider: AsyncMock, writer: AsyncMock
    ) -> None:
        provider.retrieve_subscription.return_value = make_subscription()
        writer.write.return_value = WriteResult(success=False, reason="user_not_found")

        result = await SubscriptionChangedHandler(sync).handle(
            make_context("customer.subscription.updated", make_subscription())
        )

        assert result.success is True
        assert result.reason == "user_not_found"

    @pytest.mark.asyncio
    async def test_database_failure_asks_for_redelivery(
        self, sync: SubscriptionSync, provider: AsyncMock, writer: AsyncMock
    ) -> None:
        provider.retrieve_subscription.return_value = make_subscription()
        writer.write.return_value = WriteResult(success=False, error="connection lost")

        result = await SubscriptionChangedHandler(sync).handle(
            make_context("customer.subscription.updated", make_subscription())
        )

        assert result.success is False
        assert result.error == "connection lost"


class TestPaymentFailed:
    @pytest.mark.asyncio
    async def test_downgrades_past_due_subscription(
        self, sync: SubscriptionSync, provider: AsyncMock, writer: AsyncMock
    ) -> None:
        provider.retrieve_subscription.return_value = make_subscription(status="past_due")

        result = await PaymentFailedHandler(sync).handle(
            make_context("invoice.payment_failed", make_invoice())
        )

        assert result.success is True
        assert result.skipped is False
        state = written_state(writer)
        assert state.is_pro is False
        assert state.stripe_subscription_id is None
        assert writer.write.await_args.args[2].event_type == BillingEventType.PAYMENT_FAILED

    @pytest.mark.asyncio
    async def test_active_subscription_is_left_alone(
        self, sync: SubscriptionSync, provider: AsyncMock, writer: AsyncMock
    ) -> None:
        provider.retrieve_subscription.return_value = make_subscription(status="active")

        result = await PaymentFailedHandler(sync).handle(
            make_context("invoice.payment_failed", make_invoice())
        )

        assert result.skipped is True
        assert result.reason == "subscription_not_in_failure_status"
        writer.write.assert_not_awaited()


class TestSubscriptionChanged:
    @pytest.mark.asyncio
    async def test_uses_read_back_not_payload(
        self, sync: SubscriptionSync, provider: AsyncMock, writer: AsyncMock
    ) -> None:
        provider.retrieve_subscription.return_value = make_subscription(
            status="active", price_id="price_team"
        )
        payload = make_subscription(status="incomplete", price_id="price_standard")

        result = await SubscriptionChangedHandler(sync).handle(
            make_context("customer.subscription.created", payload)
        )

        assert result.success is True
        assert result.plan == "team"
        state = written_state(writer)
        assert state.is_pro is True
        assert state.plan == "team"
        meta = writer.write.await_args.args[2]
        assert meta.event_type == BillingEventType.SUBSCRIPTION_CREATED

    @pytest.mark.asyncio
    async def test_trialing_is_pro(
        self, sync: SubscriptionSync, provider: AsyncMock, writer: AsyncMock
    ) -> None:
        provider.retrieve_subscription.return_value = make_subscription(status="trialing")

        await SubscriptionChangedHandler(sync).handle(
            make_context("customer.subscription.updated", make_subscription())
        )

        assert written_state(writer).is_pro is True


class TestSubscriptionDeleted:
    @pytest.mark.asyncio
    async def test_downgrades_from_payload(
        self, sync: SubscriptionSync, provider: AsyncMock, store: AsyncMock, writer: AsyncMock
    ) -> None:
        store.get_billing_record.return_value = BillingRecord(
            user_id="user_abc123",
            is_pro=True,
            plan="standard",
            stripe_customer_id="cus_123",
            stripe_subscription_id="sub_123",
        )

        result = await SubscriptionDeletedHandler(sync).handle(
            make_context("customer.subscription.deleted", make_subscription(status="canceled"))
        )

        assert result.success is True
        provider.retrieve_subscription.assert_not_awaited()
        state = written_state(writer)
        assert state.is_pro is False
        assert state.stripe_subscription_id is None

    @pytest.mark.asyncio
    async def test_ignores_deletion_of_replaced_subscription(
        self, sync: SubscriptionSync, store: AsyncMock, writer: AsyncMock
    ) -> None:
        store.get_billing_record.return_value = BillingRecord(
            user_id="user_abc123",
            is_pro=True,
            plan="team",
            stripe_customer_id="cus_123",
            stripe_subscription_id="sub_new",
        )

        result = await SubscriptionDeletedHandler(sync).handle(
            make_context("customer.subscription.deleted", make_subscription("sub_old"))
        )

        assert result.skipped is True
        assert result.reason == "subscription_not_current"
        writer.write.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_record_read_failure_asks_for_redelivery(
        self, sync: SubscriptionSync, store: AsyncMock, writer: AsyncMock
    ) -> None:
        store.get_billing_record.side_effect = OperationalError(
            "SELECT", {}, Exception("connection reset")
        )

        result = await SubscriptionDeletedHandler(sync).handle(
            make_context("customer.subscription.deleted", make_subscription(status="canceled"))
        )

        assert result.success is False
        assert result.user_id == "user_abc123"
        assert "connection reset" in result.error
        writer.write.assert_not_awaited()


class TestCheckoutCompleted:
    @pytest.mark.asyncio
    async def test_links_customer_from_session(
        self, sync: SubscriptionSync, provider: AsyncMock, writer: AsyncMock
    ) -> None:
        provider.retrieve_subscription.return_value = make_subscription(user_id=None, customer=None)
        session = {
            "id": "cs_1",
            "object": "checkout.session",
            "mode": "subscription",
            "subscription": "sub_123",
            "customer": "cus_new",
            "client_reference_id": "user_abc123",
        }

        result = await CheckoutCompletedHandler(sync).handle(
            make_context("checkout.session.completed", session)
        )

        assert result.success is True
        user_id, state, meta = writer.write.await_args.args
        assert user_id == "user_abc123"
        assert state.stripe_customer_id == "cus_new"
        assert state.is_pro is True
        assert meta.metadata["checkout_session_id"] == "cs_1"

    @pytest.mark.asyncio
    async def test_session_metadata_beats_client_reference(
        self, sync: SubscriptionSync, provider: AsyncMock, writer: AsyncMock
    ) -> None:
        provider.retrieve_subscription.return_value = make_subscription(user_id=None)
        session = {
            "id": "cs_1",
            "mode": "subscription",
            "subscription": "sub_123",
            "metadata": {"user_id": "user_meta"},
            "client_reference_id": "user_ref",
        }

        await CheckoutCompletedHandler(sync).handle(
            make_context("checkout.session.completed", session)
        )

        assert writer.write.await_args.args[0] == "user_meta"

    @pytest.mark.asyncio
    async def test_payment_mode_checkout_is_skipped(
        self, sync: SubscriptionSync, provider: AsyncMock
    ) -> None:
        session = {"id": "cs_1", "mode": "payment", "subscription": None}

        result = await CheckoutCompletedHandler(sync).handle(
            make_context("checkout.session.completed", session)
        )

        assert result.skipped is True
        assert result.reason == "checkout_has_no_subscription"
        provider.retrieve_subscription.assert_not_awaited()


def test_registry_covers_handled_event_types(sync: SubscriptionSync) -> None:
    registry = build_handler_registry(sync)

    assert set(registry) == {
        "invoice.payment_succeeded",
        "invoice.payment_failed",
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.paused",
        "customer.subscription.resumed",
        "customer.subscription.deleted",
        "checkout.session.completed",
    }
    assert isinstance(registry["customer.subscription.paused"], SubscriptionChangedHandler)
