"""Tests for BillingStateWriter against an in-memory session."""

from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from entitlement_sync.billing.types import (
    BillingEventType,
    BillingSource,
    BillingState,
    EventMeta,
)
from entitlement_sync.billing.writer import BillingStateWriter
from tests.conftest import FakeDatabase, at

T1 = 1_700_000_000


def webhook_meta(created: int, event_id: str = "evt_1", **metadata: object) -> EventMeta:
    return EventMeta(
        source=BillingSource.WEBHOOK,
        event_type=BillingEventType.SUBSCRIPTION_UPDATED,
        event_timestamp=at(created),
        stripe_event_id=event_id,
        reason="customer.subscription.updated",
        metadata=dict(metadata),
    )


PRO = BillingState(
    is_pro=True, plan="standard", stripe_subscription_id="sub_123", stripe_customer_id="cus_123"
)
FREE = BillingState(is_pro=False, stripe_subscription_id=None)


@pytest.mark.asyncio
async def test_write_applies_state_and_appends_audit_row(fake_db: FakeDatabase) -> None:
    user = fake_db.add_user()
    writer = BillingStateWriter(fake_db)

    result = await writer.write(user.id, PRO, webhook_meta(T1, subscription_id="sub_123"))

    assert result.success is True
    assert result.skipped is False
    assert result.billing_version == 1
    assert user.is_pro is True
    assert user.plan == "standard"
    assert user.stripe_subscription_id == "sub_123"
    assert user.last_billing_event_at == at(T1)
    assert user.billing_updated_at is not None

    assert len(fake_db.audit_rows) == 1
    row = fake_db.audit_rows[0]
    assert row.source == "webhook"
    assert row.event_type == "subscription_updated"
    assert row.stripe_event_id == "evt_1"
    assert row.previous_state["is_pro"] is False
    assert row.new_state["is_pro"] is True
    assert row.event_metadata == {
        "subscription_id": "sub_123",
        "reason": "customer.subscription.updated",
        "billing_version": 1,
    }


@pytest.mark.asyncio
async def test_select_locks_the_row(fake_db: FakeDatabase) -> None:
    user = fake_db.add_user()

    await BillingStateWriter(fake_db).write(user.id, PRO, webhook_meta(T1))

    statement = fake_db.sessions[0].statements[0]
    assert statement._for_update_arg is not None


@pytest.mark.asyncio
async def test_older_event_is_ignored(fake_db: FakeDatabase) -> None:
    user = fake_db.add_user()
    writer = BillingStateWriter(fake_db)

    await writer.write(user.id, PRO, webhook_meta(T1, "evt_a"))
    result = await writer.write(user.id, FREE, webhook_meta(T1 - 60, "evt_b"))

    assert result.success is True
    assert result.skipped is True
    assert result.reason == "stale_event_ignored"
    assert user.is_pro is True
    assert user.billing_version == 1
    assert len(fake_db.audit_rows) == 1


@pytest.mark.asyncio
async def test_same_timestamp_replay_is_ignored(fake_db: FakeDatabase) -> None:
    user = fake_db.add_user()
    writer = BillingStateWriter(fake_db)

    await writer.write(user.id, PRO, webhook_meta(T1))
    result = await writer.write(user.id, PRO, webhook_meta(T1))

    assert result.reason == "stale_event_ignored"
    assert user.billing_version == 1
    assert len(fake_db.audit_rows) == 1


@pytest.mark.asyncio
async def test_version_increases_on_every_accepted_write(fake_db: FakeDatabase) -> None:
    user = fake_db.add_user(billing_version=4)
    writer = BillingStateWriter(fake_db)

    await writer.write(user.id, PRO, webhook_meta(T1, "evt_a"))
    await writer.write(user.id, FREE, webhook_meta(T1 + 10, "evt_b"))

    assert user.billing_version == 6
    assert [row.event_metadata["billing_version"] for row in fake_db.audit_rows] == [5, 6]


@pytest.mark.asyncio
async def test_reconciliation_write_is_authoritative(fake_db: FakeDatabase) -> None:
    future = datetime.now(UTC) + timedelta(hours=1)
    user = fake_db.add_user(is_pro=True, last_billing_event_at=future)
    meta = EventMeta(
        source=BillingSource.RECONCILIATION,
        event_type=BillingEventType.RECONCILIATION_FIX,
        reason="status_mismatch",
    )

    result = await BillingStateWriter(fake_db).write(user.id, FREE, meta)

    assert result.success is True
    assert result.skipped is False
    assert user.is_pro is False
    # Never moves the ordering key backwards
    assert user.last_billing_event_at == future
    assert fake_db.audit_rows[0].source == "reconciliation"


@pytest.mark.asyncio
async def test_customer_id_none_keeps_stored_customer(fake_db: FakeDatabase) -> None:
    user = fake_db.add_user(stripe_customer_id="cus_keep", stripe_subscription_id="sub_old")

    await BillingStateWriter(fake_db).write(user.id, FREE, webhook_meta(T1))

    assert user.stripe_customer_id == "cus_keep"
    assert user.stripe_subscription_id is None
    assert user.plan == "free"


@pytest.mark.asyncio
async def test_unknown_user(fake_db: FakeDatabase) -> None:
    result = await BillingStateWriter(fake_db).write("missing", PRO, webhook_meta(T1))

    assert result.success is False
    assert result.reason == "user_not_found"
    assert fake_db.audit_rows == []


@pytest.mark.asyncio
async def test_database_error_is_reported(fake_db: FakeDatabase) -> None:
    fake_db.fail_with = OperationalError("SELECT", {}, Exception("connection lost"))

    with patch("entitlement_sync.billing.writer.capture_critical_error") as capture:
        result = await BillingStateWriter(fake_db).write("user_abc123", PRO, webhook_meta(T1))

    assert result.success is False
    assert result.error
    capture.assert_called_once()
    assert capture.call_args.kwargs["context"]["user_id"] == "user_abc123"


@pytest.mark.asyncio
async def test_reconciliation_write_skips_when_row_changed(fake_db: FakeDatabase) -> None:
    user = fake_db.add_user(is_pro=True, stripe_subscription_id="sub_new", billing_version=4)
    meta = EventMeta(
        source=BillingSource.RECONCILIATION,
        event_type=BillingEventType.RECONCILIATION_FIX,
        reason="status_mismatch",
        expected_billing_version=2,
    )

    result = await BillingStateWriter(fake_db).write(user.id, FREE, meta)

    assert result.success is True
    assert result.skipped is True
    assert result.reason == "record_changed"
    assert result.billing_version == 4
    assert user.is_pro is True
    assert user.stripe_subscription_id == "sub_new"
    assert user.billing_version == 4
    assert fake_db.audit_rows == []


@pytest.mark.asyncio
async def test_reconciliation_write_applies_when_version_matches(fake_db: FakeDatabase) -> None:
    user = fake_db.add_user(is_pro=True, stripe_subscription_id="sub_123", billing_version=2)
    meta = EventMeta(
        source=BillingSource.RECONCILIATION,
        event_type=BillingEventType.RECONCILIATION_FIX,
        reason="status_mismatch",
        expected_billing_version=2,
    )

    result = await BillingStateWriter(fake_db).write(user.id, FREE, meta)

    assert result.skipped is False
    assert result.billing_version == 3
    assert user.is_pro is False
