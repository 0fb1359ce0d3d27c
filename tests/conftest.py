"""
Pytest fixtures for the entitlement sync tests.

This module provides:
- Test environment settings (set before the application is imported)
- An in-memory session factory for BillingStateWriter
- Stripe payload builders and webhook signing
"""

import hashlib
import hmac
import json
import os
import time
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock

import pytest

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key-that-is-long-enough-for-tests")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_123")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("CRON_SECRET", "cron-secret-for-tests")
os.environ.setdefault(
    "STRIPE_PRICE_PLANS", '{"price_standard": "standard", "price_team": "team"}'
)
os.environ.setdefault("RECONCILIATION_ENABLED", "false")

from entitlement_sync.billing.cache import BillingCacheInvalidator  # noqa: E402
from entitlement_sync.billing.plans import PlanResolver  # noqa: E402
from entitlement_sync.billing.provider import StripeBillingProvider  # noqa: E402
from entitlement_sync.billing.store import BillingStore  # noqa: E402
from entitlement_sync.billing.types import InboundEvent, WebhookContext  # noqa: E402
from entitlement_sync.database.models import BillingAuditLog, User  # noqa: E402

WEBHOOK_SECRET = os.environ["STRIPE_WEBHOOK_SECRET"]
PRICE_PLANS = {"price_standard": "standard", "price_team": "team"}


# ============== In-memory database for the writer ==============


class FakeResult:
    def __init__(self, value: Any) -> None:
        self._value = value

    def scalar_one_or_none(self) -> Any:
        return self._value


class FakeTransaction:
    def __init__(self, session: "FakeSession") -> None:
        self.session = session

    async def __aenter__(self) -> "FakeTransaction":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:  # noqa: ANN001
        if exc_type is None:
            self.session.database.audit_rows.extend(self.session.added)
            self.session.database.commits += 1
        else:
            self.session.database.rollbacks += 1
        return False


class FakeSession:
    """Just enough of AsyncSession for a locked select, add and commit."""

    def __init__(self, database: "FakeDatabase") -> None:
        self.database = database
        self.added: list[Any] = []
        self.statements: list[Any] = []

    async def execute(self, statement: Any) -> FakeResult:
        if self.database.fail_with is not None:
            raise self.database.fail_with
        self.statements.append(statement)
        params = statement.compile().params
        user_id = next(iter(params.values()))
        return FakeResult(self.database.users.get(user_id))

    def add(self, obj: Any) -> None:
        self.added.append(obj)

    def begin(self) -> FakeTransaction:
        return FakeTransaction(self)

    async def __aenter__(self) -> "FakeSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        return None


class FakeDatabase:
    """Users keyed by id plus committed audit rows; callable as a session factory."""

    def __init__(self) -> None:
        self.users: dict[str, User] = {}
        self.audit_rows: list[BillingAuditLog] = []
        self.commits = 0
        self.rollbacks = 0
        self.fail_with: Exception | None = None
        self.sessions: list[FakeSession] = []

    def __call__(self) -> FakeSession:
        session = FakeSession(self)
        self.sessions.append(session)
        return session

    def add_user(
        self,
        user_id: str = "user_abc123",
        *,
        is_pro: bool = False,
        plan: str | None = "free",
        stripe_customer_id: str | None = "cus_123",
        stripe_subscription_id: str | None = None,
        billing_version: int = 0,
        last_billing_event_at: datetime | None = None,
    ) -> User:
        user = User(
            id=user_id,
            external_auth_id=f"auth|{user_id}",
            email=f"{user_id}@example.com",
            is_admin=False,
            is_pro=is_pro,
            plan=plan,
            stripe_customer_id=stripe_customer_id,
            stripe_subscription_id=stripe_subscription_id,
            billing_version=billing_version,
            last_billing_event_at=last_billing_event_at,
        )
        self.users[user_id] = user
        return user


@pytest.fixture
def fake_db() -> FakeDatabase:
    return FakeDatabase()


# ============== Stripe payloads ==============


def make_subscription(
    subscription_id: str = "sub_123",
    *,
    status: str = "active",
    price_id: str | None = "price_standard",
    customer: Any = "cus_123",
    user_id: str | None = "user_abc123",
) -> dict[str, Any]:
    """A subscription as returned by stripe.Subscription.retrieve(...).to_dict()."""
    return {
        "id": subscription_id,
        "object": "subscription",
        "status": status,
        "customer": customer,
        "metadata": {"user_id": user_id} if user_id else {},
        "items": {
            "object": "list",
            "data": [{"id": "si_1", "price": {"id": price_id}}] if price_id else [],
        },
    }


def make_invoice(
    invoice_id: str = "in_123",
    *,
    subscription: str | None = "sub_123",
    customer: str = "cus_123",
) -> dict[str, Any]:
    invoice: dict[str, Any] = {"id": invoice_id, "object": "invoice", "customer": customer}
    if subscription is not None:
        invoice["subscription"] = subscription
    return invoice


def make_event(
    event_type: str,
    data_object: dict[str, Any],
    *,
    event_id: str = "evt_1",
    created: int = 1_700_000_000,
) -> dict[str, Any]:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created,
        "livemode": False,
        "data": {"object": data_object},
    }


def make_context(
    event_type: str,
    data_object: dict[str, Any],
    *,
    event_id: str = "evt_1",
    created: int = 1_700_000_000,
) -> WebhookContext:
    event = InboundEvent.from_payload(
        make_event(event_type, data_object, event_id=event_id, created=created)
    )
    return WebhookContext(event=event)


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header the way Stripe signs deliveries."""
    timestamp = timestamp if timestamp is not None else int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode()
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def encode_event(event: dict[str, Any]) -> bytes:
    return json.dumps(event).encode("utf-8")


def at(epoch_seconds: int) -> datetime:
    return datetime.fromtimestamp(epoch_seconds, tz=UTC)


# ============== Collaborators ==============


@pytest.fixture
def plans() -> PlanResolver:
    return PlanResolver(PRICE_PLANS)


@pytest.fixture
def provider() -> AsyncMock:
    return AsyncMock(spec=StripeBillingProvider)


@pytest.fixture
def store() -> AsyncMock:
    mock = AsyncMock(spec=BillingStore)
    mock.find_user_id_by_customer.return_value = None
    mock.get_billing_record.return_value = None
    return mock


@pytest.fixture
def invalidator() -> AsyncMock:
    return AsyncMock(spec=BillingCacheInvalidator)
