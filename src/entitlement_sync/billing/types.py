"""Value types passed between the webhook, handler, writer and reconciliation layers."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Classification of a failed Stripe read."""

    NOT_FOUND = "not_found"
    PROVIDER_ERROR = "provider_error"
    UNKNOWN = "unknown"


class BillingSource(str, Enum):
    """Origin of a billing state write."""

    WEBHOOK = "webhook"
    RECONCILIATION = "reconciliation"


class BillingEventType(str, Enum):
    """Types of billing events for the audit log."""

    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    CHECKOUT_COMPLETED = "checkout_completed"
    RECONCILIATION_FIX = "reconciliation_fix"


# Machine-readable skip/failure reasons
REASON_STALE_EVENT = "stale_event_ignored"
REASON_USER_NOT_FOUND = "user_not_found"
REASON_RECORD_CHANGED = "record_changed"
REASON_NO_SUBSCRIPTION = "invoice_has_no_subscription"
REASON_NO_USER = "no_user_id_in_subscription_metadata"
REASON_VALIDATION_ERROR = "validation_error"


@dataclass(frozen=True)
class ClassifiedError:
    """A caught error reduced to the small taxonomy business logic matches on."""

    kind: ErrorKind
    is_recoverable: bool
    message: str
    cause: object = None


@dataclass(frozen=True)
class InboundEvent:
    """A verified Stripe event."""

    id: str
    type: str
    created_at: datetime
    data_object: dict[str, Any]
    livemode: bool = False

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "InboundEvent":
        """Build from a decoded event body.

        Raises:
            KeyError, TypeError, ValueError: if required fields are missing or malformed
        """
        data = payload["data"]
        obj = data["object"]
        if not isinstance(obj, dict):
            raise TypeError("data.object must be an object")
        return cls(
            id=str(payload["id"]),
            type=str(payload["type"]),
            created_at=datetime.fromtimestamp(int(payload["created"]), tz=UTC),
            data_object=obj,
            livemode=bool(payload.get("livemode", False)),
        )


@dataclass(frozen=True)
class WebhookContext:
    """Everything a handler gets for one delivery."""

    event: InboundEvent

    @property
    def stripe_event_id(self) -> str:
        return self.event.id

    @property
    def stripe_event_timestamp(self) -> datetime:
        return self.event.created_at


@dataclass(frozen=True)
class HandlerResult:
    """Outcome of one handler run.

    success=False asks Stripe to redeliver; skipped means there was nothing to do.
    """

    success: bool
    skipped: bool = False
    reason: str | None = None
    error: str | None = None
    user_id: str | None = None
    is_active: bool | None = None
    plan: str | None = None

    @classmethod
    def ok(
        cls,
        *,
        user_id: str | None = None,
        is_active: bool | None = None,
        plan: str | None = None,
        reason: str | None = None,
    ) -> "HandlerResult":
        return cls(success=True, user_id=user_id, is_active=is_active, plan=plan, reason=reason)

    @classmethod
    def skip(
        cls,
        reason: str,
        error: str | None = None,
        user_id: str | None = None,
    ) -> "HandlerResult":
        return cls(success=True, skipped=True, reason=reason, error=error, user_id=user_id)

    @classmethod
    def fail(
        cls,
        error: str,
        reason: str | None = None,
        user_id: str | None = None,
    ) -> "HandlerResult":
        return cls(success=False, reason=reason, error=error, user_id=user_id)


@dataclass(frozen=True)
class BillingState:
    """Target billing fields for a write.

    stripe_customer_id=None keeps the stored customer; the subscription id is
    always written as given, so None clears it.
    """

    is_pro: bool
    plan: str | None = None
    stripe_subscription_id: str | None = None
    stripe_customer_id: str | None = None

    @property
    def effective_plan(self) -> str:
        return self.plan or ("pro" if self.is_pro else "free")


@dataclass(frozen=True)
class EventMeta:
    """Why a write is happening."""

    source: BillingSource
    event_type: BillingEventType
    event_timestamp: datetime | None = None
    stripe_event_id: str | None = None
    reason: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    # Reconciliation writes skip when the row moved past the version they were computed from
    expected_billing_version: int | None = None


@dataclass(frozen=True)
class WriteResult:
    """Outcome of BillingStateWriter.write."""

    success: bool
    skipped: bool = False
    reason: str | None = None
    error: str | None = None
    billing_version: int | None = None


@dataclass
class BillingRecord:
    """Read-only snapshot of a user's billing columns."""

    user_id: str
    is_pro: bool
    plan: str | None
    stripe_customer_id: str | None
    stripe_subscription_id: str | None
    billing_version: int = 0
    last_billing_event_at: datetime | None = None
    is_admin: bool = False

    def snapshot(self) -> dict[str, Any]:
        return {
            "is_pro": self.is_pro,
            "plan": self.plan,
            "stripe_customer_id": self.stripe_customer_id,
            "stripe_subscription_id": self.stripe_subscription_id,
        }
