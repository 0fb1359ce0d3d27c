"""Billing models: audit log, webhook dedup markers and reconciliation runs."""

from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, _generate_uuid


class BillingAuditLog(Base):
    """Append-only record of every accepted billing state write."""

    __tablename__ = "billing_audit_log"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_generate_uuid)
    user_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # subscription_updated, payment_succeeded, reconciliation_fix, etc.
    event_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    # webhook or reconciliation
    source: Mapped[str] = mapped_column(String(20), nullable=False)

    # Snapshots of {is_pro, plan, stripe_customer_id, stripe_subscription_id}
    previous_state: Mapped[dict[str, Any]] = mapped_column(JSONB, default=dict, nullable=False)
    new_state: Mapped[dict[str, Any]] = mapped_column(JSONB, default=dict, nullable=False)

    stripe_event_id: Mapped[str | None] = mapped_column(String(100), index=True)
    # "metadata" is reserved on declarative classes
    event_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONB, default=dict, nullable=False
    )

    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (Index("ix_billing_audit_log_user_occurred", "user_id", "occurred_at"),)


class StripeWebhookEvent(Base):
    """Dedup marker, one row per claimed Stripe event id."""

    __tablename__ = "stripe_webhook_events"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_generate_uuid)
    stripe_event_id: Mapped[str] = mapped_column(
        String(100),
        unique=True,
        nullable=False,
        index=True,
    )
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    stripe_object_id: Mapped[str | None] = mapped_column(String(255))
    livemode: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # processing -> processed; failed claims are deleted so redelivery can re-claim
    status: Mapped[str] = mapped_column(String(20), default="processing", nullable=False)
    error: Mapped[str | None] = mapped_column(Text)

    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class ReconciliationRun(Base):
    """Outcome of one reconciliation sweep."""

    __tablename__ = "reconciliation_runs"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_generate_uuid)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    success: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    stats: Mapped[dict[str, Any]] = mapped_column(JSONB, default=dict, nullable=False)
    errors: Mapped[list[str]] = mapped_column(JSONB, default=list, nullable=False)
