"""Core models: the user row that carries the billing projection."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, _generate_uuid


class User(Base):
    """User model.

    Only the billing columns are written by this service, and only through
    BillingStateWriter. Identity columns are owned by the auth service.
    """

    __tablename__ = "users"

    # Issued by the auth service (the JWT sub), not necessarily a UUID
    id: Mapped[str] = mapped_column(String(255), primary_key=True, default=_generate_uuid)
    external_auth_id: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True
    )
    email: Mapped[str | None] = mapped_column(String(255))
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Billing projection of Stripe state
    is_pro: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    plan: Mapped[str | None] = mapped_column(String(50))
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), unique=True, index=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255), index=True)
    billing_version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Creation time of the Stripe event that produced the current state
    last_billing_event_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    billing_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
