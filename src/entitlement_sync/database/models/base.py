"""Declarative base shared by the entitlement models."""

from uuid import uuid4

from sqlalchemy.orm import DeclarativeBase


def _generate_uuid() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    """Base class for the users, audit, dedup and reconciliation tables."""
