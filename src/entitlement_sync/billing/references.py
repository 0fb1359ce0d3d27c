"""Helpers for reading Stripe object references.

Stripe returns a related object either as its bare id or, when expanded,
as the object itself. Every reference read goes through get_object_id.
"""

from collections.abc import Mapping
from typing import Any


def get_object_id(ref: Any) -> str | None:
    """Return the id of a Stripe reference, or None if there isn't one."""
    if ref is None:
        return None
    if isinstance(ref, str):
        return ref or None
    if isinstance(ref, Mapping):
        ref_id = ref.get("id")
    else:
        ref_id = getattr(ref, "id", None)
    if isinstance(ref_id, str) and ref_id:
        return ref_id
    return None


def get_metadata(obj: Any) -> dict[str, Any]:
    """Return an object's metadata as a plain dict."""
    metadata = obj.get("metadata") if isinstance(obj, Mapping) else getattr(obj, "metadata", None)
    if isinstance(metadata, Mapping):
        return dict(metadata)
    return {}


def get_price_id(subscription: Mapping[str, Any]) -> str | None:
    """Return the price id of a subscription's first line item."""
    items = subscription.get("items") or {}
    data = items.get("data") if isinstance(items, Mapping) else None
    if not data:
        return None
    price = data[0].get("price") if isinstance(data[0], Mapping) else None
    return get_object_id(price)


def get_invoice_subscription_id(invoice: Mapping[str, Any]) -> str | None:
    """Return the subscription an invoice bills for.

    Newer API versions move the reference under parent.subscription_details.
    """
    sub_id = get_object_id(invoice.get("subscription"))
    if sub_id:
        return sub_id
    parent = invoice.get("parent")
    if isinstance(parent, Mapping):
        details = parent.get("subscription_details")
        if isinstance(details, Mapping):
            return get_object_id(details.get("subscription"))
    return None
