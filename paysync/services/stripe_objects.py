"""Helpers for reading Stripe objects.

Webhook payloads and API responses differ in shape depending on the API
version and on which fields were expanded, so every lookup here accepts
both an ID string and an expanded object, and checks both the old and
the new location of moved fields.
"""

from datetime import datetime, timezone


def ref_id(value):
    """Return the ID of an expandable field (ID string or expanded object)."""
    if not value:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


def from_unix(ts):
    """Convert a Stripe unix timestamp to a timezone-aware datetime."""
    if ts is None or isinstance(ts, bool):
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def _first_item(sub_data):
    items = sub_data.get("items")
    if items and items.get("data"):
        return items["data"][0]
    return None


def extract_price_id(sub_data):
    """Price ID of the subscription's first item, or None."""
    item = _first_item(sub_data)
    if not item:
        return None
    return ref_id(item.get("price"))


def extract_period(sub_data):
    """Return (current_period_start, current_period_end) as datetimes.

    In newer Stripe API versions the period bounds moved from the
    subscription top level to items.data[0]. This helper checks both.
    """
    start = sub_data.get("current_period_start")
    end = sub_data.get("current_period_end")

    if not start or not end:
        item = _first_item(sub_data) or {}
        start = start or item.get("current_period_start")
        end = end or item.get("current_period_end")

    return from_unix(start), from_unix(end)


def invoice_subscription_id(invoice):
    """Subscription ID an invoice bills for, or None.

    Older API versions expose invoice.subscription; newer ones nest it
    under invoice.parent.subscription_details.subscription.
    """
    sub_id = ref_id(invoice.get("subscription"))
    if sub_id:
        return sub_id
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return ref_id(details.get("subscription"))


def invoice_paid_at(invoice):
    """paid_at from an expanded invoice, or None for a bare ID."""
    if not invoice or isinstance(invoice, str):
        return None
    transitions = invoice.get("status_transitions") or {}
    return from_unix(transitions.get("paid_at"))
