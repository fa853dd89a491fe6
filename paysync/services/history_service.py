"""Payment and subscription history for the signed-in customer.

Paginated, newest first, filterable from query-string arguments.
"""

from datetime import datetime

from flask import current_app

from paysync.errors import ValidationFailed
from paysync.models.billing import (
    Payment,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
)

DEFAULT_PAGE_SIZE = 10


def _positive_int(args, name, default):
    raw = args.get(name)
    if raw in (None, ""):
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValidationFailed(f"{name} must be an integer")
    if value < 1:
        raise ValidationFailed(f"{name} must be at least 1")
    return value


def _page_args(args):
    page = _positive_int(args, "page", 1)
    limit = _positive_int(args, "limit", DEFAULT_PAGE_SIZE)
    return page, min(limit, current_app.config["HISTORY_PAGE_SIZE_MAX"])


def _enum_arg(args, name, enum_cls):
    raw = args.get(name)
    if not raw:
        return None
    try:
        return enum_cls(raw.lower()).value
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationFailed(f"{name} must be one of: {allowed}")


def _date_arg(args, name):
    raw = args.get(name)
    if not raw:
        return None
    try:
        # fromisoformat() only accepts a trailing "Z" on Python 3.11+
        return datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationFailed(f"{name} must be an ISO-8601 date")


def _paginated(pagination, page, limit):
    return {
        "items": [item.to_dict() for item in pagination.items],
        "total": pagination.total,
        "page": page,
        "limit": limit,
        "totalPages": pagination.pages,
    }


def list_payments(customer_id, args):
    """Payments of one customer.

    Filters: paymentStatus, subscriptionStatus, planId.
    """
    page, limit = _page_args(args)
    payment_status = _enum_arg(args, "paymentStatus", PaymentStatus)
    subscription_status = _enum_arg(args, "subscriptionStatus", SubscriptionStatus)
    plan_id = args.get("planId")

    query = (
        Payment.query
        .outerjoin(Subscription, Payment.subscription_id == Subscription.id)
        .filter(Payment.customer_id == customer_id)
    )
    if payment_status:
        query = query.filter(Payment.status == payment_status)
    if subscription_status:
        query = query.filter(Subscription.status == subscription_status)
    if plan_id:
        query = query.filter(Subscription.plan_id == plan_id)

    query = query.order_by(Payment.created_at.desc(), Payment.id.desc())
    pagination = query.paginate(page=page, per_page=limit, error_out=False)
    return _paginated(pagination, page, limit)


def list_subscriptions(customer_id, args):
    """Subscriptions of one customer.

    Filters: status, planId, startFrom/startTo (current period start),
    endFrom/endTo (current period end).
    """
    page, limit = _page_args(args)
    status = _enum_arg(args, "status", SubscriptionStatus)
    plan_id = args.get("planId")
    start_from = _date_arg(args, "startFrom")
    start_to = _date_arg(args, "startTo")
    end_from = _date_arg(args, "endFrom")
    end_to = _date_arg(args, "endTo")

    query = Subscription.query.filter(Subscription.customer_id == customer_id)
    if status:
        query = query.filter(Subscription.status == status)
    if plan_id:
        query = query.filter(Subscription.plan_id == plan_id)
    if start_from:
        query = query.filter(Subscription.current_period_start_at >= start_from)
    if start_to:
        query = query.filter(Subscription.current_period_start_at <= start_to)
    if end_from:
        query = query.filter(Subscription.current_period_end_at >= end_from)
    if end_to:
        query = query.filter(Subscription.current_period_end_at <= end_to)

    query = query.order_by(Subscription.created_at.desc(), Subscription.id.desc())
    pagination = query.paginate(page=page, per_page=limit, error_out=False)
    return _paginated(pagination, page, limit)
