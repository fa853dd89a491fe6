"""Payments blueprint — /payments/*

JSON API for the signed-in customer.

Routes:
- POST /payments/checkout                               — create a Checkout Session
- GET  /payments/session/<session_id>                   — look up an owned Checkout Session
- GET  /payments/histories                              — paginated payment history
- GET  /payments/subscriptions/histories                — paginated subscription history
- POST /payments/subscriptions/<subscription_id>/cancel — cancel a subscription
"""

import logging
import re

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user

from paysync.decorators import customer_required
from paysync.errors import ValidationFailed
from paysync.extensions import limiter
from paysync.services.billing_engine import get_billing
from paysync.services.history_service import list_payments, list_subscriptions

logger = logging.getLogger(__name__)

payments_bp = Blueprint("payments", __name__, url_prefix="/payments")

URL_RE = re.compile(r"^https?://[^\s/$.?#].[^\s]*$", re.IGNORECASE)


def _checkout_rate_limit():
    return current_app.config["CHECKOUT_RATE_LIMIT"]


def _json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationFailed("Request body must be a JSON object")
    return data


def _required_url(data, field):
    value = data.get(field)
    if not isinstance(value, str) or not URL_RE.match(value.strip()):
        raise ValidationFailed(f"{field} must be an http(s) URL")
    return value.strip()


# ──────────────────────────────────────────────
# POST /payments/checkout
# ──────────────────────────────────────────────

@payments_bp.route("/checkout", methods=["POST"])
@limiter.limit(_checkout_rate_limit)
@customer_required
def checkout():
    """Create a Stripe Checkout Session for a plan.

    Body: {"planId", "successUrl", "cancelUrl"}
    201 -> {"sessionId", "url", "trialDays"}
    """
    data = _json_body()
    plan_id = data.get("planId")
    if not isinstance(plan_id, str) or not plan_id.strip():
        raise ValidationFailed("planId is required")
    success_url = _required_url(data, "successUrl")
    cancel_url = _required_url(data, "cancelUrl")

    result = get_billing().checkout.create_checkout_session(
        plan_id=plan_id.strip(),
        success_url=success_url,
        cancel_url=cancel_url,
        customer=current_user,
    )
    return jsonify(result), 201


# ──────────────────────────────────────────────
# GET /payments/session/<session_id>
# ──────────────────────────────────────────────

@payments_bp.route("/session/<session_id>")
@customer_required
def checkout_session(session_id):
    """Status of a Checkout Session the caller owns."""
    result = get_billing().checkout.get_checkout_session(session_id, current_user)
    return jsonify(result)


# ──────────────────────────────────────────────
# History
# ──────────────────────────────────────────────

@payments_bp.route("/histories")
@customer_required
def payment_histories():
    return jsonify(list_payments(current_user.id, request.args))


@payments_bp.route("/subscriptions/histories")
@customer_required
def subscription_histories():
    return jsonify(list_subscriptions(current_user.id, request.args))


# ──────────────────────────────────────────────
# POST /payments/subscriptions/<subscription_id>/cancel
# ──────────────────────────────────────────────

@payments_bp.route("/subscriptions/<subscription_id>/cancel", methods=["POST"])
@customer_required
def cancel_subscription(subscription_id):
    """Cancel one of the caller's subscriptions.

    Body (optional): {"atPeriodEnd": true}. Immediate cancellation
    removes the local row once Stripe's deletion webhook arrives.
    """
    data = request.get_json(silent=True) or {}
    at_period_end = data.get("atPeriodEnd", True)
    if not isinstance(at_period_end, bool):
        raise ValidationFailed("atPeriodEnd must be a boolean")

    sub = get_billing().subscriptions.cancel(
        subscription_id, current_user, at_period_end=at_period_end
    )
    return jsonify(sub.to_dict())
