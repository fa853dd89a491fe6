"""Webhooks blueprint — /payments/webhooks

Receives Stripe webhook events. CSRF-exempt.
Raw body is required for signature verification.
"""

import logging

from flask import Blueprint, request, jsonify

from paysync.services.billing_engine import get_billing

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/payments")


@webhooks_bp.route("/webhooks", methods=["POST"])
def stripe_webhook():
    """Receive and process Stripe webhook events.

    1. Get raw body (required for signature verification)
    2. Verify signature with STRIPE_WEBHOOK_SECRET (500 if invalid)
    3. Dispatch the event (idempotent via the stripe_events ledger)
    4. Return 200 to acknowledge receipt, including skipped events

    Processing errors propagate as 500 so Stripe retries the delivery.
    CSRF is exempted for this blueprint in create_app().
    """
    payload = request.get_data(as_text=True)
    sig_header = request.headers.get("Stripe-Signature")

    result = get_billing().webhooks.handle(payload, sig_header)
    return jsonify(result), 200
