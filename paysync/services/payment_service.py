"""Payment recorder — the local payment ledger.

One row per Stripe payment intent, upserted by stripe_payment_intent_id so
a redelivered event updates the same row. A payment is only recorded once
its Stripe customer is linked; the subscription link is optional.
"""

import logging
from decimal import Decimal

from paysync.errors import UnlinkedIdentity
from paysync.extensions import db
from paysync.models.billing import (
    PAYMENT_TABLE_NAME,
    Payment,
    PaymentStatus,
    SubscriptionStatus,
)
from paysync.services.outcomes import Applied, Skipped, SkipReason
from paysync.services.stripe_objects import from_unix

logger = logging.getLogger(__name__)


def derive_payment_status(intent_status, target_status):
    """Payment status from the intent's status and the subscription outcome.

    succeeded intent, or a payment that activates the subscription -> PAID
    failed payment, or an intent needing a new payment method     -> FAILED
    anything else                                                 -> PENDING
    """
    if intent_status == "succeeded" or target_status == SubscriptionStatus.ACTIVE:
        return PaymentStatus.PAID
    if (target_status == SubscriptionStatus.INCOMPLETE
            or intent_status == "requires_payment_method"):
        return PaymentStatus.FAILED
    return PaymentStatus.PENDING


def _amount_from_cents(intent):
    # amount_received is 0 on a failed intent; fall back only when absent
    cents = intent.get("amount_received")
    if cents is None:
        cents = intent.get("amount") or 0
    return (Decimal(cents) / 100).quantize(Decimal("0.01"))


class PaymentRecorder:
    def __init__(self, identity, subscriptions, cache):
        self.identity = identity
        self.subscriptions = subscriptions
        self.cache = cache

    def record(self, payment_intent, target_status, stripe_invoice_id=None,
               stripe_subscription_id=None, stripe_customer_id=None):
        """Upsert the Payment row for a Stripe payment intent.

        Returns Applied(payment), or Skipped when the Stripe customer is
        missing or not linked to one of our customers.
        """
        intent_id = payment_intent.get("id")

        if not stripe_customer_id:
            logger.warning(
                f"Skipping payment intent {intent_id}: no Stripe customer reference"
            )
            return Skipped(SkipReason.MISSING_REFERENCE, f"intent={intent_id}")

        try:
            mapping = self.identity.find_by_stripe_customer_id(stripe_customer_id)
        except UnlinkedIdentity:
            logger.warning(
                f"Stripe customer {stripe_customer_id} not linked to a customer; "
                f"skipping payment record for intent {intent_id}"
            )
            return Skipped(
                SkipReason.UNLINKED_IDENTITY,
                f"customer={stripe_customer_id}",
            )

        subscription_id = None
        sub = self.subscriptions.find_by_external_id(stripe_subscription_id)
        if sub is not None:
            subscription_id = sub.id

        status = derive_payment_status(payment_intent.get("status"), target_status)
        paid_at = None
        if status == PaymentStatus.PAID:
            paid_at = from_unix(payment_intent.get("created"))

        payment = Payment.query.filter_by(stripe_payment_intent_id=intent_id).first()
        is_new = payment is None
        if is_new:
            payment = Payment(stripe_payment_intent_id=intent_id)

        payment.customer_id = mapping.customer_id
        payment.subscription_id = subscription_id
        payment.stripe_invoice_id = stripe_invoice_id
        payment.amount = _amount_from_cents(payment_intent)
        payment.currency = (payment_intent.get("currency") or "usd").lower()
        payment.status = status.value
        payment.paid_at = paid_at

        if is_new:
            db.session.add(payment)
        db.session.flush()
        self.cache.clear_related_caches(PAYMENT_TABLE_NAME)

        logger.info(
            f"Recorded payment intent {intent_id} as {status.value} "
            f"(subscription={stripe_subscription_id or 'none'})"
        )
        return Applied(payment)
