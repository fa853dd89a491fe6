"""Status resolver — invoice and payment intent events -> subscription status.

Payment intents reference their invoice; the invoice names the
subscription and the Stripe customer. The resolver moves the subscription
status, refreshes the subscription from Stripe after a successful payment
(for fresh period dates) and always hands the intent to the payment
recorder, linked to a subscription or not.
"""

import logging

import stripe

from paysync.models.billing import SubscriptionStatus
from paysync.services.outcomes import Skipped, SkipReason
from paysync.services.stripe_objects import invoice_subscription_id, ref_id

logger = logging.getLogger(__name__)

# Where checkout integrations put the subscription ID on a payment intent.
METADATA_SUBSCRIPTION_KEYS = (
    "subscription_id",
    "subscription",
    "stripe_subscription_id",
)


class StatusResolver:
    def __init__(self, stripe_client, subscriptions, payments):
        self.stripe_client = stripe_client
        self.subscriptions = subscriptions
        self.payments = payments

    # ──────────────────────────────────────────────
    # Event entry points
    # ──────────────────────────────────────────────

    def on_payment_intent_succeeded(self, event):
        return self._apply_payment_intent(event, SubscriptionStatus.ACTIVE)

    def on_payment_intent_failed(self, event):
        return self._apply_payment_intent(event, SubscriptionStatus.INCOMPLETE)

    def on_invoice_payment_failed(self, event):
        """invoice.payment_failed -> subscription PAST_DUE."""
        invoice = event["data"]["object"]
        sub_id = invoice_subscription_id(invoice)
        if not sub_id:
            logger.warning(
                f"Invoice {invoice.get('id')} payment failed but has no subscription reference"
            )
            return Skipped(SkipReason.MISSING_REFERENCE, f"invoice={invoice.get('id')}")
        return self.subscriptions.update_status_only(sub_id, SubscriptionStatus.PAST_DUE)

    def on_subscription_trial_will_end(self, event):
        """customer.subscription.trial_will_end -> reaffirm TRIALING."""
        sub_data = event["data"]["object"]
        return self.subscriptions.update_status_only(
            sub_data.get("id"), SubscriptionStatus.TRIALING
        )

    # ──────────────────────────────────────────────
    # Internals
    # ──────────────────────────────────────────────

    def _retrieve_invoice(self, invoice_id):
        """Fetch an invoice; None if Stripe does not know it."""
        try:
            return self.stripe_client.invoices.retrieve(invoice_id)
        except stripe.error.InvalidRequestError as e:
            logger.warning(f"Stripe has no invoice {invoice_id}: {e}")
            return None

    def _move_subscription(self, stripe_subscription_id, target_status):
        # update_status_only resyncs by itself when there is no local row
        known = self.subscriptions.find_by_external_id(stripe_subscription_id) is not None
        self.subscriptions.update_status_only(stripe_subscription_id, target_status)
        if target_status == SubscriptionStatus.ACTIVE and known:
            self.subscriptions.resync(stripe_subscription_id)

    def _apply_payment_intent(self, event, target_status):
        intent = event["data"]["object"]
        invoice_id = ref_id(intent.get("invoice"))

        stripe_subscription_id = None
        stripe_customer_id = None

        if invoice_id:
            invoice = self._retrieve_invoice(invoice_id)
            if invoice is not None:
                stripe_subscription_id = invoice_subscription_id(invoice)
                stripe_customer_id = ref_id(invoice.get("customer"))

        if not stripe_subscription_id:
            metadata = intent.get("metadata") or {}
            for key in METADATA_SUBSCRIPTION_KEYS:
                if metadata.get(key):
                    stripe_subscription_id = metadata[key]
                    break

        if stripe_subscription_id:
            self._move_subscription(stripe_subscription_id, target_status)
        else:
            logger.warning(
                f"Payment intent {intent.get('id')} has no subscription reference; "
                f"recording payment only"
            )

        if not stripe_customer_id:
            stripe_customer_id = ref_id(intent.get("customer"))

        return self.payments.record(
            intent,
            target_status,
            stripe_invoice_id=invoice_id,
            stripe_subscription_id=stripe_subscription_id,
            stripe_customer_id=stripe_customer_id,
        )
