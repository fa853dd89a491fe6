"""Webhook dispatcher — verified Stripe events routed to the sync components.

Responsible for:
- Signature verification against STRIPE_WEBHOOK_SECRET
- Routing by event type through a handler table
- Recording each event's outcome in stripe_events (processed / skipped /
  ignored, or expired when Stripe no longer has it) and committing the
  unit of work
- Re-dispatching previously skipped events (provider retry or replay)

Handlers return Applied/Skipped; skips are acknowledged. Exceptions are
rolled back and re-raised so the delivery fails and Stripe retries it.
"""

import enum
import logging

import stripe

from paysync.errors import SignatureInvalid
from paysync.extensions import db
from paysync.models.stripe_event import StripeEvent
from paysync.services.catalog_service import get_customer, get_customer_by_email
from paysync.services.outcomes import Applied, Skipped, SkipReason
from paysync.services.stripe_objects import ref_id

logger = logging.getLogger(__name__)


class WebhookEventType(str, enum.Enum):
    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    SUBSCRIPTION_TRIAL_WILL_END = "customer.subscription.trial_will_end"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"

    @classmethod
    def parse(cls, value):
        """Return the member for value, or None for types we don't handle."""
        try:
            return cls(value)
        except ValueError:
            return None


# Events whose payload is a whole subscription object
SUBSCRIPTION_OBJECT_EVENTS = frozenset({
    WebhookEventType.SUBSCRIPTION_CREATED,
    WebhookEventType.SUBSCRIPTION_UPDATED,
    WebhookEventType.SUBSCRIPTION_DELETED,
    WebhookEventType.SUBSCRIPTION_TRIAL_WILL_END,
})


class WebhookDispatcher:
    def __init__(self, stripe_client, webhook_secret, identity, subscriptions,
                 resolver):
        self.stripe_client = stripe_client
        self.webhook_secret = webhook_secret
        self.identity = identity
        self.subscriptions = subscriptions
        self.resolver = resolver

        self.handlers = {
            WebhookEventType.CHECKOUT_SESSION_COMPLETED: self._on_checkout_completed,
            WebhookEventType.PAYMENT_INTENT_SUCCEEDED: resolver.on_payment_intent_succeeded,
            WebhookEventType.PAYMENT_INTENT_FAILED: resolver.on_payment_intent_failed,
            WebhookEventType.SUBSCRIPTION_CREATED: self._on_subscription_changed,
            WebhookEventType.SUBSCRIPTION_UPDATED: self._on_subscription_changed,
            WebhookEventType.SUBSCRIPTION_DELETED: self._on_subscription_deleted,
            WebhookEventType.SUBSCRIPTION_TRIAL_WILL_END: resolver.on_subscription_trial_will_end,
            WebhookEventType.INVOICE_PAYMENT_FAILED: resolver.on_invoice_payment_failed,
        }

    # ──────────────────────────────────────────────
    # Entry points
    # ──────────────────────────────────────────────

    def verify(self, payload, sig_header):
        """Verify the Stripe signature and construct the event.

        Raises SignatureInvalid on a missing header, bad signature, or
        unparseable payload.
        """
        if not sig_header:
            raise SignatureInvalid("Missing Stripe-Signature header")
        if not self.webhook_secret:
            raise SignatureInvalid("STRIPE_WEBHOOK_SECRET is not configured")
        try:
            return self.stripe_client.construct_event(
                payload, sig_header, self.webhook_secret
            )
        except (stripe.error.SignatureVerificationError, ValueError) as e:
            raise SignatureInvalid(f"Invalid signature: {e}")

    def handle(self, payload, sig_header):
        """Verify, then process one webhook delivery. Returns the response body."""
        event = self.verify(payload, sig_header)
        status = self.process_event(event)
        return {"received": True, "status": status}

    def process_event(self, event):
        """Process a verified event inside one unit of work.

        Returns "already_processed", "processed", "skipped" or "ignored".
        """
        event_id = event["id"]
        event_type = event["type"]
        logger.info(f"Received webhook event {event_id}: {event_type}")

        # --- Idempotency check ---
        ledger = StripeEvent.query.filter_by(stripe_event_id=event_id).first()
        if ledger is not None and ledger.is_settled:
            logger.info(f"Duplicate webhook event {event_id}, skipping")
            return "already_processed"

        try:
            # A ledger row here means the event was parked by an earlier attempt
            outcome = self.dispatch(event, redelivery=ledger is not None)
            ledger = self._record(ledger, event_id, event_type, outcome)
            db.session.commit()
        except Exception as e:
            logger.error(f"Error handling {event_type} ({event_id}): {e}", exc_info=True)
            db.session.rollback()
            raise

        return ledger.outcome

    def dispatch(self, event, redelivery=False):
        """Route an event to its handler. None for unhandled types.

        On redelivery of a parked subscription event the payload may be
        stale, so the subscription is refreshed from Stripe instead.
        """
        event_type = WebhookEventType.parse(event["type"])
        if event_type is None:
            logger.info(f"Unhandled event type: {event['type']}")
            return None
        if redelivery and event_type in SUBSCRIPTION_OBJECT_EVENTS:
            sub_id = event["data"]["object"].get("id")
            logger.info(f"Refreshing subscription {sub_id} for redelivered {event['id']}")
            return self.subscriptions.refresh(sub_id)
        return self.handlers[event_type](event)

    # ──────────────────────────────────────────────
    # Handlers owned by the dispatcher
    # ──────────────────────────────────────────────

    def _on_checkout_completed(self, event):
        """Link the Stripe customer to our customer, then sync the subscription."""
        session = event["data"]["object"]
        stripe_customer_id = ref_id(session.get("customer"))
        if not stripe_customer_id:
            logger.warning(f"Checkout completed event {event['id']} missing Stripe customer")
            return Skipped(SkipReason.MISSING_REFERENCE, f"session={session.get('id')}")

        metadata = session.get("metadata") or {}
        customer_id = session.get("client_reference_id") or metadata.get("customer_id")
        customer = get_customer(customer_id)
        if customer is None and not customer_id:
            # Sessions created outside our checkout endpoint carry only an email
            details = session.get("customer_details") or {}
            customer = get_customer_by_email(
                details.get("email") or session.get("customer_email")
            )
        if customer is None:
            logger.warning(
                f"Checkout session {session.get('id')} references unknown customer "
                f"{customer_id}; cannot link Stripe customer {stripe_customer_id}"
            )
            return Skipped(SkipReason.UNLINKED_IDENTITY, f"customer={customer_id}")

        mapping = self.identity.upsert(stripe_customer_id, customer.id)

        stripe_subscription_id = ref_id(session.get("subscription"))
        if stripe_subscription_id:
            outcome = self.subscriptions.resync(stripe_subscription_id)
            if isinstance(outcome, Skipped):
                return outcome
        return Applied(mapping)

    def _on_subscription_changed(self, event):
        return self.subscriptions.upsert_from_provider_object(event["data"]["object"])

    def _on_subscription_deleted(self, event):
        sub_data = event["data"]["object"]
        return self.subscriptions.remove_by_external_id(sub_data.get("id"))

    # ──────────────────────────────────────────────
    # Ledger
    # ──────────────────────────────────────────────

    def _record(self, ledger, event_id, event_type, outcome):
        if outcome is None:
            status, reason, detail = StripeEvent.IGNORED, None, None
        elif isinstance(outcome, Skipped):
            status, reason, detail = StripeEvent.SKIPPED, outcome.reason.value, outcome.detail
            logger.warning(f"Event {event_id} ({event_type}) skipped: {reason} {detail}")
        else:
            status, reason, detail = StripeEvent.PROCESSED, None, None

        if ledger is None:
            ledger = StripeEvent(
                stripe_event_id=event_id,
                event_type=event_type,
                attempts=1,
            )
            db.session.add(ledger)
        else:
            ledger.attempts = (ledger.attempts or 0) + 1

        ledger.outcome = status
        ledger.skip_reason = reason
        ledger.skip_detail = detail
        db.session.flush()
        return ledger

    def replay_skipped(self, limit=100):
        """Re-fetch skipped events from Stripe and process them again.

        Events Stripe no longer returns (it keeps them about 30 days) are
        marked expired and leave the queue. Returns (event_id, status) pairs.
        """
        pending = (
            StripeEvent.query
            .filter_by(outcome=StripeEvent.SKIPPED)
            .order_by(StripeEvent.processed_at.asc())
            .limit(limit)
            .all()
        )
        event_ids = [row.stripe_event_id for row in pending]

        results = []
        for event_id in event_ids:
            try:
                event = self.stripe_client.events.retrieve(event_id)
            except stripe.error.InvalidRequestError as e:
                results.append((event_id, self._expire(event_id, e)))
                continue
            results.append((event_id, self.process_event(event)))
        return results

    def _expire(self, event_id, error):
        logger.warning(f"Stripe no longer has parked event {event_id}: {error}")
        ledger = StripeEvent.query.filter_by(stripe_event_id=event_id).one()
        ledger.outcome = StripeEvent.EXPIRED
        ledger.skip_detail = f"{ledger.skip_detail or ''} (event unavailable: {error})".strip()
        db.session.commit()
        return ledger.outcome
