"""Subscription synchronizer — local subscriptions mirrored from Stripe.

Responsible for:
- Mapping Stripe subscription objects onto the subscriptions table
  (keyed by stripe_subscription_id, so redelivery updates in place)
- Status-only updates driven by invoice / payment intent events
- Hard delete on customer.subscription.deleted
- The "one non-terminal subscription per customer" lookup used by checkout
- Customer-initiated cancellation

Writes use flush(); the caller owns the commit.
"""

import logging

import stripe

from paysync.errors import ForbiddenAccess, NotFound, UnlinkedIdentity
from paysync.extensions import db
from paysync.models.billing import (
    EXPECTED_TRANSITIONS,
    SUBSCRIPTION_TABLE_NAME,
    TERMINAL_STATUSES,
    Payment,
    Subscription,
    SubscriptionStatus,
)
from paysync.services.catalog_service import get_plan_by_price_id
from paysync.services.outcomes import Applied, Skipped, SkipReason
from paysync.services.stripe_objects import (
    extract_period,
    extract_price_id,
    from_unix,
    invoice_paid_at,
    ref_id,
)

logger = logging.getLogger(__name__)

NON_TERMINAL_STATUS_VALUES = [
    s.value for s in SubscriptionStatus if s not in TERMINAL_STATUSES
]


def map_stripe_status(stripe_status):
    """Map a Stripe subscription status string to SubscriptionStatus.

    Unknown values fall back to INCOMPLETE, which grants no access.
    """
    try:
        return SubscriptionStatus(stripe_status)
    except ValueError:
        logger.warning(f"Unhandled Stripe subscription status: {stripe_status}")
        return SubscriptionStatus.INCOMPLETE


def _note_transition(sub, new_status):
    """Log status moves Stripe is not expected to make. Never rejects."""
    if sub.status == new_status.value:
        return
    try:
        old_status = SubscriptionStatus(sub.status)
    except ValueError:
        return
    if new_status not in EXPECTED_TRANSITIONS.get(old_status, set()):
        logger.warning(
            f"Unexpected transition for {sub.stripe_subscription_id}: "
            f"{old_status.value} -> {new_status.value}"
        )


class SubscriptionSynchronizer:
    def __init__(self, stripe_client, identity, cache):
        self.stripe_client = stripe_client
        self.identity = identity
        self.cache = cache

    # ──────────────────────────────────────────────
    # Lookups
    # ──────────────────────────────────────────────

    def find_by_external_id(self, stripe_subscription_id):
        if not stripe_subscription_id:
            return None
        return Subscription.query.filter_by(
            stripe_subscription_id=stripe_subscription_id
        ).first()

    def find_current_by_customer(self, customer_id):
        """Return the customer's subscription in a non-terminal status, if any."""
        return (
            Subscription.query
            .filter(
                Subscription.customer_id == customer_id,
                Subscription.status.in_(NON_TERMINAL_STATUS_VALUES),
            )
            .order_by(Subscription.created_at.desc())
            .first()
        )

    # ──────────────────────────────────────────────
    # Sync from Stripe
    # ──────────────────────────────────────────────

    def upsert_from_provider_object(self, sub_data):
        """Create or update the local row for a Stripe subscription object.

        Skips (without writing) when the price maps to no plan, or when the
        Stripe customer has not been linked by a completed checkout yet.
        """
        stripe_subscription_id = sub_data.get("id")

        stripe_price_id = extract_price_id(sub_data)
        plan = get_plan_by_price_id(stripe_price_id)
        if plan is None:
            logger.error(
                f"No plan found with Stripe price {stripe_price_id} "
                f"for subscription {stripe_subscription_id}"
            )
            return Skipped(
                SkipReason.MISSING_PLAN_MAPPING,
                f"price={stripe_price_id}",
            )

        stripe_customer_id = ref_id(sub_data.get("customer"))
        try:
            mapping = self.identity.find_by_stripe_customer_id(stripe_customer_id)
        except UnlinkedIdentity:
            logger.warning(
                f"Stripe customer {stripe_customer_id} not linked to a customer yet; "
                f"skipping sync of subscription {stripe_subscription_id}"
            )
            return Skipped(
                SkipReason.UNLINKED_IDENTITY,
                f"customer={stripe_customer_id}",
            )

        status = map_stripe_status(sub_data.get("status"))
        period_start, period_end = extract_period(sub_data)
        latest_invoice = sub_data.get("latest_invoice")

        sub = self.find_by_external_id(stripe_subscription_id)
        is_new = sub is None
        if is_new:
            sub = Subscription(stripe_subscription_id=stripe_subscription_id)
        else:
            _note_transition(sub, status)

        sub.plan_id = plan.id
        sub.customer_id = mapping.customer_id
        sub.status = status.value
        if period_start:
            sub.current_period_start_at = period_start
        if period_end:
            sub.current_period_end_at = period_end
        sub.trial_start_at = from_unix(sub_data.get("trial_start"))
        sub.trial_end_at = from_unix(sub_data.get("trial_end"))
        sub.cancel_at = from_unix(sub_data.get("cancel_at"))
        sub.cancel_at_period_end = bool(sub_data.get("cancel_at_period_end", False))
        sub.canceled_at = from_unix(sub_data.get("canceled_at"))
        paid_at = invoice_paid_at(latest_invoice)
        if paid_at:
            sub.paid_at = paid_at
        if latest_invoice:
            sub.latest_invoice_id = ref_id(latest_invoice)

        if is_new:
            db.session.add(sub)
        db.session.flush()
        self._warn_if_duplicate_current(sub)
        self.cache.clear_related_caches(SUBSCRIPTION_TABLE_NAME)

        logger.info(f"Upserted subscription {stripe_subscription_id} as {sub.status}")
        return Applied(sub)

    def resync(self, stripe_subscription_id):
        """Fetch the subscription from Stripe and upsert it.

        A subscription Stripe does not know is a Skipped outcome; any other
        Stripe error propagates so the webhook delivery is retried.
        """
        sub_data = self._retrieve(stripe_subscription_id)
        if sub_data is None:
            return Skipped(
                SkipReason.UNKNOWN_SUBSCRIPTION,
                f"subscription={stripe_subscription_id}",
            )
        return self.upsert_from_provider_object(sub_data)

    def refresh(self, stripe_subscription_id):
        """Bring the local row in line with Stripe's current subscription.

        Used when an old subscription event is handled again, since its
        payload may predate changes already applied. A subscription Stripe
        has ended (or no longer knows) is removed, as the deletion event
        would; anything else is upserted from the fresh object.
        """
        sub_data = self._retrieve(stripe_subscription_id)
        if sub_data is not None and not map_stripe_status(sub_data.get("status")).is_terminal:
            return self.upsert_from_provider_object(sub_data)

        if self.find_by_external_id(stripe_subscription_id) is None:
            logger.info(f"Subscription {stripe_subscription_id} already gone locally and on Stripe")
            return Applied(None)
        return self.remove_by_external_id(stripe_subscription_id)

    def _retrieve(self, stripe_subscription_id):
        """Fetch a subscription from Stripe; None if Stripe does not know it."""
        try:
            return self.stripe_client.subscriptions.retrieve(
                stripe_subscription_id,
                params={"expand": ["items.data.price", "latest_invoice"]},
            )
        except stripe.error.InvalidRequestError as e:
            logger.warning(f"Stripe has no subscription {stripe_subscription_id}: {e}")
            return None

    def update_status_only(self, stripe_subscription_id, status):
        """Set just the status of a local subscription.

        If no local row exists, resync once from Stripe and retry; if the
        row still does not exist, give up with a Skipped outcome.
        """
        if not stripe_subscription_id:
            logger.warning("Attempted to update subscription status without subscription id")
            return Skipped(SkipReason.MISSING_REFERENCE, "subscription id missing")

        sub = self.find_by_external_id(stripe_subscription_id)
        if sub is None:
            self.resync(stripe_subscription_id)
            sub = self.find_by_external_id(stripe_subscription_id)
        if sub is None:
            logger.warning(
                f"Cannot set status {status.value} on unknown subscription "
                f"{stripe_subscription_id}"
            )
            return Skipped(
                SkipReason.UNKNOWN_SUBSCRIPTION,
                f"subscription={stripe_subscription_id}",
            )

        if sub.status != status.value:
            _note_transition(sub, status)
            sub.status = status.value
            db.session.flush()
            self.cache.clear_related_caches(SUBSCRIPTION_TABLE_NAME)
            logger.info(f"Updated subscription {stripe_subscription_id} status to {status.value}")
        return Applied(sub)

    def remove_by_external_id(self, stripe_subscription_id):
        """Hard-delete the local subscription. No-op if it is not known."""
        sub = self.find_by_external_id(stripe_subscription_id)
        if sub is None:
            logger.warning(f"Attempted to remove unknown subscription {stripe_subscription_id}")
            return Skipped(
                SkipReason.UNKNOWN_SUBSCRIPTION,
                f"subscription={stripe_subscription_id}",
            )

        # Payments outlive their subscription.
        Payment.query.filter_by(subscription_id=sub.id).update(
            {"subscription_id": None}, synchronize_session=False
        )
        db.session.delete(sub)
        db.session.flush()
        self.cache.clear_related_caches(SUBSCRIPTION_TABLE_NAME)
        logger.info(f"Removed subscription {stripe_subscription_id}")
        return Applied(None)

    # ──────────────────────────────────────────────
    # Customer-initiated cancellation
    # ──────────────────────────────────────────────

    def cancel(self, stripe_subscription_id, customer, at_period_end=True):
        """Cancel a customer's subscription on Stripe and sync the result.

        at_period_end=True keeps access until the current period ends;
        False cancels immediately (the deletion webhook removes the row).
        Raises NotFound / ForbiddenAccess. Commits.
        """
        sub = self.find_by_external_id(stripe_subscription_id)
        if sub is None:
            raise NotFound("Subscription not found")
        if sub.customer_id != customer.id:
            raise ForbiddenAccess("You do not have access to this subscription")

        if at_period_end:
            sub_data = self.stripe_client.subscriptions.update(
                stripe_subscription_id,
                params={"cancel_at_period_end": True},
            )
        else:
            sub_data = self.stripe_client.subscriptions.cancel(stripe_subscription_id)

        self.upsert_from_provider_object(sub_data)
        db.session.commit()
        logger.info(
            f"Customer {customer.id} canceled subscription {stripe_subscription_id} "
            f"(at_period_end={at_period_end})"
        )
        return sub

    def _warn_if_duplicate_current(self, sub):
        if SubscriptionStatus(sub.status).is_terminal:
            return
        others = (
            Subscription.query
            .filter(
                Subscription.customer_id == sub.customer_id,
                Subscription.id != sub.id,
                Subscription.status.in_(NON_TERMINAL_STATUS_VALUES),
            )
            .count()
        )
        if others:
            logger.warning(
                f"Customer {sub.customer_id} now has {others + 1} non-terminal subscriptions"
            )
