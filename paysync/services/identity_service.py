"""Identity mapper — customer ID <-> Stripe customer ID.

The mapping is 1:1 in both directions (unique on both columns) and is
created when checkout.session.completed first links a Stripe customer to
one of our customers.
"""

import logging

from paysync.errors import UnlinkedIdentity
from paysync.extensions import db
from paysync.models.billing import BILLING_CUSTOMER_TABLE_NAME, BillingCustomer

logger = logging.getLogger(__name__)


class IdentityMapper:
    def __init__(self, cache):
        self.cache = cache

    def find_by_stripe_customer_id(self, stripe_customer_id):
        """Return the mapping for a Stripe customer.

        Raises UnlinkedIdentity if the Stripe customer is not linked yet.
        """
        mapping = None
        if stripe_customer_id:
            mapping = BillingCustomer.query.filter_by(
                stripe_customer_id=stripe_customer_id
            ).first()
        if mapping is None:
            raise UnlinkedIdentity(
                f"Stripe customer {stripe_customer_id} is not linked to a customer"
            )
        return mapping

    def find_by_customer_id(self, customer_id):
        """Return the mapping for one of our customers.

        Raises UnlinkedIdentity if the customer never completed a checkout.
        """
        mapping = None
        if customer_id:
            mapping = BillingCustomer.query.filter_by(
                customer_id=customer_id
            ).first()
        if mapping is None:
            raise UnlinkedIdentity(
                f"Customer {customer_id} has no Stripe customer"
            )
        return mapping

    def upsert(self, stripe_customer_id, customer_id):
        """Insert the mapping, or correct it in place.

        Last write wins: an existing row for this Stripe customer is
        repointed at customer_id, and any other row still held by
        customer_id is dropped so both sides stay unique.
        Uses flush() so the caller controls the commit boundary.
        """
        mapping = BillingCustomer.query.filter_by(
            stripe_customer_id=stripe_customer_id
        ).first()

        stale = BillingCustomer.query.filter_by(customer_id=customer_id).first()
        if stale is not None and stale is not mapping:
            logger.warning(
                f"Customer {customer_id} relinked from Stripe customer "
                f"{stale.stripe_customer_id} to {stripe_customer_id}"
            )
            db.session.delete(stale)
            db.session.flush()

        if mapping:
            if mapping.customer_id == customer_id:
                return mapping
            logger.warning(
                f"Stripe customer {stripe_customer_id} moved from customer "
                f"{mapping.customer_id} to {customer_id}"
            )
            mapping.customer_id = customer_id
        else:
            mapping = BillingCustomer(
                customer_id=customer_id,
                stripe_customer_id=stripe_customer_id,
            )
            db.session.add(mapping)

        db.session.flush()
        self.cache.clear_related_caches(BILLING_CUSTOMER_TABLE_NAME)
        logger.info(f"Linked Stripe customer {stripe_customer_id} to customer {customer_id}")
        return mapping
