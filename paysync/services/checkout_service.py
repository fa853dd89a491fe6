"""Checkout orchestrator — Stripe Checkout Sessions for plan subscriptions.

Responsible for:
- Creating Checkout Sessions (one non-terminal subscription per customer)
- Reusing the customer's Stripe customer when already linked
- Retrieving a session for its owner only
"""

import logging

import stripe

from paysync.errors import Conflict, ForbiddenAccess, NotFound, UnlinkedIdentity
from paysync.extensions import db
from paysync.models.customer import Customer
from paysync.services.catalog_service import get_plan
from paysync.services.stripe_objects import ref_id

logger = logging.getLogger(__name__)


def _with_session_placeholder(success_url):
    separator = "&" if "?" in success_url else "?"
    return f"{success_url}{separator}session_id={{CHECKOUT_SESSION_ID}}"


class CheckoutOrchestrator:
    def __init__(self, stripe_client, identity, subscriptions):
        self.stripe_client = stripe_client
        self.identity = identity
        self.subscriptions = subscriptions

    def create_checkout_session(self, plan_id, success_url, cancel_url, customer):
        """Create a subscription Checkout Session for customer.

        The customer row is locked (SELECT ... FOR UPDATE) from the
        subscription check until the session exists, so two concurrent
        checkouts for one customer run one after the other.

        Returns {"sessionId", "url", "trialDays"}.
        Raises NotFound, Conflict, or stripe.error.StripeError.
        """
        try:
            plan = get_plan(plan_id)
            if plan is None or not plan.stripe_price_id:
                raise NotFound("Plan not found")

            locked = None
            if customer is not None and customer.id:
                locked = (
                    Customer.query
                    .filter_by(id=customer.id)
                    .with_for_update()
                    .first()
                )
            if locked is None:
                raise NotFound("Customer not found")

            existing = self.subscriptions.find_current_by_customer(locked.id)
            if existing is not None:
                raise Conflict("You already have an active subscription")

            params = {
                "mode": "subscription",
                "line_items": [{"price": plan.stripe_price_id, "quantity": 1}],
                "success_url": _with_session_placeholder(success_url),
                "cancel_url": cancel_url,
                "automatic_tax": {"enabled": False},
                "billing_address_collection": "auto",
                "client_reference_id": locked.id,
                "metadata": {
                    "customer_id": locked.id,
                    "plan_id": plan.id,
                },
            }

            try:
                mapping = self.identity.find_by_customer_id(locked.id)
                params["customer"] = mapping.stripe_customer_id
            except UnlinkedIdentity:
                if locked.email:
                    params["customer_email"] = locked.email

            if plan.trial_period_days and plan.trial_period_days > 0:
                params["subscription_data"] = {
                    "trial_period_days": plan.trial_period_days,
                }

            session = self.stripe_client.checkout.sessions.create(params=params)
            # Releases the row lock; nothing else was written.
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info(f"Created checkout session {session.id} for customer {locked.id}, plan {plan.id}")
        return {
            "sessionId": session.id,
            "url": session.url,
            "trialDays": plan.trial_period_days,
        }

    def get_checkout_session(self, session_id, customer):
        """Return a projection of a Checkout Session owned by customer.

        Raises NotFound if the session or customer is unknown,
        ForbiddenAccess if the session belongs to someone else.
        """
        if customer is None or not customer.id:
            raise NotFound("Customer not found")

        try:
            session = self.stripe_client.checkout.sessions.retrieve(
                session_id,
                params={"expand": ["subscription", "customer"]},
            )
        except stripe.error.InvalidRequestError:
            raise NotFound("Checkout session not found")

        metadata = session.get("metadata") or {}
        owner_id = session.get("client_reference_id") or metadata.get("customer_id")
        if owner_id and owner_id != customer.id:
            logger.warning(f"Customer {customer.id} requested session {session_id} of {owner_id}")
            raise ForbiddenAccess("You do not have access to this checkout session")

        return {
            "sessionId": session.get("id"),
            "status": session.get("status"),
            "paymentStatus": session.get("payment_status"),
            "customer": ref_id(session.get("customer")),
            "subscription": ref_id(session.get("subscription")),
        }
