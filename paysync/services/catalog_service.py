"""Catalog lookups — plans and customers owned by other services.

Billing only reads these tables: plans by id (checkout) or by Stripe
price ID (subscription sync), customers by id or email.
"""

from paysync.extensions import db
from paysync.models.customer import Customer
from paysync.models.plan import Plan


def get_plan(plan_id):
    """Return the Plan with this id, or None."""
    if not plan_id:
        return None
    return db.session.get(Plan, plan_id)


def get_plan_by_price_id(stripe_price_id):
    """Map a Stripe price ID to a Plan. Returns None if nothing matches."""
    if not stripe_price_id:
        return None
    return Plan.query.filter_by(stripe_price_id=stripe_price_id).first()


def get_customer(customer_id):
    if not customer_id:
        return None
    return db.session.get(Customer, customer_id)


def get_customer_by_email(email):
    if not email:
        return None
    return Customer.query.filter_by(email=email.lower().strip()).first()
