"""Shared test fixtures for the paysync test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, CSRF off)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- stripe_client: MagicMock Stripe client installed into the billing engine
- seed_data: two customers and two plans (monthly with trial, yearly without)
- login: signs the test client in as a customer
- make_event / make_subscription: Stripe payload builders
"""

from unittest.mock import MagicMock

import pytest

from paysync import create_app
from paysync.extensions import db as _db
from paysync.models.customer import Customer
from paysync.models.plan import Plan
from paysync.services.billing_engine import init_billing

# 2026-01-01T00:00:00Z / 2026-02-01T00:00:00Z
PERIOD_START = 1767225600
PERIOD_END = 1769904000


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def cache():
    return MagicMock()


@pytest.fixture
def stripe_client(app, cache):
    """A fresh engine around a MagicMock Stripe client, per test."""
    mock = MagicMock()
    init_billing(app, stripe_client=mock, cache=cache)
    return mock


@pytest.fixture
def engine(app, stripe_client):
    return app.extensions["billing"]


@pytest.fixture
def seed_data(app, db_session):
    """Two customers, a monthly plan (7-day trial) and a yearly plan (no trial).

    Returns plain IDs so tests can use them across commits.
    """
    alice = Customer(email="alice@example.com", full_name="Alice Example")
    bob = Customer(email="bob@example.com", full_name="Bob Example")
    monthly = Plan(
        name="Standard",
        status="ACTIVE",
        price_cents=2999,
        billing_interval="month",
        stripe_price_id="price_monthly",
        trial_period_days=7,
    )
    yearly = Plan(
        name="Standard",
        status="ACTIVE",
        price_cents=29990,
        billing_interval="year",
        stripe_price_id="price_yearly",
        trial_period_days=0,
    )
    _db.session.add_all([alice, bob, monthly, yearly])
    _db.session.commit()

    return {
        "alice_id": alice.id,
        "alice_email": alice.email,
        "bob_id": bob.id,
        "monthly_plan_id": monthly.id,
        "yearly_plan_id": yearly.id,
    }


@pytest.fixture
def login(client):
    """Return a function that signs the test client in as a customer."""

    def _login(customer_id):
        with client.session_transaction() as sess:
            sess["_user_id"] = customer_id
            sess["_fresh"] = True

    return _login


@pytest.fixture
def make_event():
    """Build a Stripe event payload (dict-shaped, like StripeObject)."""

    def _make(event_id, event_type, obj):
        return {"id": event_id, "type": event_type, "data": {"object": obj}}

    return _make


@pytest.fixture
def period():
    """(current_period_start, current_period_end) used by make_subscription."""
    return PERIOD_START, PERIOD_END


@pytest.fixture
def make_subscription():
    """Build a Stripe subscription object."""

    def _make(sub_id="sub_123", customer="cus_123", status="active",
              price_id="price_monthly", **extra):
        sub = {
            "id": sub_id,
            "object": "subscription",
            "customer": customer,
            "status": status,
            "cancel_at_period_end": False,
            "items": {
                "data": [{
                    "price": {"id": price_id},
                    "current_period_start": PERIOD_START,
                    "current_period_end": PERIOD_END,
                }]
            },
        }
        sub.update(extra)
        return sub

    return _make
