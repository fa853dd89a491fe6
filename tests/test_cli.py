"""Tests for the flask CLI commands and the cache invalidation hook.

Covers:
- seed-plans creates the default catalog once
- replay-skipped-events reports replayed events
- verify-stripe-prices flags missing prices
- CacheInvalidator: related tables, disabled without Redis, errors swallowed
"""

from unittest.mock import MagicMock

import redis
import stripe

from paysync.extensions import db
from paysync.models.plan import Plan
from paysync.models.stripe_event import StripeEvent
from paysync.services.cache_service import CacheInvalidator


class TestSeedPlans:

    def test_creates_monthly_and_yearly_plans(self, app):
        runner = app.test_cli_runner()

        result = runner.invoke(args=["seed-plans", "--monthly-price-id", "price_m"])

        assert result.exit_code == 0
        plans = Plan.query.order_by(Plan.display_order).all()
        assert [(p.billing_interval, p.price_cents) for p in plans] == [
            ("month", 2999), ("year", 29990),
        ]
        assert plans[0].stripe_price_id == "price_m"
        assert plans[1].stripe_price_id is None
        assert all(p.trial_period_days == 7 for p in plans)

    def test_is_idempotent(self, app):
        runner = app.test_cli_runner()

        runner.invoke(args=["seed-plans"])
        result = runner.invoke(args=["seed-plans"])

        assert "already exists" in result.output
        assert Plan.query.count() == 2


class TestReplaySkippedEvents:

    def test_nothing_to_replay(self, app, stripe_client):
        result = app.test_cli_runner().invoke(args=["replay-skipped-events"])

        assert result.exit_code == 0
        assert "No skipped events" in result.output

    def test_replays_and_reports(self, app, stripe_client, seed_data, make_subscription):
        db.session.add(StripeEvent(
            stripe_event_id="evt_parked",
            event_type="customer.subscription.updated",
            outcome=StripeEvent.SKIPPED,
            skip_reason="unlinked_identity",
        ))
        db.session.commit()
        stripe_client.events.retrieve.return_value = {
            "id": "evt_parked",
            "type": "customer.subscription.updated",
            "data": {"object": make_subscription(customer="cus_still_unknown")},
        }
        stripe_client.subscriptions.retrieve.return_value = make_subscription(
            customer="cus_still_unknown"
        )

        result = app.test_cli_runner().invoke(args=["replay-skipped-events", "--limit", "5"])

        assert result.exit_code == 0
        assert "evt_parked: skipped" in result.output
        assert "Replayed 1 event(s)." in result.output


class TestVerifyStripePrices:

    def test_reports_missing_and_unknown_prices(self, app, stripe_client, seed_data):
        db.session.add(Plan(name="Draft", price_cents=100, billing_interval="month"))
        db.session.commit()
        stripe_client.prices.retrieve.side_effect = stripe.error.InvalidRequestError(
            "No such price", "id"
        )

        result = app.test_cli_runner().invoke(args=["verify-stripe-prices"])

        assert result.exit_code == 0
        assert "Stripe key mode: Test" in result.output
        assert "(not set)" in result.output
        assert "ERROR: No such price" in result.output


class TestCacheInvalidator:

    def test_deletes_related_tables(self):
        client = MagicMock()

        CacheInvalidator(client).clear_related_caches("payments")

        client.delete.assert_called_once_with("payments", "subscriptions")

    def test_unknown_table_deletes_itself(self):
        client = MagicMock()

        CacheInvalidator(client).clear_related_caches("plans")

        client.delete.assert_called_once_with("plans")

    def test_disabled_without_url(self):
        cache = CacheInvalidator.from_url(None)

        assert cache.client is None
        cache.clear_related_caches("payments")  # no-op

    def test_redis_errors_are_logged_not_raised(self, caplog):
        client = MagicMock()
        client.delete.side_effect = redis.ConnectionError("down")

        CacheInvalidator(client).clear_related_caches("subscriptions")

        assert "Cache invalidation failed" in caplog.text
