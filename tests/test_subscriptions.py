"""Tests for the subscription synchronizer.

Covers:
- Exhaustive Stripe status -> SubscriptionStatus mapping
- Idempotent upsert (one row, latest values)
- Soft skips: missing plan mapping, unlinked Stripe customer
- Period dates from the top level or from items.data[0]
- update_status_only with resync-and-retry
- Hard delete (payments survive) and no-op delete
- find_current_by_customer ignores terminal statuses
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
import stripe

from paysync.extensions import db
from paysync.models.billing import Payment, Subscription, SubscriptionStatus
from paysync.services.outcomes import Applied, Skipped, SkipReason
from paysync.services.subscription_service import map_stripe_status


@pytest.fixture
def linked(engine, seed_data):
    """alice linked to cus_123."""
    engine.identity.upsert("cus_123", seed_data["alice_id"])
    db.session.commit()
    return seed_data


def _naive(ts):
    # SQLite hands DateTime(timezone=True) back without tzinfo
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


class TestStatusMapping:

    @pytest.mark.parametrize("stripe_status,expected", [
        ("active", SubscriptionStatus.ACTIVE),
        ("trialing", SubscriptionStatus.TRIALING),
        ("past_due", SubscriptionStatus.PAST_DUE),
        ("canceled", SubscriptionStatus.CANCELED),
        ("unpaid", SubscriptionStatus.UNPAID),
        ("incomplete", SubscriptionStatus.INCOMPLETE),
        ("incomplete_expired", SubscriptionStatus.INCOMPLETE_EXPIRED),
    ])
    def test_upsert_then_lookup_yields_status(self, engine, linked, make_subscription,
                                              stripe_status, expected):
        outcome = engine.subscriptions.upsert_from_provider_object(
            make_subscription(status=stripe_status)
        )
        db.session.commit()

        assert isinstance(outcome, Applied)
        sub = engine.subscriptions.find_by_external_id("sub_123")
        assert sub.status == expected.value

    def test_unknown_status_falls_back_to_incomplete(self):
        assert map_stripe_status("paused_forever") == SubscriptionStatus.INCOMPLETE


class TestUpsert:

    def test_same_event_twice_leaves_one_row_with_latest_values(
            self, engine, linked, make_subscription):
        engine.subscriptions.upsert_from_provider_object(
            make_subscription(status="trialing")
        )
        engine.subscriptions.upsert_from_provider_object(
            make_subscription(status="active", cancel_at_period_end=True)
        )
        db.session.commit()

        rows = Subscription.query.filter_by(stripe_subscription_id="sub_123").all()
        assert len(rows) == 1
        assert rows[0].status == "active"
        assert rows[0].cancel_at_period_end is True

    def test_maps_plan_customer_and_period(self, engine, linked, make_subscription, period):
        start, end = period
        engine.subscriptions.upsert_from_provider_object(make_subscription())
        db.session.commit()

        sub = engine.subscriptions.find_by_external_id("sub_123")
        assert sub.plan_id == linked["monthly_plan_id"]
        assert sub.customer_id == linked["alice_id"]
        assert sub.current_period_start_at.replace(tzinfo=None) == _naive(start)
        assert sub.current_period_end_at.replace(tzinfo=None) == _naive(end)

    def test_reads_top_level_period_from_older_api_versions(
            self, engine, linked, make_subscription, period):
        start, end = period
        data = make_subscription(
            current_period_start=start + 10,
            current_period_end=end + 10,
        )
        engine.subscriptions.upsert_from_provider_object(data)
        db.session.commit()

        sub = engine.subscriptions.find_by_external_id("sub_123")
        assert sub.current_period_end_at.replace(tzinfo=None) == _naive(end + 10)

    def test_expanded_latest_invoice_sets_paid_at(self, engine, linked, make_subscription,
                                                  period):
        start, _ = period
        data = make_subscription(latest_invoice={
            "id": "in_1",
            "status_transitions": {"paid_at": start},
        })
        engine.subscriptions.upsert_from_provider_object(data)
        db.session.commit()

        sub = engine.subscriptions.find_by_external_id("sub_123")
        assert sub.latest_invoice_id == "in_1"
        assert sub.paid_at.replace(tzinfo=None) == _naive(start)

    def test_missing_plan_mapping_is_skipped_without_write(
            self, engine, linked, make_subscription):
        outcome = engine.subscriptions.upsert_from_provider_object(
            make_subscription(price_id="price_unknown")
        )

        assert outcome == Skipped(SkipReason.MISSING_PLAN_MAPPING, "price=price_unknown")
        assert Subscription.query.count() == 0

    def test_unlinked_customer_is_skipped_without_write(
            self, engine, seed_data, make_subscription):
        outcome = engine.subscriptions.upsert_from_provider_object(
            make_subscription(customer="cus_stranger")
        )

        assert isinstance(outcome, Skipped)
        assert outcome.reason == SkipReason.UNLINKED_IDENTITY
        assert Subscription.query.count() == 0

    def test_invalidates_subscription_caches(self, engine, linked, make_subscription, cache):
        engine.subscriptions.upsert_from_provider_object(make_subscription())
        cache.clear_related_caches.assert_called_with("subscriptions")


class TestResync:

    def test_resync_fetches_with_expansions(self, engine, linked, stripe_client,
                                            make_subscription):
        stripe_client.subscriptions.retrieve.return_value = make_subscription()

        outcome = engine.subscriptions.resync("sub_123")

        assert isinstance(outcome, Applied)
        stripe_client.subscriptions.retrieve.assert_called_once_with(
            "sub_123", params={"expand": ["items.data.price", "latest_invoice"]}
        )

    def test_unknown_subscription_is_skipped(self, engine, stripe_client):
        stripe_client.subscriptions.retrieve.side_effect = stripe.error.InvalidRequestError(
            "No such subscription", "id"
        )

        outcome = engine.subscriptions.resync("sub_gone")

        assert outcome.reason == SkipReason.UNKNOWN_SUBSCRIPTION

    def test_other_stripe_errors_propagate(self, engine, stripe_client):
        stripe_client.subscriptions.retrieve.side_effect = stripe.error.APIConnectionError(
            "unreachable"
        )

        with pytest.raises(stripe.error.APIConnectionError):
            engine.subscriptions.resync("sub_123")


class TestUpdateStatusOnly:

    def test_updates_existing_row(self, engine, linked, make_subscription, stripe_client):
        engine.subscriptions.upsert_from_provider_object(make_subscription(status="active"))

        outcome = engine.subscriptions.update_status_only(
            "sub_123", SubscriptionStatus.PAST_DUE
        )
        db.session.commit()

        assert isinstance(outcome, Applied)
        assert outcome.record.status == "past_due"
        stripe_client.subscriptions.retrieve.assert_not_called()

    def test_missing_row_resyncs_then_retries(self, engine, linked, stripe_client,
                                              make_subscription):
        stripe_client.subscriptions.retrieve.return_value = make_subscription(status="active")

        outcome = engine.subscriptions.update_status_only(
            "sub_123", SubscriptionStatus.PAST_DUE
        )

        assert isinstance(outcome, Applied)
        assert outcome.record.status == "past_due"
        stripe_client.subscriptions.retrieve.assert_called_once()

    def test_gives_up_after_one_resync(self, engine, seed_data, stripe_client,
                                       make_subscription):
        # Resync comes back for an unlinked customer -> still no row
        stripe_client.subscriptions.retrieve.return_value = make_subscription(
            customer="cus_stranger"
        )

        outcome = engine.subscriptions.update_status_only(
            "sub_123", SubscriptionStatus.ACTIVE
        )

        assert outcome.reason == SkipReason.UNKNOWN_SUBSCRIPTION
        assert stripe_client.subscriptions.retrieve.call_count == 1
        assert Subscription.query.count() == 0

    def test_missing_id_is_skipped(self, engine):
        outcome = engine.subscriptions.update_status_only(None, SubscriptionStatus.ACTIVE)
        assert outcome.reason == SkipReason.MISSING_REFERENCE


class TestRemove:

    def test_hard_deletes_and_keeps_payments(self, engine, linked, make_subscription):
        sub = engine.subscriptions.upsert_from_provider_object(make_subscription()).record
        payment = Payment(
            customer_id=linked["alice_id"],
            subscription_id=sub.id,
            stripe_payment_intent_id="pi_1",
            amount=Decimal("29.99"),
            currency="usd",
            status="paid",
        )
        db.session.add(payment)
        db.session.commit()

        outcome = engine.subscriptions.remove_by_external_id("sub_123")
        db.session.commit()

        assert isinstance(outcome, Applied)
        assert Subscription.query.count() == 0
        kept = Payment.query.filter_by(stripe_payment_intent_id="pi_1").one()
        assert kept.subscription_id is None

    def test_unknown_subscription_is_a_noop(self, engine, seed_data):
        outcome = engine.subscriptions.remove_by_external_id("sub_never_seen")

        assert isinstance(outcome, Skipped)
        assert outcome.reason == SkipReason.UNKNOWN_SUBSCRIPTION


class TestFindCurrent:

    @pytest.mark.parametrize("status", ["canceled", "incomplete_expired"])
    def test_terminal_statuses_are_not_current(self, engine, linked, make_subscription,
                                               status):
        engine.subscriptions.upsert_from_provider_object(make_subscription(status=status))
        db.session.commit()

        assert engine.subscriptions.find_current_by_customer(linked["alice_id"]) is None

    @pytest.mark.parametrize("status", ["incomplete", "trialing", "active", "past_due", "unpaid"])
    def test_non_terminal_statuses_are_current(self, engine, linked, make_subscription,
                                               status):
        engine.subscriptions.upsert_from_provider_object(make_subscription(status=status))
        db.session.commit()

        current = engine.subscriptions.find_current_by_customer(linked["alice_id"])
        assert current is not None
        assert current.stripe_subscription_id == "sub_123"

    def test_has_active_access_only_for_active_or_trialing(self):
        assert Subscription(status="active").has_active_access
        assert Subscription(status="trialing").has_active_access
        assert not Subscription(status="past_due").has_active_access
