"""Billing engine — wires the sync components around one Stripe client.

Every component receives the same stripe.StripeClient and cache
invalidator, so tests can swap the provider by passing a stand-in to
init_billing(). The engine lives on app.extensions["billing"].
"""

import logging
from dataclasses import dataclass
from typing import Any

import stripe
from flask import current_app

from paysync.services.cache_service import CacheInvalidator
from paysync.services.checkout_service import CheckoutOrchestrator
from paysync.services.identity_service import IdentityMapper
from paysync.services.payment_service import PaymentRecorder
from paysync.services.status_service import StatusResolver
from paysync.services.subscription_service import SubscriptionSynchronizer
from paysync.services.webhook_service import WebhookDispatcher

logger = logging.getLogger(__name__)


@dataclass
class BillingEngine:
    stripe_client: Any
    identity: IdentityMapper
    subscriptions: SubscriptionSynchronizer
    payments: PaymentRecorder
    statuses: StatusResolver
    checkout: CheckoutOrchestrator
    webhooks: WebhookDispatcher


def build_stripe_client(config):
    api_key = config.get("STRIPE_SECRET_KEY")
    if not api_key:
        raise RuntimeError("STRIPE_SECRET_KEY is not configured")
    kwargs = {}
    if config.get("STRIPE_API_VERSION"):
        kwargs["stripe_version"] = config["STRIPE_API_VERSION"]
    return stripe.StripeClient(api_key, **kwargs)


def build_engine(stripe_client, webhook_secret, cache):
    identity = IdentityMapper(cache)
    subscriptions = SubscriptionSynchronizer(stripe_client, identity, cache)
    payments = PaymentRecorder(identity, subscriptions, cache)
    statuses = StatusResolver(stripe_client, subscriptions, payments)
    return BillingEngine(
        stripe_client=stripe_client,
        identity=identity,
        subscriptions=subscriptions,
        payments=payments,
        statuses=statuses,
        checkout=CheckoutOrchestrator(stripe_client, identity, subscriptions),
        webhooks=WebhookDispatcher(
            stripe_client, webhook_secret, identity, subscriptions, statuses
        ),
    )


def init_billing(app, stripe_client=None, cache=None):
    """Build the engine for app and register it under app.extensions."""
    if stripe_client is None:
        stripe_client = build_stripe_client(app.config)
    if cache is None:
        cache = CacheInvalidator.from_url(app.config.get("REDIS_URL"))

    engine = build_engine(stripe_client, app.config.get("STRIPE_WEBHOOK_SECRET"), cache)
    app.extensions["billing"] = engine
    logger.debug("Billing engine initialised")
    return engine


def get_billing():
    """The BillingEngine of the current app."""
    return current_app.extensions["billing"]
