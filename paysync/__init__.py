import os
import logging

import click
import stripe
from flask import Flask, jsonify

from paysync.config import config_by_name
from paysync.errors import BillingError
from paysync.extensions import db, migrate, login_manager, csrf, limiter


def create_app(config_name=None):
    """Application factory."""

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    csrf.init_app(app)
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from paysync import models  # noqa: F401

    # --- Billing engine (Stripe client + sync components) ---
    from paysync.services.billing_engine import init_billing
    if app.config.get("STRIPE_SECRET_KEY"):
        init_billing(app)
    else:
        app.logger.warning("STRIPE_SECRET_KEY not set; billing engine not initialised")

    # --- Register blueprints ---
    from paysync.blueprints.payments import payments_bp
    from paysync.blueprints.webhooks import webhooks_bp

    app.register_blueprint(payments_bp)
    app.register_blueprint(webhooks_bp)

    # Exempt webhooks from CSRF — raw body needed for Stripe signature verification
    csrf.exempt(webhooks_bp)

    # --- Error handlers ---
    register_error_handlers(app)

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "DENY"
        # Control referrer information
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # JSON only; nothing should ever be rendered or framed
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none';"
        )
        response.headers["Cache-Control"] = "no-store"
        # Strict Transport Security (only in production)
        if not app.debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def register_error_handlers(app):
    """JSON bodies for every error the API can return."""

    @app.errorhandler(BillingError)
    def billing_error(e):
        if e.status_code >= 500:
            app.logger.error(f"{e.__class__.__name__}: {e.message}")
        else:
            app.logger.info(f"{e.__class__.__name__}: {e.message}")
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "Method not allowed"}), 405

    @app.errorhandler(429)
    def rate_limited(e):
        return jsonify({"error": "Too many requests"}), 429

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "Internal server error"}), 500


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("seed-plans")
    @click.option("--monthly-price-id", envvar="STRIPE_MONTHLY_PRICE_ID", default=None,
                  help="Stripe price ID of the monthly plan")
    @click.option("--yearly-price-id", envvar="STRIPE_YEARLY_PRICE_ID", default=None,
                  help="Stripe price ID of the yearly plan")
    def seed_plans(monthly_price_id, yearly_price_id):
        """Create the default monthly + yearly plans if they don't exist.

        Usage:
            flask seed-plans
            flask seed-plans --monthly-price-id price_123 --yearly-price-id price_456
        """
        from paysync.models.plan import Plan

        defaults = [
            {
                "name": "Standard",
                "description": "Standard plan, billed monthly.",
                "price_cents": 2999,
                "billing_interval": "month",
                "stripe_price_id": monthly_price_id,
                "display_order": 1,
            },
            {
                "name": "Standard",
                "description": "Standard plan, billed yearly.",
                "price_cents": 29990,
                "billing_interval": "year",
                "stripe_price_id": yearly_price_id,
                "display_order": 2,
            },
        ]

        for fields in defaults:
            existing = Plan.query.filter_by(
                name=fields["name"],
                billing_interval=fields["billing_interval"],
                billing_interval_count=1,
            ).first()
            if existing:
                if fields["stripe_price_id"] and not existing.stripe_price_id:
                    existing.stripe_price_id = fields["stripe_price_id"]
                    click.echo(f"Linked {existing} to {fields['stripe_price_id']}")
                else:
                    click.echo(f"Plan already exists: {existing}")
                continue

            plan = Plan(
                status="ACTIVE",
                type="SUBSCRIPTION",
                currency="USD",
                billing_interval_count=1,
                trial_period_days=7,
                **fields,
            )
            db.session.add(plan)
            click.echo(f"Created plan: {plan}")

        db.session.commit()

    @app.cli.command("verify-stripe-prices")
    def verify_stripe_prices():
        """Verify every plan's Stripe price ID exists and is usable (same mode as key).

        Run with prod env vars to confirm Live prices; run with test vars for Test mode.
        """
        from paysync.models.plan import Plan
        from paysync.services.billing_engine import get_billing

        api_key = app.config.get("STRIPE_SECRET_KEY")
        if not api_key:
            click.echo("ERROR: STRIPE_SECRET_KEY is not set.")
            return
        key_mode = "Live" if api_key.startswith("sk_live_") else "Test"
        click.echo(f"Stripe key mode: {key_mode}")
        click.echo("")

        stripe_client = get_billing().stripe_client

        for plan in Plan.query.order_by(Plan.display_order).all():
            label = f"{plan.name} ({plan.billing_interval})"
            if not plan.stripe_price_id:
                click.echo(f"  {label}: (not set)")
                continue
            try:
                price = stripe_client.prices.retrieve(
                    plan.stripe_price_id, params={"expand": ["product"]}
                )
                product = price.get("product")
                if isinstance(product, str) or not product:
                    product_active = "?"
                else:
                    product_active = product.get("active", "?")
                livemode = price.get("livemode", "?")
                click.echo(f"  {label}: {plan.stripe_price_id}")
                click.echo(f"    exists=True, livemode={livemode}, product_active={product_active}")
                if price.get("unit_amount") != plan.price_cents:
                    click.echo(
                        f"    WARNING: Stripe amount {price.get('unit_amount')} "
                        f"!= plan amount {plan.price_cents}."
                    )
                if livemode is True and key_mode != "Live":
                    click.echo("    WARNING: This price is Live but your key is Test.")
                elif livemode is False and key_mode == "Live":
                    click.echo("    WARNING: This price is Test but your key is Live.")
            except stripe.error.InvalidRequestError as e:
                click.echo(f"  {label}: {plan.stripe_price_id}")
                click.echo(f"    ERROR: {e}")
            click.echo("")

    @app.cli.command("replay-skipped-events")
    @click.option("--limit", default=100, show_default=True,
                  help="Maximum number of skipped events to replay.")
    def replay_skipped_events(limit):
        """Re-fetch skipped webhook events from Stripe and dispatch them again.

        Events skipped because their prerequisites were missing (for
        example a subscription event that arrived before its checkout)
        are parked in stripe_events; run this once the gap is closed.

        Usage:
            flask replay-skipped-events
            flask replay-skipped-events --limit 20
        """
        from paysync.services.billing_engine import get_billing

        results = get_billing().webhooks.replay_skipped(limit=limit)
        if not results:
            click.echo("No skipped events to replay.")
            return
        for event_id, status in results:
            click.echo(f"  {event_id}: {status}")
        click.echo(f"Replayed {len(results)} event(s).")
