"""Stripe event model (webhook ledger).

Every verified webhook event is recorded by its Stripe event ID together
with the outcome of handling it. Events that were processed (or ignored
as unhandled types) are acknowledged immediately on redelivery. Skipped
events stay re-dispatchable, either by a provider retry or by
``flask replay-skipped-events``; those Stripe no longer returns are marked
expired.
"""

import uuid

from paysync.extensions import db


class StripeEvent(db.Model):
    __tablename__ = "stripe_events"

    PROCESSED = "processed"
    SKIPPED = "skipped"
    IGNORED = "ignored"
    EXPIRED = "expired"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    stripe_event_id = db.Column(
        db.String(255), unique=True, nullable=False
    )  # e.g. "evt_1Abc..."
    event_type = db.Column(
        db.String(255), nullable=False
    )  # e.g. "checkout.session.completed"
    outcome = db.Column(
        db.String(20), nullable=False, default=PROCESSED, index=True
    )  # processed | skipped | ignored | expired
    skip_reason = db.Column(db.String(50), nullable=True)
    skip_detail = db.Column(db.Text, nullable=True)
    attempts = db.Column(db.Integer, nullable=False, default=1)
    processed_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    @property
    def is_settled(self):
        return self.outcome in (self.PROCESSED, self.IGNORED, self.EXPIRED)

    def __repr__(self):
        return f"<StripeEvent {self.stripe_event_id} ({self.event_type}: {self.outcome})>"
