"""Plan model (catalog entry).

The catalog's own CRUD lives elsewhere; billing resolves plans by id at
checkout and by stripe_price_id when syncing subscriptions.
"""

import uuid

from paysync.extensions import db


class Plan(db.Model):
    __tablename__ = "plans"

    STATUSES = ["ACTIVE", "INACTIVE", "DRAFT"]
    BILLING_INTERVALS = ["month", "year"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(20), nullable=False, default="DRAFT")
    type = db.Column(db.String(20), nullable=False, default="SUBSCRIPTION")
    price_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="USD")
    billing_interval = db.Column(db.String(10), nullable=False, default="month")
    billing_interval_count = db.Column(db.Integer, nullable=False, default=1)
    stripe_price_id = db.Column(db.String(255), unique=True, nullable=True)
    trial_period_days = db.Column(db.Integer, nullable=False, default=7)
    display_order = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __table_args__ = (
        db.UniqueConstraint(
            "name", "billing_interval", "billing_interval_count",
            name="uq_plan_name_interval",
        ),
    )

    def to_summary(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "type": self.type,
            "priceCents": self.price_cents,
            "currency": self.currency,
            "billingInterval": self.billing_interval,
            "billingIntervalCount": self.billing_interval_count,
            "trialPeriodDays": self.trial_period_days,
            "stripePriceId": self.stripe_price_id,
        }

    def __repr__(self):
        return f"<Plan {self.name} ({self.billing_interval})>"
