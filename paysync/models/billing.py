"""Billing models.

- BillingCustomer: 1:1 link between a customer and a Stripe customer ID.
- Subscription: local mirror of a Stripe subscription, synced from webhooks.
- Payment: one row per Stripe payment intent (idempotent on redelivery).

subscriptions.status is the source of truth for entitlement checks.
"""

import enum
import uuid

from paysync.extensions import db

BILLING_CUSTOMER_TABLE_NAME = "billing_customers"
SUBSCRIPTION_TABLE_NAME = "subscriptions"
PAYMENT_TABLE_NAME = "payments"


class SubscriptionStatus(str, enum.Enum):
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"

    @property
    def is_terminal(self):
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    SubscriptionStatus.CANCELED,
    SubscriptionStatus.INCOMPLETE_EXPIRED,
})

# Transitions Stripe is expected to drive. Anything else is logged, never
# rejected: the provider is authoritative.
EXPECTED_TRANSITIONS = {
    SubscriptionStatus.INCOMPLETE: {
        SubscriptionStatus.TRIALING,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.INCOMPLETE_EXPIRED,
        SubscriptionStatus.CANCELED,
    },
    SubscriptionStatus.TRIALING: {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELED,
    },
    SubscriptionStatus.ACTIVE: {
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELED,
    },
    SubscriptionStatus.PAST_DUE: {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.UNPAID,
        SubscriptionStatus.CANCELED,
    },
    SubscriptionStatus.UNPAID: {SubscriptionStatus.CANCELED},
    SubscriptionStatus.CANCELED: set(),
    SubscriptionStatus.INCOMPLETE_EXPIRED: set(),
}


class PaymentStatus(str, enum.Enum):
    PAID = "paid"
    UNPAID = "unpaid"
    VOID = "void"
    FAILED = "failed"
    PENDING = "pending"


def _iso(value):
    return value.isoformat() if value else None


class BillingCustomer(db.Model):
    __tablename__ = BILLING_CUSTOMER_TABLE_NAME

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    customer_id = db.Column(
        db.String(36),
        db.ForeignKey("customers.id"),
        unique=True,
        nullable=False,
    )
    stripe_customer_id = db.Column(
        db.String(255), unique=True, nullable=False
    )
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    customer = db.relationship("Customer", back_populates="billing_customer")

    def __repr__(self):
        return f"<BillingCustomer stripe={self.stripe_customer_id}>"


class Subscription(db.Model):
    __tablename__ = SUBSCRIPTION_TABLE_NAME

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    stripe_subscription_id = db.Column(
        db.String(255), unique=True, nullable=False
    )
    plan_id = db.Column(
        db.String(36), db.ForeignKey("plans.id"), nullable=False, index=True
    )
    customer_id = db.Column(
        db.String(36), db.ForeignKey("customers.id"), nullable=False, index=True
    )
    status = db.Column(
        db.String(50), nullable=False, default=SubscriptionStatus.INCOMPLETE.value,
        index=True,
    )  # see SubscriptionStatus
    current_period_start_at = db.Column(db.DateTime(timezone=True), nullable=True)
    current_period_end_at = db.Column(db.DateTime(timezone=True), nullable=True)
    trial_start_at = db.Column(db.DateTime(timezone=True), nullable=True)
    trial_end_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancel_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancel_at_period_end = db.Column(db.Boolean, nullable=False, default=False)
    canceled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    latest_invoice_id = db.Column(db.String(255), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    plan = db.relationship("Plan")
    customer = db.relationship("Customer", back_populates="subscriptions")
    payments = db.relationship(
        "Payment", back_populates="subscription", lazy="dynamic"
    )

    @property
    def has_active_access(self):
        return self.status in (
            SubscriptionStatus.ACTIVE.value,
            SubscriptionStatus.TRIALING.value,
        )

    def to_summary(self):
        return {
            "id": self.id,
            "stripeSubscriptionId": self.stripe_subscription_id,
            "planId": self.plan_id,
            "status": self.status,
            "currentPeriodEndAt": _iso(self.current_period_end_at),
        }

    def to_dict(self):
        return {
            "id": self.id,
            "stripeSubscriptionId": self.stripe_subscription_id,
            "planId": self.plan_id,
            "status": self.status,
            "currentPeriodStartAt": _iso(self.current_period_start_at),
            "currentPeriodEndAt": _iso(self.current_period_end_at),
            "trialStartAt": _iso(self.trial_start_at),
            "trialEndAt": _iso(self.trial_end_at),
            "cancelAt": _iso(self.cancel_at),
            "cancelAtPeriodEnd": bool(self.cancel_at_period_end),
            "hasActiveAccess": self.has_active_access,
            "canceledAt": _iso(self.canceled_at),
            "paidAt": _iso(self.paid_at),
            "latestInvoiceId": self.latest_invoice_id,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "plan": self.plan.to_summary() if self.plan else None,
        }

    def __repr__(self):
        return f"<Subscription {self.stripe_subscription_id} ({self.status})>"


class Payment(db.Model):
    __tablename__ = PAYMENT_TABLE_NAME

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    customer_id = db.Column(
        db.String(36), db.ForeignKey("customers.id"), nullable=False, index=True
    )
    subscription_id = db.Column(
        db.String(36),
        db.ForeignKey("subscriptions.id", ondelete="SET NULL"),
        nullable=True,
    )
    stripe_invoice_id = db.Column(db.String(255), nullable=True, index=True)
    stripe_payment_intent_id = db.Column(
        db.String(255), unique=True, nullable=False
    )
    amount = db.Column(db.Numeric(10, 2), nullable=False)
    currency = db.Column(db.String(10), nullable=False, default="usd")
    status = db.Column(
        db.String(20), nullable=False, default=PaymentStatus.PENDING.value
    )  # see PaymentStatus
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    subscription = db.relationship("Subscription", back_populates="payments")

    def to_dict(self):
        return {
            "id": self.id,
            "stripeInvoiceId": self.stripe_invoice_id,
            "stripePaymentIntentId": self.stripe_payment_intent_id,
            "amount": f"{self.amount:.2f}" if self.amount is not None else None,
            "currency": self.currency,
            "status": self.status,
            "paidAt": _iso(self.paid_at),
            "createdAt": _iso(self.created_at),
            "subscription": (
                self.subscription.to_summary() if self.subscription else None
            ),
        }

    def __repr__(self):
        return f"<Payment {self.stripe_payment_intent_id} ({self.status})>"
