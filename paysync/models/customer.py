"""Customer model.

Owned by the customer directory; this service only reads it (lookup by id
or email) and uses it as the Flask-Login user for the payments API.
"""

import uuid

from flask_login import UserMixin

from paysync.extensions import db


class Customer(UserMixin, db.Model):
    __tablename__ = "customers"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    email = db.Column(db.String(255), unique=True, nullable=False)
    full_name = db.Column(db.String(255))
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    billing_customer = db.relationship(
        "BillingCustomer", back_populates="customer", uselist=False
    )
    subscriptions = db.relationship(
        "Subscription", back_populates="customer", lazy="dynamic"
    )

    def __repr__(self):
        return f"<Customer {self.email}>"
