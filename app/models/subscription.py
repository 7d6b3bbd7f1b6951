"""Subscription models.

- SubscriptionPlan: catalog-wide access plan, priced per interval.
- Subscription: a user's plan, state synced from Stripe webhooks.
  subscriptions.status + the current period are the source of truth for
  subscription entitlement.
- SubscriptionCharge: one settled recurring payment. Invoices for
  subscriptions are issued from these rows, never from the subscription
  itself.
"""

import uuid

from app.extensions import db


class SubscriptionPlan(db.Model):
    __tablename__ = "subscription_plans"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name = db.Column(db.String(255), nullable=False)
    price_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="EUR")
    interval_months = db.Column(db.Integer, nullable=False, default=1)
    stripe_price_id = db.Column(db.String(255), unique=True, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    @property
    def interval_label(self):
        if self.interval_months == 1:
            return "monthly"
        if self.interval_months == 12:
            return "yearly"
        return f"{self.interval_months} months"

    def __repr__(self):
        return f"<SubscriptionPlan {self.name}>"


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"

    STATUSES = [ACTIVE, PAST_DUE, CANCELED, EXPIRED]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False, index=True
    )
    plan_id = db.Column(
        db.String(36), db.ForeignKey("subscription_plans.id"), nullable=False
    )
    status = db.Column(
        db.String(20), nullable=False
    )  # ACTIVE | PAST_DUE | CANCELED | EXPIRED
    current_period_start = db.Column(db.DateTime(timezone=True), nullable=False)
    current_period_end = db.Column(db.DateTime(timezone=True), nullable=False)
    stripe_subscription_id = db.Column(
        db.String(255), unique=True, nullable=True
    )
    canceled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="subscriptions")
    plan = db.relationship("SubscriptionPlan")
    charges = db.relationship(
        "SubscriptionCharge", back_populates="subscription", lazy="dynamic"
    )

    def __repr__(self):
        return f"<Subscription {self.user_id} ({self.status})>"


class SubscriptionCharge(db.Model):
    __tablename__ = "subscription_charges"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    subscription_id = db.Column(
        db.String(36), db.ForeignKey("subscriptions.id"), nullable=False
    )
    external_charge_id = db.Column(
        db.String(255), unique=True, nullable=False
    )  # e.g. Stripe invoice id "in_1Abc..."
    amount_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    period_start = db.Column(db.DateTime(timezone=True), nullable=True)
    period_end = db.Column(db.DateTime(timezone=True), nullable=True)
    settled_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    subscription = db.relationship("Subscription", back_populates="charges")
    invoice = db.relationship(
        "Invoice", back_populates="subscription_charge", uselist=False
    )

    def __repr__(self):
        return f"<SubscriptionCharge {self.external_charge_id} {self.amount_cents}>"
