"""Processed webhook events (idempotency table).

Payment and subscription notifications are recorded by their Stripe event
ID once handled. A redelivered event finds its row and is acknowledged
without touching purchases, subscriptions or invoices again.
"""

import uuid

from app.extensions import db


class StripeEvent(db.Model):
    __tablename__ = "stripe_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    stripe_event_id = db.Column(
        db.String(255), unique=True, nullable=False
    )  # "evt_..."
    event_type = db.Column(
        db.String(255), nullable=False
    )  # e.g. "payment_intent.succeeded"
    processed_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<StripeEvent {self.stripe_event_id} ({self.event_type})>"
