"""Billing models.

- BillingCustomer: links a user to a Stripe customer ID (webhook routing).
- BillingProfile: the user's fiscal details. Invoices copy these fields at
  issue time, so later edits never reach an issued invoice.
"""

import uuid

from app.extensions import db


class BillingCustomer(db.Model):
    __tablename__ = "billing_customers"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36),
        db.ForeignKey("users.id"),
        unique=True,
        nullable=False,
    )
    stripe_customer_id = db.Column(
        db.String(255), unique=True, nullable=False
    )
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="billing_customer")

    def __repr__(self):
        return f"<BillingCustomer stripe={self.stripe_customer_id}>"


class BillingProfile(db.Model):
    __tablename__ = "billing_profiles"

    # Fields frozen onto invoices, in display order.
    SNAPSHOT_FIELDS = [
        "legal_name",
        "company_name",
        "tax_id",
        "address_line1",
        "address_line2",
        "city",
        "state",
        "postal_code",
        "country",
        "phone",
    ]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36),
        db.ForeignKey("users.id"),
        unique=True,
        nullable=False,
    )
    legal_name = db.Column(db.String(255), nullable=False)
    company_name = db.Column(db.String(255), nullable=True)
    tax_id = db.Column(db.String(64), nullable=True)  # NIF / VAT number
    address_line1 = db.Column(db.String(255), nullable=True)
    address_line2 = db.Column(db.String(255), nullable=True)
    city = db.Column(db.String(120), nullable=True)
    state = db.Column(db.String(120), nullable=True)
    postal_code = db.Column(db.String(20), nullable=True)
    country = db.Column(db.String(2), nullable=True)  # ISO 3166-1 alpha-2
    phone = db.Column(db.String(40), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="billing_profile")

    def to_snapshot(self):
        """Plain dict copy of the fiscal fields."""
        return {field: getattr(self, field) for field in self.SNAPSHOT_FIELDS}

    def to_dict(self):
        data = self.to_snapshot()
        data["updated_at"] = self.updated_at.isoformat() if self.updated_at else None
        return data

    def __repr__(self):
        return f"<BillingProfile {self.legal_name}>"
