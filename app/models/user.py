"""User model.

Stores authentication credentials and profile info.
Flask-Login integration via UserMixin.
"""

import uuid

from flask_login import UserMixin

from app.extensions import db


class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    full_name = db.Column(db.String(255))
    is_admin = db.Column(db.Boolean, default=False)
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
    purchases = db.relationship(
        "Purchase", back_populates="user", lazy="dynamic"
    )
    subscriptions = db.relationship(
        "Subscription", back_populates="user", lazy="dynamic"
    )
    billing_profile = db.relationship(
        "BillingProfile",
        back_populates="user",
        uselist=False,
        cascade="all, delete-orphan",
    )
    billing_customer = db.relationship(
        "BillingCustomer",
        back_populates="user",
        uselist=False,
        cascade="all, delete-orphan",
    )
    invoices = db.relationship(
        "Invoice", back_populates="user", lazy="dynamic"
    )
    audit_events = db.relationship(
        "AuditEvent", back_populates="actor", lazy="dynamic"
    )

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "is_admin": bool(self.is_admin),
        }

    def __repr__(self):
        return f"<User {self.email}>"
