"""Discount models.

- DiscountCode: a promotional code with pricing rule, usage caps and
  validity window. used_count only ever moves up, and only through a
  successful redemption (see discount_service.redeem_discount).
- DiscountRedemption: append-only log of successful applications. Per-user
  caps are enforced by counting these rows, never by a cached counter.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum

from app.extensions import db


class DiscountKind(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED_AMOUNT = "FIXED_AMOUNT"


def as_utc(value):
    # SQLite returns naive datetimes; Postgres returns aware ones.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class DiscountCode(db.Model):
    __tablename__ = "discount_codes"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    code = db.Column(db.String(64), unique=True, nullable=False)  # stored upper-case
    description = db.Column(db.Text, nullable=True)
    kind = db.Column(
        db.Enum(DiscountKind, name="discount_kind", native_enum=False),
        nullable=False,
    )
    value = db.Column(db.Integer, nullable=False)  # percent (1-100) or cents
    min_purchase_cents = db.Column(db.Integer, nullable=False, default=0)
    max_uses_total = db.Column(db.Integer, nullable=True)  # null = unlimited
    max_uses_per_user = db.Column(db.Integer, nullable=True, default=1)  # null = unlimited
    used_count = db.Column(db.Integer, nullable=False, default=0)
    valid_from = db.Column(db.DateTime(timezone=True), nullable=True)
    valid_until = db.Column(db.DateTime(timezone=True), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    applies_to_purchases = db.Column(db.Boolean, nullable=False, default=True)
    applies_to_subscriptions = db.Column(
        db.Boolean, nullable=False, default=False
    )
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __table_args__ = (
        db.CheckConstraint("used_count >= 0", name="ck_discount_used_count_non_negative"),
        db.CheckConstraint(
            "max_uses_total IS NULL OR used_count <= max_uses_total",
            name="ck_discount_used_count_within_cap",
        ),
    )

    # --- Relationships ---
    redemptions = db.relationship(
        "DiscountRedemption", back_populates="discount_code", lazy="dynamic"
    )

    def in_window(self, now=None):
        """True if now falls inside [valid_from, valid_until] (open bounds allowed)."""
        now = now or datetime.now(timezone.utc)
        valid_from = as_utc(self.valid_from)
        valid_until = as_utc(self.valid_until)
        if valid_from is not None and now < valid_from:
            return False
        if valid_until is not None and now > valid_until:
            return False
        return True

    @property
    def is_exhausted(self):
        return (
            self.max_uses_total is not None
            and self.used_count >= self.max_uses_total
        )

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "description": self.description,
            "kind": self.kind.value,
            "value": self.value,
            "min_purchase_cents": self.min_purchase_cents,
            "max_uses_total": self.max_uses_total,
            "max_uses_per_user": self.max_uses_per_user,
            "used_count": self.used_count,
            "valid_from": self.valid_from.isoformat() if self.valid_from else None,
            "valid_until": self.valid_until.isoformat() if self.valid_until else None,
            "is_active": self.is_active,
            "applies_to_purchases": self.applies_to_purchases,
            "applies_to_subscriptions": self.applies_to_subscriptions,
        }

    def __repr__(self):
        return f"<DiscountCode {self.code} ({self.kind.value} {self.value})>"


class DiscountRedemption(db.Model):
    __tablename__ = "discount_redemptions"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    discount_code_id = db.Column(
        db.String(36), db.ForeignKey("discount_codes.id"), nullable=False
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False
    )
    purchase_id = db.Column(
        db.String(36), db.ForeignKey("purchases.id"), unique=True, nullable=False
    )  # at most one redemption per purchase
    discount_amount_cents = db.Column(db.Integer, nullable=False)
    redeemed_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    __table_args__ = (
        db.Index("ix_redemptions_code_user", "discount_code_id", "user_id"),
    )

    # --- Relationships ---
    discount_code = db.relationship("DiscountCode", back_populates="redemptions")
    purchase = db.relationship("Purchase", back_populates="redemption")

    def __repr__(self):
        return f"<DiscountRedemption code={self.discount_code_id} purchase={self.purchase_id}>"
