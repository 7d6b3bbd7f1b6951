"""Purchase models.

- Purchase: one checkout, keyed by the processor's order id. Owns the
  lifecycle PENDING -> COMPLETED | FAILED, COMPLETED -> REFUNDED.
  A COMPLETED purchase is the entitlement signal for its items.
- PurchaseItem: one row per cart line, with the list price captured at
  checkout and the price actually paid after the discount share.
"""

import uuid

from app.extensions import db


class Purchase(db.Model):
    __tablename__ = "purchases"

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"

    STATUSES = [PENDING, COMPLETED, FAILED, REFUNDED]

    # -- Valid status transitions (enforced in purchase_service) --
    VALID_TRANSITIONS = {
        PENDING: [COMPLETED, FAILED],
        COMPLETED: [REFUNDED],
    }

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False, index=True
    )
    status = db.Column(
        db.String(20), nullable=False, default=PENDING
    )  # PENDING | COMPLETED | FAILED | REFUNDED
    currency = db.Column(db.String(3), nullable=False)
    subtotal_cents = db.Column(db.Integer, nullable=False)  # cart total at checkout
    discount_code_id = db.Column(
        db.String(36), db.ForeignKey("discount_codes.id"), nullable=True
    )
    discount_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    price_paid_cents = db.Column(db.Integer, nullable=False)  # subtotal - discount
    amount_captured_cents = db.Column(db.Integer, nullable=True)
    external_order_id = db.Column(db.String(255), unique=True, nullable=False)
    external_capture_id = db.Column(db.String(255), nullable=True)
    payer_email = db.Column(db.String(255), nullable=True)
    failure_reason = db.Column(db.String(255), nullable=True)
    purchased_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now(), index=True
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="purchases")
    items = db.relationship(
        "PurchaseItem",
        back_populates="purchase",
        cascade="all, delete-orphan",
        order_by="PurchaseItem.position",
    )
    discount_code = db.relationship("DiscountCode")
    redemption = db.relationship(
        "DiscountRedemption", back_populates="purchase", uselist=False
    )
    invoice = db.relationship(
        "Invoice", back_populates="purchase", uselist=False
    )

    @property
    def content_ids(self):
        return [item.audiobook_id for item in self.items]

    @property
    def is_local_order(self):
        """Zero-amount orders never reach the processor."""
        return self.external_order_id.startswith("local_")

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "status": self.status,
            "currency": self.currency,
            "subtotal_cents": self.subtotal_cents,
            "discount_code": self.discount_code.code if self.discount_code else None,
            "discount_amount_cents": self.discount_amount_cents,
            "price_paid_cents": self.price_paid_cents,
            "external_order_id": self.external_order_id,
            "external_capture_id": self.external_capture_id,
            "purchased_at": self.purchased_at.isoformat() if self.purchased_at else None,
            "items": [item.to_dict() for item in self.items],
        }

    def __repr__(self):
        return f"<Purchase {self.external_order_id} ({self.status})>"


class PurchaseItem(db.Model):
    __tablename__ = "purchase_items"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    purchase_id = db.Column(
        db.String(36), db.ForeignKey("purchases.id"), nullable=False, index=True
    )
    audiobook_id = db.Column(
        db.String(36), db.ForeignKey("audiobooks.id"), nullable=False, index=True
    )
    position = db.Column(db.Integer, nullable=False, default=0)  # cart order
    list_price_cents = db.Column(db.Integer, nullable=False)
    price_paid_cents = db.Column(db.Integer, nullable=False)

    __table_args__ = (
        db.UniqueConstraint(
            "purchase_id", "audiobook_id", name="uq_purchase_item_audiobook"
        ),
    )

    # --- Relationships ---
    purchase = db.relationship("Purchase", back_populates="items")
    audiobook = db.relationship("Audiobook")

    def to_dict(self):
        return {
            "audiobook_id": self.audiobook_id,
            "title": self.audiobook.title if self.audiobook else None,
            "list_price_cents": self.list_price_cents,
            "price_paid_cents": self.price_paid_cents,
        }

    def __repr__(self):
        return f"<PurchaseItem {self.audiobook_id} paid={self.price_paid_cents}>"
