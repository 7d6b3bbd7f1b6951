"""Invoice models.

- Invoice: fiscal document issued from a COMPLETED purchase or a settled
  subscription charge. One table, tagged by invoice_type. Financial
  columns and both snapshots are frozen once the row is persisted; only
  status and the PDF bookkeeping columns may change afterwards. Every
  invoice starts ISSUED and moves to PAID in the issuing transaction
  when amount_paid_cents covers the subtotal; otherwise it stays ISSUED
  until the balance is settled.
- InvoiceLineItem: immutable lines. sum(total_cents) == invoice subtotal.
- InvoiceSequence: the single system-wide counter invoice numbers are
  drawn from, incremented in the same transaction as the invoice insert.
"""

import uuid

from flask import current_app
from sqlalchemy import event, inspect
from sqlalchemy.orm import Session

from app.errors import InvariantViolation
from app.extensions import db


def format_invoice_number(number, prefix=None):
    """Display form of a stored invoice number, e.g. AUD-000042."""
    if prefix is None:
        prefix = current_app.config.get("INVOICE_NUMBER_PREFIX", "AUD")
    return f"{prefix}-{number:06d}"


class Invoice(db.Model):
    __tablename__ = "invoices"

    PURCHASE = "PURCHASE"
    SUBSCRIPTION = "SUBSCRIPTION"
    TYPES = [PURCHASE, SUBSCRIPTION]

    ISSUED = "ISSUED"
    PAID = "PAID"
    CANCELLED = "CANCELLED"
    STATUSES = [ISSUED, PAID, CANCELLED]

    # -- Valid status transitions (enforced in invoice_service) --
    VALID_TRANSITIONS = {
        ISSUED: [PAID, CANCELLED],
        PAID: [CANCELLED],
    }

    PDF_PENDING = "PENDING"
    PDF_RENDERED = "RENDERED"
    PDF_FAILED = "FAILED"
    PDF_SKIPPED = "SKIPPED"

    # Columns that may still change after the invoice is persisted.
    MUTABLE_COLUMNS = {"status", "pdf_status", "pdf_path", "updated_at"}

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    invoice_number = db.Column(db.Integer, unique=True, nullable=False)
    invoice_type = db.Column(db.String(20), nullable=False)  # PURCHASE | SUBSCRIPTION
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False, index=True
    )
    purchase_id = db.Column(
        db.String(36), db.ForeignKey("purchases.id"), unique=True, nullable=True
    )
    subscription_charge_id = db.Column(
        db.String(36),
        db.ForeignKey("subscription_charges.id"),
        unique=True,
        nullable=True,
    )
    status = db.Column(
        db.String(20), nullable=False, default=ISSUED
    )  # ISSUED | PAID | CANCELLED
    subtotal_cents = db.Column(db.Integer, nullable=False)  # pre-tax
    tax_rate = db.Column(db.Numeric(5, 2), nullable=False)  # percentage, e.g. 21.00
    tax_cents = db.Column(db.Integer, nullable=False)
    total_cents = db.Column(db.Integer, nullable=False)
    # What the payment actually settled, net of tax. Frozen like the totals.
    amount_paid_cents = db.Column(db.Integer, nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False)
    billing_snapshot = db.Column(db.JSON, nullable=True)  # None if no profile
    seller_snapshot = db.Column(db.JSON, nullable=False)
    payment_reference = db.Column(db.String(255), nullable=True)
    issued_at = db.Column(db.DateTime(timezone=True), nullable=False)
    pdf_status = db.Column(
        db.String(20), nullable=False, default=PDF_PENDING
    )  # PENDING | RENDERED | FAILED | SKIPPED
    pdf_path = db.Column(db.String(512), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __table_args__ = (
        db.CheckConstraint(
            "(invoice_type = 'PURCHASE' AND purchase_id IS NOT NULL "
            "AND subscription_charge_id IS NULL) OR "
            "(invoice_type = 'SUBSCRIPTION' AND subscription_charge_id IS NOT NULL "
            "AND purchase_id IS NULL)",
            name="ck_invoice_source_matches_type",
        ),
        db.CheckConstraint(
            "total_cents = subtotal_cents + tax_cents",
            name="ck_invoice_total",
        ),
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="invoices")
    purchase = db.relationship("Purchase", back_populates="invoice")
    subscription_charge = db.relationship(
        "SubscriptionCharge", back_populates="invoice"
    )
    line_items = db.relationship(
        "InvoiceLineItem",
        back_populates="invoice",
        order_by="InvoiceLineItem.position",
    )

    @property
    def display_number(self):
        return format_invoice_number(self.invoice_number)

    def to_dict(self, include_lines=True):
        data = {
            "id": self.id,
            "invoice_number": self.display_number,
            "invoice_type": self.invoice_type,
            "status": self.status,
            "purchase_id": self.purchase_id,
            "subscription_charge_id": self.subscription_charge_id,
            "subtotal_cents": self.subtotal_cents,
            "tax_rate": str(self.tax_rate),
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "amount_paid_cents": self.amount_paid_cents,
            "currency": self.currency,
            "billing": self.billing_snapshot,
            "seller": self.seller_snapshot,
            "payment_reference": self.payment_reference,
            "issued_at": self.issued_at.isoformat() if self.issued_at else None,
            "pdf_status": self.pdf_status,
            "pdf_path": self.pdf_path,
        }
        if include_lines:
            data["line_items"] = [line.to_dict() for line in self.line_items]
        return data

    def __repr__(self):
        return f"<Invoice {self.invoice_number} ({self.status})>"


class InvoiceLineItem(db.Model):
    __tablename__ = "invoice_line_items"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    invoice_id = db.Column(
        db.String(36), db.ForeignKey("invoices.id"), nullable=False, index=True
    )
    position = db.Column(db.Integer, nullable=False, default=0)
    description = db.Column(db.String(500), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price_cents = db.Column(db.Integer, nullable=False)  # pre-tax
    tax_rate = db.Column(db.Numeric(5, 2), nullable=False)
    total_cents = db.Column(db.Integer, nullable=False)  # quantity * unit, pre-tax

    __table_args__ = (
        db.CheckConstraint(
            "total_cents = quantity * unit_price_cents",
            name="ck_invoice_line_total",
        ),
    )

    # --- Relationships ---
    invoice = db.relationship("Invoice", back_populates="line_items")

    def to_dict(self):
        return {
            "description": self.description,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "tax_rate": str(self.tax_rate),
            "total_cents": self.total_cents,
        }

    def __repr__(self):
        return f"<InvoiceLineItem {self.description} {self.total_cents}>"


class InvoiceSequence(db.Model):
    __tablename__ = "invoice_sequences"

    INVOICES = "invoices"

    name = db.Column(db.String(50), primary_key=True)
    last_value = db.Column(db.Integer, nullable=False, default=0)

    def __repr__(self):
        return f"<InvoiceSequence {self.name}={self.last_value}>"


# ──────────────────────────────────────────────
# Immutability guard
# ──────────────────────────────────────────────

def _changed_columns(obj):
    state = inspect(obj)
    return {
        attr.key
        for attr in state.mapper.column_attrs
        if state.attrs[attr.key].history.has_changes()
    }


@event.listens_for(Session, "before_flush")
def _reject_issued_invoice_changes(session, flush_context, instances):
    for obj in session.dirty:
        if not inspect(obj).persistent:
            continue
        if isinstance(obj, Invoice):
            frozen = _changed_columns(obj) - Invoice.MUTABLE_COLUMNS
            if frozen:
                raise InvariantViolation(
                    f"Invoice {obj.invoice_number} is immutable; "
                    f"attempted change to {sorted(frozen)}"
                )
        elif isinstance(obj, InvoiceLineItem) and _changed_columns(obj):
            raise InvariantViolation(
                f"Invoice line {obj.id} is immutable"
            )

    for obj in session.deleted:
        if isinstance(obj, (Invoice, InvoiceLineItem)):
            raise InvariantViolation("Issued invoices cannot be deleted")
