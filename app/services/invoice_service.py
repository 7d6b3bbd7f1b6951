"""Invoice service — issues immutable, sequentially numbered invoices.

Invoices are issued only from settled payments: a COMPLETED purchase or a
recorded subscription charge. Each issue runs in one transaction that
  1. refuses a second invoice for the same source (AlreadyInvoiced),
  2. draws the next number from the invoice_sequences row,
  3. freezes the billing profile and seller block as snapshots,
  4. checks the totals before anything is persisted,
  5. moves the invoice from ISSUED to PAID when the amount actually
     settled covers the subtotal.
If the transaction rolls back the sequence increment rolls back with it,
so numbers stay gap-free. Rendering the PDF happens after commit and is
best-effort.
"""

import copy
import logging
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from app.errors import AlreadyInvoiced, InvalidState, InvariantViolation, NotFound
from app.extensions import db
from app.models.audit import AuditEvent
from app.models.invoice import Invoice, InvoiceLineItem, InvoiceSequence
from app.models.purchase import Purchase
from app.services import billing_service, renderer_service

logger = logging.getLogger(__name__)


def compute_tax_cents(subtotal_cents, tax_rate):
    """round_half_up(subtotal * rate / 100) in whole cents."""
    amount = Decimal(subtotal_cents) * Decimal(tax_rate) / Decimal(100)
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def seller_snapshot(app_config=None):
    app_config = app_config or current_app.config
    return {
        "name": app_config.get("SELLER_NAME"),
        "tax_id": app_config.get("SELLER_TAX_ID"),
        "address": app_config.get("SELLER_ADDRESS"),
        "email": app_config.get("SELLER_EMAIL"),
    }


def next_invoice_number():
    """Increment the system-wide counter inside the current transaction.

    The UPDATE takes a row lock until commit/rollback, so concurrent
    issuers queue behind each other and a rollback returns the number.
    """
    name = InvoiceSequence.INVOICES
    result = db.session.execute(
        update(InvoiceSequence)
        .where(InvoiceSequence.name == name)
        .values(last_value=InvoiceSequence.last_value + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.session.add(InvoiceSequence(name=name, last_value=1))
        db.session.flush()
        return 1
    return db.session.query(InvoiceSequence.last_value).filter_by(name=name).scalar()


def check_invoice_totals(invoice, lines):
    """Raise InvariantViolation unless lines and totals agree."""
    for line in lines:
        if line.total_cents != line.quantity * line.unit_price_cents:
            raise InvariantViolation(
                f"Line '{line.description}' total {line.total_cents} != "
                f"{line.quantity} x {line.unit_price_cents}"
            )
        if line.unit_price_cents < 0:
            raise InvariantViolation(f"Negative line '{line.description}'")
    lines_total = sum(line.total_cents for line in lines)
    if lines_total != invoice.subtotal_cents:
        raise InvariantViolation(
            f"Line totals {lines_total} != subtotal {invoice.subtotal_cents}"
        )
    if invoice.total_cents != invoice.subtotal_cents + invoice.tax_cents:
        raise InvariantViolation(
            f"Total {invoice.total_cents} != subtotal {invoice.subtotal_cents} "
            f"+ tax {invoice.tax_cents}"
        )


def _source_invoice(purchase_id, subscription_charge_id):
    if purchase_id is not None:
        return Invoice.query.filter_by(purchase_id=purchase_id).first()
    if subscription_charge_id is not None:
        return Invoice.query.filter_by(
            subscription_charge_id=subscription_charge_id
        ).first()
    return None


def _issue(user_id, invoice_type, currency, line_specs, payment_reference,
           amount_paid_cents, tax_rate=None, purchase_id=None,
           subscription_charge_id=None, actor_user_id=None):
    """Build, check and persist one invoice. Commits; renders after commit.

    line_specs: list of (description, quantity, unit_price_cents).
    amount_paid_cents: what the processor settled, net of tax.
    """
    profile = billing_service.get_billing_profile(user_id)
    if tax_rate is None:
        tax_rate = billing_service.get_tax_rate_for(profile)
    try:
        tax_rate = Decimal(str(tax_rate))
    except InvalidOperation:
        raise ValueError(f"Invalid tax rate: {tax_rate!r}")
    if tax_rate < 0 or tax_rate > 100:
        raise ValueError(f"Tax rate out of range: {tax_rate}")

    lines = [
        InvoiceLineItem(
            position=position,
            description=description,
            quantity=quantity,
            unit_price_cents=unit_price,
            tax_rate=tax_rate,
            total_cents=quantity * unit_price,
        )
        for position, (description, quantity, unit_price) in enumerate(line_specs)
    ]
    subtotal = sum(line.total_cents for line in lines)
    tax_cents = compute_tax_cents(subtotal, tax_rate)

    invoice = Invoice(
        invoice_type=invoice_type,
        user_id=user_id,
        purchase_id=purchase_id,
        subscription_charge_id=subscription_charge_id,
        status=Invoice.ISSUED,
        subtotal_cents=subtotal,
        tax_rate=tax_rate,
        tax_cents=tax_cents,
        total_cents=subtotal + tax_cents,
        amount_paid_cents=amount_paid_cents or 0,
        currency=currency.upper(),
        billing_snapshot=copy.deepcopy(profile.to_snapshot()) if profile else None,
        seller_snapshot=seller_snapshot(),
        payment_reference=payment_reference,
        issued_at=datetime.now(timezone.utc),
        pdf_status=Invoice.PDF_PENDING,
    )

    try:
        check_invoice_totals(invoice, lines)
    except InvariantViolation as e:
        db.session.rollback()
        logger.error(f"Refusing to issue invoice for user {user_id}: {e.message}")
        raise

    try:
        invoice.invoice_number = next_invoice_number()
        db.session.add(invoice)
        for line in lines:
            invoice.line_items.append(line)
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        if _source_invoice(purchase_id, subscription_charge_id) is not None:
            logger.warning(
                f"Concurrent invoice for purchase={purchase_id} "
                f"charge={subscription_charge_id}; keeping the other one"
            )
            raise AlreadyInvoiced("An invoice already exists for this payment.")
        logger.error(
            f"Invoice number collision for purchase={purchase_id} "
            f"charge={subscription_charge_id}; sequence out of step",
            exc_info=True,
        )
        raise InvariantViolation("Invoice number collision; invoice not issued.")

    db.session.add(AuditEvent(
        actor_user_id=actor_user_id,
        action="invoice.issued",
        metadata_={
            "invoice_id": invoice.id,
            "invoice_number": invoice.invoice_number,
            "invoice_type": invoice_type,
            "purchase_id": purchase_id,
            "subscription_charge_id": subscription_charge_id,
            "total_cents": invoice.total_cents,
        },
    ))
    if invoice.amount_paid_cents >= invoice.subtotal_cents:
        advance_invoice_status(invoice, Invoice.PAID, actor_user_id=actor_user_id)
    else:
        logger.warning(
            f"Invoice {invoice.display_number} left ISSUED: paid "
            f"{invoice.amount_paid_cents} of {invoice.subtotal_cents} {invoice.currency}"
        )
    db.session.commit()

    logger.info(
        f"Issued invoice {invoice.display_number} ({invoice_type}) for user "
        f"{user_id}: {invoice.total_cents} {invoice.currency}"
    )

    renderer_service.request_invoice_render(invoice)
    return invoice


def issue_for_purchase(purchase, tax_rate=None, actor_user_id=None):
    """Issue the invoice for a COMPLETED purchase.

    Raises:
        AlreadyInvoiced: The purchase already has an invoice.
        InvalidState: The purchase is not COMPLETED.
        InvariantViolation: Line items and totals disagree.
    """
    if _source_invoice(purchase.id, None) is not None:
        raise AlreadyInvoiced(f"Purchase {purchase.id} is already invoiced.")
    if purchase.status != Purchase.COMPLETED:
        raise InvalidState(
            f"Only completed purchases can be invoiced (purchase is {purchase.status})."
        )

    line_specs = [
        (
            item.audiobook.title if item.audiobook else item.audiobook_id,
            1,
            item.price_paid_cents,
        )
        for item in purchase.items
    ]
    if sum(unit_price for _, _, unit_price in line_specs) != purchase.price_paid_cents:
        raise InvariantViolation(
            f"Purchase {purchase.id} item prices do not add up to the amount paid"
        )

    # A discount rejected at capture leaves the purchase at list price while
    # the processor settled the discounted amount; the invoice records both.
    amount_paid = purchase.amount_captured_cents
    if amount_paid is None:
        amount_paid = purchase.price_paid_cents

    return _issue(
        user_id=purchase.user_id,
        invoice_type=Invoice.PURCHASE,
        currency=purchase.currency,
        line_specs=line_specs,
        payment_reference=purchase.external_capture_id or purchase.external_order_id,
        amount_paid_cents=amount_paid,
        tax_rate=tax_rate,
        purchase_id=purchase.id,
        actor_user_id=actor_user_id,
    )


def invoice_completed_purchase(purchase):
    """Issue the purchase's invoice unless one exists. Returns the invoice.

    Used right after completion, where a webhook and the capture request
    may race to invoice the same purchase.
    """
    existing = Invoice.query.filter_by(purchase_id=purchase.id).first()
    if existing is not None:
        return existing
    try:
        return issue_for_purchase(purchase)
    except AlreadyInvoiced:
        return Invoice.query.filter_by(purchase_id=purchase.id).first()


def issue_for_subscription_charge(charge, tax_rate=None, actor_user_id=None):
    """Issue the invoice for a settled subscription charge.

    Raises:
        AlreadyInvoiced: The charge already has an invoice.
    """
    if _source_invoice(None, charge.id) is not None:
        raise AlreadyInvoiced(f"Charge {charge.external_charge_id} is already invoiced.")

    subscription = charge.subscription
    plan = subscription.plan
    description = f"Subscription {plan.name} ({plan.interval_label})"

    return _issue(
        user_id=subscription.user_id,
        invoice_type=Invoice.SUBSCRIPTION,
        currency=charge.currency,
        line_specs=[(description, 1, charge.amount_cents)],
        payment_reference=charge.external_charge_id,
        amount_paid_cents=charge.amount_cents,
        tax_rate=tax_rate,
        subscription_charge_id=charge.id,
        actor_user_id=actor_user_id,
    )


def advance_invoice_status(invoice, new_status, actor_user_id=None):
    """Move an invoice along ISSUED -> PAID -> CANCELLED (or ISSUED -> CANCELLED).

    Flushes; the caller commits.

    Raises:
        ValueError: Unknown status.
        InvalidState: Transition not allowed.
    """
    if new_status not in Invoice.STATUSES:
        raise ValueError(
            f"Invalid status '{new_status}'. Must be one of: {', '.join(Invoice.STATUSES)}"
        )

    old_status = invoice.status
    if old_status == new_status:
        return invoice  # no-op

    allowed = Invoice.VALID_TRANSITIONS.get(old_status, [])
    if new_status not in allowed:
        raise InvalidState(
            f"Cannot transition invoice from '{old_status}' to '{new_status}'. "
            f"Allowed: {', '.join(allowed) if allowed else 'none (terminal state)'}"
        )

    invoice.status = new_status
    db.session.flush()

    db.session.add(AuditEvent(
        actor_user_id=actor_user_id,
        action="invoice.status_changed",
        metadata_={
            "invoice_id": invoice.id,
            "invoice_number": invoice.invoice_number,
            "old_status": old_status,
            "new_status": new_status,
        },
    ))
    db.session.flush()
    return invoice


def get_invoice(invoice_id, user_id=None):
    """Load an invoice; with user_id, only that user's invoice is visible."""
    invoice = db.session.get(Invoice, invoice_id)
    if invoice is None or (user_id is not None and invoice.user_id != user_id):
        raise NotFound(f"Invoice {invoice_id} not found.")
    return invoice


def list_user_invoices(user_id):
    return (
        Invoice.query
        .filter_by(user_id=user_id)
        .order_by(Invoice.invoice_number.desc())
        .all()
    )
