"""Purchase service — checkout orchestration and the purchase state machine.

    PENDING --capture ok--> COMPLETED --admin refund--> REFUNDED
    PENDING --declined / expired--> FAILED

create_order() prices the cart, asks the payment gateway for an order and
persists a PENDING purchase keyed by the gateway's order id. capture_order()
captures it and, in one transaction, flips the purchase to COMPLETED and
redeems the discount. Completion is exactly-once per order: the row is
locked where the backend supports it, the status flip is a compare-and-set
UPDATE, and discount_redemptions.purchase_id is unique.

Each public operation here owns its transaction and commits.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from flask import current_app
from sqlalchemy import update

from app.errors import (
    DiscountRejected,
    InvalidState,
    InvariantViolation,
    NotFound,
    PaymentDeclined,
    ProcessorError,
)
from app.extensions import db, with_row_lock
from app.models.audit import AuditEvent
from app.models.catalog import Audiobook
from app.models.purchase import Purchase, PurchaseItem
from app.models.user import User
from app.services import discount_service

logger = logging.getLogger(__name__)

LOCAL_ORDER_PREFIX = "local_"


@dataclass(frozen=True)
class CartLine:
    content_id: str
    unit_price_cents: int
    currency: str


@dataclass(frozen=True)
class CartSnapshot:
    """Prices captured from the catalog at checkout time."""

    lines: Tuple[CartLine, ...]

    def __post_init__(self):
        if not self.lines:
            raise ValueError("Cart is empty.")
        currencies = {line.currency for line in self.lines}
        if len(currencies) != 1:
            raise ValueError("All cart items must share one currency.")
        ids = [line.content_id for line in self.lines]
        if len(ids) != len(set(ids)):
            raise ValueError("Cart contains duplicate items.")
        for line in self.lines:
            if line.unit_price_cents < 0:
                raise ValueError("Cart prices cannot be negative.")

    @property
    def currency(self):
        return self.lines[0].currency

    @property
    def total_cents(self):
        return sum(line.unit_price_cents for line in self.lines)

    @property
    def content_ids(self):
        return [line.content_id for line in self.lines]


@dataclass(frozen=True)
class CheckoutOrder:
    external_order_id: str
    purchase_id: str
    client_secret: Optional[str]
    subtotal_cents: int
    discount_amount_cents: int
    final_amount_cents: int
    currency: str

    def to_dict(self):
        return {
            "order_id": self.external_order_id,
            "purchase_id": self.purchase_id,
            "client_secret": self.client_secret,
            "subtotal_cents": self.subtotal_cents,
            "discount_amount_cents": self.discount_amount_cents,
            "final_amount_cents": self.final_amount_cents,
            "currency": self.currency,
        }


def _gateway(gateway):
    if gateway is not None:
        return gateway
    from app.services.stripe_service import get_payment_gateway
    return get_payment_gateway()


def _audit(action, purchase, actor_user_id=None, **extra):
    metadata = {
        "purchase_id": purchase.id,
        "external_order_id": purchase.external_order_id,
    }
    metadata.update(extra)
    db.session.add(AuditEvent(
        actor_user_id=actor_user_id,
        action=action,
        metadata_=metadata,
    ))
    db.session.flush()


def allocate_discount(list_prices, discount_cents):
    """Split a discount across items in proportion to their list prices.

    Whole cents only; no item is reduced below zero. Leftover cents from
    flooring go to the items with the largest fractional share first.

    Returns the paid price per item, summing to sum(list_prices) - discount.
    """
    total = sum(list_prices)
    if discount_cents <= 0 or total <= 0:
        return list(list_prices)
    if discount_cents > total:
        raise ValueError("Discount exceeds cart total.")

    shares = [price * discount_cents // total for price in list_prices]
    leftover = discount_cents - sum(shares)
    order = sorted(
        range(len(list_prices)),
        key=lambda i: (-(list_prices[i] * discount_cents % total), i),
    )
    while leftover > 0:
        for i in order:
            if leftover == 0:
                break
            if shares[i] < list_prices[i]:
                shares[i] += 1
                leftover -= 1

    return [price - share for price, share in zip(list_prices, shares)]


# ──────────────────────────────────────────────
# Lookups
# ──────────────────────────────────────────────

def get_purchase(purchase_id):
    purchase = db.session.get(Purchase, purchase_id)
    if purchase is None:
        raise NotFound(f"Purchase {purchase_id} not found.")
    return purchase


def get_purchase_by_order(external_order_id):
    return Purchase.query.filter_by(external_order_id=external_order_id).first()


def list_user_purchases(user_id, status=None):
    query = Purchase.query.filter_by(user_id=user_id)
    if status:
        query = query.filter_by(status=status)
    return query.order_by(Purchase.created_at.desc()).all()


def owned_content_ids(user_id, content_ids):
    """Subset of content_ids the user already holds through a COMPLETED purchase."""
    if not content_ids:
        return set()
    rows = (
        db.session.query(PurchaseItem.audiobook_id)
        .join(Purchase, Purchase.id == PurchaseItem.purchase_id)
        .filter(
            Purchase.user_id == user_id,
            Purchase.status == Purchase.COMPLETED,
            PurchaseItem.audiobook_id.in_(content_ids),
        )
        .all()
    )
    return {row[0] for row in rows}


def _lock_purchase(external_order_id):
    purchase = with_row_lock(
        Purchase.query.filter_by(external_order_id=external_order_id)
    ).populate_existing().first()
    if purchase is None:
        raise NotFound(f"Order {external_order_id} not found.")
    return purchase


# ──────────────────────────────────────────────
# Checkout
# ──────────────────────────────────────────────

def build_cart_snapshot(content_ids):
    """Price the requested audiobooks from the catalog.

    Raises:
        NotFound: If any id is not in the catalog.
        ValueError: Empty cart, free items, or mixed currencies.
    """
    ordered = []
    for content_id in content_ids or []:
        if content_id not in ordered:
            ordered.append(content_id)
    if not ordered:
        raise ValueError("Cart is empty.")

    books = {
        book.id: book
        for book in Audiobook.query.filter(Audiobook.id.in_(ordered)).all()
    }
    missing = [cid for cid in ordered if cid not in books]
    if missing:
        raise NotFound(f"Unknown content: {', '.join(missing)}")

    lines = []
    for cid in ordered:
        book = books[cid]
        if book.is_free_content:
            raise ValueError(f"'{book.title}' is free and cannot be purchased.")
        lines.append(CartLine(
            content_id=book.id,
            unit_price_cents=book.price_cents,
            currency=book.currency.upper(),
        ))
    return CartSnapshot(lines=tuple(lines))


def create_order(user_id, cart, discount_code=None, gateway=None):
    """Open a PENDING purchase for a cart.

    Args:
        user_id: Buyer's user UUID string.
        cart: CartSnapshot.
        discount_code: Optional code string; re-validated against the cart.
        gateway: Payment gateway (defaults to Stripe).

    Returns:
        CheckoutOrder.

    Raises:
        InvalidState: User already owns an item in the cart.
        DiscountRejected: Code given but not valid for this cart.
        PaymentDeclined / ProcessorError: Gateway failure; no row is created.
    """
    owned = owned_content_ids(user_id, cart.content_ids)
    if owned:
        raise InvalidState(
            f"Already purchased: {', '.join(sorted(owned))}"
        )

    subtotal = cart.total_cents
    discount = None
    discount_amount = 0
    if discount_code and discount_code.strip():
        discount, discount_amount = discount_service.apply_discount(
            discount_code, subtotal, user_id, for_subscription=False
        )
    final_amount = subtotal - discount_amount

    if final_amount > 0:
        order = _gateway(gateway).create_order(
            final_amount,
            cart.currency,
            metadata={"user_id": user_id, "content_ids": ",".join(cart.content_ids)},
        )
        external_order_id = order.order_id
        client_secret = order.client_secret
    else:
        external_order_id = f"{LOCAL_ORDER_PREFIX}{uuid.uuid4().hex}"
        client_secret = None

    paid_prices = allocate_discount(
        [line.unit_price_cents for line in cart.lines], discount_amount
    )

    purchase = Purchase(
        user_id=user_id,
        status=Purchase.PENDING,
        currency=cart.currency,
        subtotal_cents=subtotal,
        discount_code_id=discount.id if discount else None,
        discount_amount_cents=discount_amount,
        price_paid_cents=final_amount,
        external_order_id=external_order_id,
    )
    db.session.add(purchase)
    for position, (line, paid) in enumerate(zip(cart.lines, paid_prices)):
        purchase.items.append(PurchaseItem(
            audiobook_id=line.content_id,
            position=position,
            list_price_cents=line.unit_price_cents,
            price_paid_cents=paid,
        ))
    db.session.flush()

    _audit(
        "purchase.created", purchase, actor_user_id=user_id,
        subtotal_cents=subtotal,
        discount_amount_cents=discount_amount,
        final_amount_cents=final_amount,
        discount_code=discount.code if discount else None,
    )
    db.session.commit()

    logger.info(
        f"Order {external_order_id} created for user {user_id}: "
        f"{len(cart.lines)} item(s), {final_amount} {cart.currency}"
    )
    return CheckoutOrder(
        external_order_id=external_order_id,
        purchase_id=purchase.id,
        client_secret=client_secret,
        subtotal_cents=subtotal,
        discount_amount_cents=discount_amount,
        final_amount_cents=final_amount,
        currency=cart.currency,
    )


# ──────────────────────────────────────────────
# Completion
# ──────────────────────────────────────────────

def _revert_to_full_price(purchase, reason):
    """Discount no longer valid at completion: the purchase stands at list price."""
    from app.models.discount import DiscountCode

    code = db.session.get(DiscountCode, purchase.discount_code_id)
    granted = purchase.discount_amount_cents

    purchase.discount_code_id = None
    purchase.discount_amount_cents = 0
    purchase.price_paid_cents = purchase.subtotal_cents
    for item in purchase.items:
        item.price_paid_cents = item.list_price_cents
    db.session.flush()

    logger.warning(
        f"Discount {code.code if code else '?'} rejected ({reason.value}) while "
        f"completing {purchase.external_order_id}; completed at full price"
    )
    _audit(
        "discount.rejected_at_capture", purchase,
        code=code.code if code else None,
        reason=reason.value,
        discount_not_applied_cents=granted,
        amount_captured_cents=purchase.amount_captured_cents,
    )


def _complete(purchase, capture):
    """PENDING -> COMPLETED plus redemption, inside the caller's transaction.

    Returns the purchase, or None if another transaction completed it first.
    """
    if (
        capture.amount_captured_cents != purchase.price_paid_cents
        or (capture.currency or "").upper() != purchase.currency.upper()
    ):
        db.session.rollback()
        logger.error(
            f"Capture mismatch on {purchase.external_order_id}: captured "
            f"{capture.amount_captured_cents} {capture.currency}, expected "
            f"{purchase.price_paid_cents} {purchase.currency}"
        )
        raise InvariantViolation(
            f"Captured amount does not match order {purchase.external_order_id}"
        )

    now = datetime.now(timezone.utc)
    result = db.session.execute(
        update(Purchase)
        .where(Purchase.id == purchase.id, Purchase.status == Purchase.PENDING)
        .values(
            status=Purchase.COMPLETED,
            external_capture_id=capture.capture_id,
            payer_email=capture.payer_email,
            amount_captured_cents=capture.amount_captured_cents,
            purchased_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None
    db.session.refresh(purchase)

    if purchase.discount_code_id:
        try:
            discount_service.redeem_discount(
                purchase.discount_code_id,
                purchase.user_id,
                purchase.id,
                purchase.subtotal_cents,
                discount_amount_cents=purchase.discount_amount_cents,
            )
        except DiscountRejected as e:
            _revert_to_full_price(purchase, e.reason)

    _audit(
        "purchase.completed", purchase,
        external_capture_id=capture.capture_id,
        amount_captured_cents=capture.amount_captured_cents,
        discount_amount_cents=purchase.discount_amount_cents,
    )
    logger.info(
        f"Purchase {purchase.id} ({purchase.external_order_id}) completed, "
        f"captured {capture.amount_captured_cents} {purchase.currency}"
    )
    return purchase


def _reload_completed(external_order_id):
    """After losing the compare-and-set: return the winner's result."""
    db.session.rollback()
    purchase = get_purchase_by_order(external_order_id)
    if purchase is not None and purchase.status == Purchase.COMPLETED:
        logger.warning(f"Order {external_order_id} completed concurrently")
        return purchase
    raise InvalidState(
        f"Order {external_order_id} is {purchase.status if purchase else 'missing'}"
    )


def capture_order(external_order_id, gateway=None):
    """Capture an order and complete its purchase.

    Idempotent: capturing a COMPLETED purchase returns it unchanged.

    Raises:
        NotFound: Unknown order id.
        InvalidState: Purchase is FAILED or REFUNDED.
        PaymentDeclined: Definitive decline; the purchase is now FAILED.
        ProcessorError: Outcome unknown; the purchase stays PENDING.
        InvariantViolation: Captured amount/currency differs from the order.
    """
    purchase = _lock_purchase(external_order_id)

    if purchase.status == Purchase.COMPLETED:
        logger.warning(f"Duplicate capture for {external_order_id}; already completed")
        return purchase
    if purchase.status != Purchase.PENDING:
        raise InvalidState(
            f"Order {external_order_id} is {purchase.status} and cannot be captured"
        )

    if purchase.is_local_order:
        from app.services.stripe_service import CaptureResult

        user = db.session.get(User, purchase.user_id)
        capture = CaptureResult(
            capture_id=None,
            payer_email=user.email if user else None,
            amount_captured_cents=0,
            currency=purchase.currency,
        )
    else:
        try:
            capture = _gateway(gateway).capture_order(external_order_id)
        except PaymentDeclined as e:
            if not _mark_failed(purchase, str(e.message)):
                # A parallel capture (or its webhook) settled the order first
                # and the processor refused the second capture.
                db.session.rollback()
                current = get_purchase_by_order(external_order_id)
                if current is not None and current.status == Purchase.COMPLETED:
                    logger.warning(
                        f"Capture of {external_order_id} refused after it completed "
                        f"concurrently; returning the completed purchase"
                    )
                    return current
                raise
            db.session.commit()
            logger.info(f"Order {external_order_id} declined: {e.message}")
            raise
        except ProcessorError:
            db.session.rollback()
            logger.error(
                f"Capture outcome unknown for {external_order_id}; left PENDING",
            )
            raise

    completed = _complete(purchase, capture)
    if completed is None:
        return _reload_completed(external_order_id)
    db.session.commit()
    return completed


def complete_from_processor(external_order_id, capture):
    """Complete a PENDING purchase from an asynchronous processor notification.

    No capture call is made; the notification is the capture.

    Raises:
        InvalidState: The purchase already ended FAILED/REFUNDED.
    """
    purchase = _lock_purchase(external_order_id)

    if purchase.status == Purchase.COMPLETED:
        return purchase
    if purchase.status != Purchase.PENDING:
        logger.error(
            f"Processor reports {external_order_id} captured but purchase is "
            f"{purchase.status}; needs manual reconciliation"
        )
        _audit(
            "purchase.capture_after_terminal", purchase,
            status=purchase.status,
            amount_captured_cents=capture.amount_captured_cents,
        )
        db.session.commit()
        raise InvalidState(
            f"Order {external_order_id} is {purchase.status}"
        )

    completed = _complete(purchase, capture)
    if completed is None:
        return _reload_completed(external_order_id)
    db.session.commit()
    return completed


def _mark_failed(purchase, reason):
    result = db.session.execute(
        update(Purchase)
        .where(Purchase.id == purchase.id, Purchase.status == Purchase.PENDING)
        .values(status=Purchase.FAILED, failure_reason=(reason or "")[:255])
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    db.session.refresh(purchase)
    _audit("purchase.failed", purchase, reason=reason)
    return True


def fail_purchase(external_order_id, reason):
    """PENDING -> FAILED. No-op for purchases already in a terminal state.

    Returns the purchase.
    """
    purchase = _lock_purchase(external_order_id)
    if purchase.status != Purchase.PENDING:
        logger.info(
            f"fail_purchase ignored for {external_order_id}: already {purchase.status}"
        )
        return purchase

    if _mark_failed(purchase, reason):
        logger.info(f"Order {external_order_id} failed: {reason}")
    db.session.commit()
    return purchase


# ──────────────────────────────────────────────
# Admin / maintenance
# ──────────────────────────────────────────────

def refund_purchase(purchase_id, actor_user_id, reason=None):
    """COMPLETED -> REFUNDED and cancel the purchase's invoice.

    Access is revoked as a consequence; moving the money back is done in
    the processor dashboard.
    """
    from app.models.invoice import Invoice
    from app.services import invoice_service

    purchase = with_row_lock(
        Purchase.query.filter_by(id=purchase_id)
    ).populate_existing().first()
    if purchase is None:
        raise NotFound(f"Purchase {purchase_id} not found.")

    if Purchase.REFUNDED not in Purchase.VALID_TRANSITIONS.get(purchase.status, []):
        raise InvalidState(
            f"Cannot refund a {purchase.status} purchase"
        )

    now = datetime.now(timezone.utc)
    result = db.session.execute(
        update(Purchase)
        .where(Purchase.id == purchase.id, Purchase.status == Purchase.COMPLETED)
        .values(status=Purchase.REFUNDED, refunded_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        raise InvalidState(f"Purchase {purchase_id} changed concurrently")
    db.session.refresh(purchase)

    invoice = purchase.invoice
    if invoice is not None and invoice.status != Invoice.CANCELLED:
        invoice_service.advance_invoice_status(
            invoice, Invoice.CANCELLED, actor_user_id=actor_user_id
        )

    _audit(
        "purchase.refunded", purchase, actor_user_id=actor_user_id,
        reason=reason,
        invoice_id=invoice.id if invoice else None,
    )
    db.session.commit()
    logger.info(f"Purchase {purchase_id} refunded by {actor_user_id}")
    return purchase


def reclaim_stale_purchases(max_age_hours=None, now=None):
    """Mark PENDING purchases older than the TTL as FAILED ("expired").

    Idempotent; returns the number of purchases reclaimed.
    """
    if max_age_hours is None:
        max_age_hours = current_app.config.get("PENDING_PURCHASE_TTL_HOURS", 24)
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(hours=max_age_hours)

    stale_ids = [
        row[0]
        for row in db.session.query(Purchase.id)
        .filter(Purchase.status == Purchase.PENDING, Purchase.created_at < cutoff)
        .all()
    ]
    if not stale_ids:
        return 0

    result = db.session.execute(
        update(Purchase)
        .where(Purchase.id.in_(stale_ids), Purchase.status == Purchase.PENDING)
        .values(status=Purchase.FAILED, failure_reason="expired")
        .execution_options(synchronize_session=False)
    )
    count = result.rowcount

    db.session.add(AuditEvent(
        action="purchase.reclaimed",
        metadata_={"count": count, "cutoff": cutoff.isoformat()},
    ))
    db.session.commit()
    logger.info(f"Reclaimed {count} stale pending purchase(s) older than {max_age_hours}h")
    return count
