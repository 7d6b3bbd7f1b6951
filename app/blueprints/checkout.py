"""Checkout blueprint — /api/*

Discount preview, order creation and capture, and access checks.

Routes:
- GET  /api/csrf-token                   — token for the JSON client
- POST /api/discounts/validate           — preview a code against a cart
- POST /api/orders                       — create a PENDING purchase
- POST /api/orders/<order_id>/capture    — capture + complete (+ invoice)
- POST /api/subscriptions/checkout       — Stripe Checkout URL for a plan
- GET  /api/access/<content_id>          — may the current user play this?

Engine errors (BillingError) are rendered by the app-level handler.
"""

import logging

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required
from flask_wtf.csrf import generate_csrf

from app.errors import BillingError, InvalidState, NotFound
from app.extensions import db, limiter
from app.models.subscription import SubscriptionPlan
from app.services import (
    discount_service,
    entitlement_service,
    invoice_service,
    purchase_service,
    stripe_service,
)

logger = logging.getLogger(__name__)

checkout_bp = Blueprint("checkout", __name__, url_prefix="/api")


def _validate_rate_limit():
    return current_app.config.get("DISCOUNT_VALIDATE_RATE_LIMIT", "30 per minute")


def _content_ids_from(data):
    content_ids = data.get("content_ids")
    if not isinstance(content_ids, list) or not all(isinstance(c, str) for c in content_ids):
        raise ValueError("'content_ids' must be a list of ids.")
    return content_ids


@checkout_bp.route("/csrf-token")
def csrf_token():
    return jsonify({"csrf_token": generate_csrf()})


# ──────────────────────────────────────────────
# POST /api/discounts/validate
# ──────────────────────────────────────────────

@checkout_bp.route("/discounts/validate", methods=["POST"])
@login_required
@limiter.limit(_validate_rate_limit)
def validate_discount():
    """Preview a code. Body: {"code": "...", "content_ids": [...]} or
    {"code": "...", "cart_total_cents": 1000, "for_subscription": true}.
    """
    data = request.get_json(silent=True) or {}
    code = data.get("code") or ""

    try:
        if "content_ids" in data:
            cart = purchase_service.build_cart_snapshot(_content_ids_from(data))
            cart_total = cart.total_cents
        else:
            cart_total = int(data.get("cart_total_cents"))
    except (TypeError, ValueError) as e:
        message = str(e) if isinstance(e, ValueError) else "Invalid cart."
        return jsonify({"error": "invalid_request", "message": message}), 400

    result = discount_service.validate_discount(
        code,
        cart_total,
        current_user.id,
        for_subscription=bool(data.get("for_subscription")),
    )
    return jsonify(result.to_dict())


# ──────────────────────────────────────────────
# POST /api/orders
# ──────────────────────────────────────────────

@checkout_bp.route("/orders", methods=["POST"])
@login_required
@limiter.limit("20 per minute")
def create_order():
    """Body: {"content_ids": [...], "discount_code": "SAVE20"}."""
    data = request.get_json(silent=True) or {}
    try:
        cart = purchase_service.build_cart_snapshot(_content_ids_from(data))
    except ValueError as e:
        return jsonify({"error": "invalid_request", "message": str(e)}), 400

    order = purchase_service.create_order(
        current_user.id,
        cart,
        discount_code=data.get("discount_code"),
    )
    return jsonify(order.to_dict()), 201


# ──────────────────────────────────────────────
# POST /api/orders/<order_id>/capture
# ──────────────────────────────────────────────

@checkout_bp.route("/orders/<order_id>/capture", methods=["POST"])
@login_required
def capture_order(order_id):
    """Capture the order and return the completed purchase with its invoice."""
    purchase = purchase_service.get_purchase_by_order(order_id)
    if purchase is None or purchase.user_id != current_user.id:
        raise NotFound(f"Order {order_id} not found.")

    purchase = purchase_service.capture_order(order_id)

    invoice = None
    try:
        invoice = invoice_service.invoice_completed_purchase(purchase)
    except BillingError as e:
        # The purchase is complete either way; invoicing is retried by admins.
        logger.error(f"Invoice for purchase {purchase.id} not issued: {e.message}")

    return jsonify({
        "purchase": purchase.to_dict(),
        "invoice": invoice.to_dict(include_lines=False) if invoice else None,
    })


# ──────────────────────────────────────────────
# POST /api/subscriptions/checkout
# ──────────────────────────────────────────────

@checkout_bp.route("/subscriptions/checkout", methods=["POST"])
@login_required
@limiter.limit("10 per minute")
def subscription_checkout():
    """Body: {"plan_id": "..."}. Returns the hosted checkout URL."""
    data = request.get_json(silent=True) or {}
    plan_id = data.get("plan_id")
    plan = db.session.get(SubscriptionPlan, plan_id) if plan_id else None
    if plan is None:
        raise NotFound(f"Plan {plan_id} not found.")

    if entitlement_service.get_active_subscription(current_user.id) is not None:
        raise InvalidState("You already have an active subscription.")

    checkout_url = stripe_service.create_subscription_checkout(current_user, plan)
    return jsonify({"checkout_url": checkout_url}), 201


# ──────────────────────────────────────────────
# GET /api/access/<content_id>
# ──────────────────────────────────────────────

@checkout_bp.route("/access/<content_id>")
def access(content_id):
    """Anonymous callers get free and sample content only."""
    user_id = current_user.id if current_user.is_authenticated else None
    decision = entitlement_service.resolve_access(user_id, content_id)
    return jsonify(decision.to_dict())
