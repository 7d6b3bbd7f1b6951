"""Admin blueprint — /admin/api/*

Discount code management, refunds and invoice operations.
All routes protected by @admin_required decorator.

Route Map:
  GET    /admin/api/discount-codes                   — List codes
  POST   /admin/api/discount-codes                   — Create code
  GET    /admin/api/discount-codes/<id>              — Code detail
  PATCH  /admin/api/discount-codes/<id>              — Update code
  POST   /admin/api/discount-codes/<id>/deactivate   — Deactivate code
  DELETE /admin/api/discount-codes/<id>              — Delete unused code
  GET    /admin/api/purchases                        — Purchases (filter by status)
  POST   /admin/api/purchases/<id>/refund            — COMPLETED -> REFUNDED
  POST   /admin/api/purchases/<id>/invoice           — Issue invoice manually
  POST   /admin/api/invoices/<id>/status             — Advance invoice status
"""

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user

from app.decorators import admin_required
from app.extensions import db
from app.models.purchase import Purchase
from app.services import discount_service, invoice_service, purchase_service

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__, url_prefix="/admin/api")


def _bad_request(e):
    db.session.rollback()
    return jsonify({"error": "invalid_request", "message": str(e)}), 400


# ══════════════════════════════════════════════
#  DISCOUNT CODES
# ══════════════════════════════════════════════

@admin_bp.route("/discount-codes", methods=["GET"])
@admin_required
def list_discount_codes():
    include_inactive = request.args.get("include_inactive", "1") != "0"
    codes = discount_service.list_discount_codes(include_inactive=include_inactive)
    return jsonify({"discount_codes": [code.to_dict() for code in codes]})


@admin_bp.route("/discount-codes", methods=["POST"])
@admin_required
def create_discount_code():
    data = request.get_json(silent=True) or {}
    try:
        discount = discount_service.create_discount_code(data, current_user.id)
    except ValueError as e:
        return _bad_request(e)
    db.session.commit()
    logger.info(f"Discount {discount.code} created by {current_user.id}")
    return jsonify({"discount_code": discount.to_dict()}), 201


@admin_bp.route("/discount-codes/<discount_code_id>", methods=["GET"])
@admin_required
def get_discount_code(discount_code_id):
    discount = discount_service.get_discount_code(discount_code_id)
    return jsonify({"discount_code": discount.to_dict()})


@admin_bp.route("/discount-codes/<discount_code_id>", methods=["PATCH"])
@admin_required
def update_discount_code(discount_code_id):
    data = request.get_json(silent=True) or {}
    try:
        discount = discount_service.update_discount_code(
            discount_code_id, data, current_user.id
        )
    except ValueError as e:
        return _bad_request(e)
    db.session.commit()
    return jsonify({"discount_code": discount.to_dict()})


@admin_bp.route("/discount-codes/<discount_code_id>/deactivate", methods=["POST"])
@admin_required
def deactivate_discount_code(discount_code_id):
    discount = discount_service.deactivate_discount_code(
        discount_code_id, current_user.id
    )
    db.session.commit()
    return jsonify({"discount_code": discount.to_dict()})


@admin_bp.route("/discount-codes/<discount_code_id>", methods=["DELETE"])
@admin_required
def delete_discount_code(discount_code_id):
    try:
        discount_service.delete_discount_code(discount_code_id, current_user.id)
    except ValueError as e:
        return _bad_request(e)
    db.session.commit()
    return jsonify({"success": True})


# ══════════════════════════════════════════════
#  PURCHASES
# ══════════════════════════════════════════════

@admin_bp.route("/purchases", methods=["GET"])
@admin_required
def list_purchases():
    status = request.args.get("status")
    query = Purchase.query
    if status in Purchase.STATUSES:
        query = query.filter_by(status=status)
    purchases = query.order_by(Purchase.created_at.desc()).limit(200).all()
    return jsonify({"purchases": [p.to_dict() for p in purchases]})


@admin_bp.route("/purchases/<purchase_id>/refund", methods=["POST"])
@admin_required
def refund_purchase(purchase_id):
    data = request.get_json(silent=True) or {}
    purchase = purchase_service.refund_purchase(
        purchase_id, current_user.id, reason=data.get("reason")
    )
    return jsonify({"purchase": purchase.to_dict()})


@admin_bp.route("/purchases/<purchase_id>/invoice", methods=["POST"])
@admin_required
def issue_invoice(purchase_id):
    """Issue the invoice for a completed purchase that has none yet.

    Optional body: {"tax_rate": "21"} to override the profile's rate.
    """
    data = request.get_json(silent=True) or {}
    purchase = purchase_service.get_purchase(purchase_id)
    try:
        invoice = invoice_service.issue_for_purchase(
            purchase,
            tax_rate=data.get("tax_rate"),
            actor_user_id=current_user.id,
        )
    except ValueError as e:
        return _bad_request(e)
    return jsonify({"invoice": invoice.to_dict()}), 201


# ══════════════════════════════════════════════
#  INVOICES
# ══════════════════════════════════════════════

@admin_bp.route("/invoices/<invoice_id>/status", methods=["POST"])
@admin_required
def change_invoice_status(invoice_id):
    data = request.get_json(silent=True) or {}
    invoice = invoice_service.get_invoice(invoice_id)
    try:
        invoice_service.advance_invoice_status(
            invoice, (data.get("status") or "").upper(), actor_user_id=current_user.id
        )
    except ValueError as e:
        return _bad_request(e)
    db.session.commit()
    return jsonify({"invoice": invoice.to_dict(include_lines=False)})
