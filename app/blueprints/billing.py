"""Billing blueprint — /api/billing/*, /api/invoices/*

Billing profile and the current user's invoices.

Routes:
- GET /api/billing/profile          — current billing profile (or null)
- PUT /api/billing/profile          — create / update billing profile
- GET /api/invoices                 — the user's invoices, newest first
- GET /api/invoices/<invoice_id>    — one invoice with its lines
"""

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from app.extensions import db
from app.services import billing_service, invoice_service

billing_bp = Blueprint("billing", __name__, url_prefix="/api")


@billing_bp.route("/billing/profile", methods=["GET"])
@login_required
def get_profile():
    profile = billing_service.get_billing_profile(current_user.id)
    return jsonify({"profile": profile.to_dict() if profile else None})


@billing_bp.route("/billing/profile", methods=["PUT"])
@login_required
def update_profile():
    """Changes apply to future invoices only; issued invoices keep their snapshot."""
    data = request.get_json(silent=True) or {}
    try:
        profile = billing_service.upsert_billing_profile(current_user.id, data)
    except ValueError as e:
        db.session.rollback()
        return jsonify({"error": "invalid_request", "message": str(e)}), 400
    db.session.commit()
    return jsonify({"profile": profile.to_dict()})


@billing_bp.route("/invoices")
@login_required
def list_invoices():
    invoices = invoice_service.list_user_invoices(current_user.id)
    return jsonify({
        "invoices": [invoice.to_dict(include_lines=False) for invoice in invoices],
    })


@billing_bp.route("/invoices/<invoice_id>")
@login_required
def get_invoice(invoice_id):
    invoice = invoice_service.get_invoice(invoice_id, user_id=current_user.id)
    return jsonify({"invoice": invoice.to_dict()})
