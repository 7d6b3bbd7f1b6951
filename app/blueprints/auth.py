"""Auth blueprint — /auth/*

JSON session login for the storefront and admin API.

Routes:
- POST /auth/login   — email + password, starts a Flask-Login session
- POST /auth/logout  — ends the session
- GET  /auth/me      — current user
"""

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required, login_user, logout_user
from werkzeug.security import check_password_hash

from app.extensions import db, limiter
from app.models.audit import AuditEvent
from app.models.user import User

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


# ──────────────────────────────────────────────
# POST /auth/login
# ──────────────────────────────────────────────

@auth_bp.route("/login", methods=["POST"])
@limiter.limit("10 per minute")
def login():
    """Email + password login."""
    data = request.get_json(silent=True) or request.form
    email = (data.get("email") or "").lower().strip()
    password = data.get("password") or ""

    if not email or not password:
        return jsonify({"error": "invalid_request", "message": "Email and password are required."}), 400

    user = User.query.filter_by(email=email).first()
    if user is None or not check_password_hash(user.password_hash, password):
        return jsonify({"error": "invalid_credentials", "message": "Invalid email or password."}), 401
    if not user.is_active:
        return jsonify({"error": "account_disabled", "message": "This account has been disabled."}), 403

    login_user(user, remember=bool(data.get("remember")))

    db.session.add(AuditEvent(
        actor_user_id=user.id,
        action="user.logged_in",
        metadata_={"email": email},
    ))
    db.session.commit()

    return jsonify({"user": user.to_dict()})


# ──────────────────────────────────────────────
# POST /auth/logout
# ──────────────────────────────────────────────

@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    logout_user()
    return jsonify({"success": True})


# ──────────────────────────────────────────────
# GET /auth/me
# ──────────────────────────────────────────────

@auth_bp.route("/me")
@login_required
def me():
    return jsonify({"user": current_user.to_dict()})
