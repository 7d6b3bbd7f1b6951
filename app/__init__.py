import os
import logging

import click
from flask import Flask, jsonify
from werkzeug.security import generate_password_hash

from app.config import config_by_name
from app.errors import BillingError, InvariantViolation
from app.extensions import db, migrate, login_manager, csrf, limiter


def create_app(config_name=None):
    """Application factory."""

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    csrf.init_app(app)
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from app import models  # noqa: F401

    # --- Register blueprints ---
    from app.blueprints.auth import auth_bp
    from app.blueprints.checkout import checkout_bp
    from app.blueprints.billing import billing_bp
    from app.blueprints.admin import admin_bp
    from app.blueprints.webhooks import webhooks_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(checkout_bp)
    app.register_blueprint(billing_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(webhooks_bp)

    # Exempt webhooks from CSRF: raw body needed for Stripe signature verification
    csrf.exempt(webhooks_bp)

    # --- Error handlers ---
    @app.errorhandler(BillingError)
    def billing_error(e):
        if isinstance(e, InvariantViolation):
            app.logger.error(f"Invariant violation: {e.message}")
        db.session.rollback()
        return jsonify(e.to_dict()), e.http_status

    @app.errorhandler(403)
    def forbidden(e):
        return jsonify({"error": "forbidden", "message": "Forbidden."}), 403

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "not_found", "message": "Not found."}), 404

    @app.errorhandler(429)
    def rate_limited(e):
        return jsonify({"error": "rate_limited", "message": "Too many requests."}), 429

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "server_error", "message": "Internal server error."}), 500

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none';"
        )
        if not app.debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("seed-admin")
    @click.option("--email", default="admin@audivia.local", help="Admin email")
    @click.option("--password", default="admin123", help="Admin password")
    def seed_admin(email, password):
        """Create admin user + demo catalog + monthly plan + demo discount.

        Usage:
            flask seed-admin
            flask seed-admin --email admin@example.com --password s3cret
        """
        from app.models.catalog import Audiobook, Chapter
        from app.models.discount import DiscountCode, DiscountKind
        from app.models.subscription import SubscriptionPlan
        from app.models.user import User

        currency = app.config["DEFAULT_CURRENCY"]

        # --- 1. Admin user ---
        admin = User.query.filter_by(email=email).first()
        if admin:
            click.echo(f"Admin user already exists: {email}")
        else:
            admin = User(
                email=email,
                password_hash=generate_password_hash(password),
                full_name="Admin",
                is_admin=True,
            )
            db.session.add(admin)
            db.session.flush()
            click.echo(f"Created admin user: {email}")

        # --- 2. Demo catalog ---
        book = Audiobook(
            title="The Quiet Harbour",
            author="M. Alvarez",
            price_cents=1299,
            currency=currency,
        )
        free_book = Audiobook(
            title="Short Stories Sampler",
            author="Various",
            price_cents=0,
            currency=currency,
            is_free=True,
        )
        db.session.add_all([book, free_book])
        db.session.flush()
        db.session.add_all([
            Chapter(audiobook_id=book.id, title="Prologue", number=1, is_sample=True),
            Chapter(audiobook_id=book.id, title="Landfall", number=2),
            Chapter(audiobook_id=free_book.id, title="The Lamp", number=1),
        ])

        # --- 3. Plan ---
        plan = SubscriptionPlan.query.filter_by(name="Unlimited Monthly").first()
        if plan is None:
            plan = SubscriptionPlan(
                name="Unlimited Monthly",
                price_cents=999,
                currency=currency,
                interval_months=1,
                stripe_price_id=os.environ.get("STRIPE_MONTHLY_PRICE_ID"),
            )
            db.session.add(plan)

        # --- 4. Demo discount ---
        if DiscountCode.query.filter_by(code="WELCOME10").first() is None:
            db.session.add(DiscountCode(
                code="WELCOME10",
                description="10% off your first audiobook",
                kind=DiscountKind.PERCENTAGE,
                value=10,
                max_uses_per_user=1,
            ))

        db.session.commit()

        click.echo("")
        click.echo("=" * 60)
        click.echo("Seed data created successfully!")
        click.echo("=" * 60)
        click.echo(f"  Admin:     {email} / {password}")
        click.echo(f"  Book:      {book.title} (id: {book.id})")
        click.echo(f"  Free book: {free_book.title} (id: {free_book.id})")
        click.echo(f"  Plan:      {plan.name} (id: {plan.id})")
        click.echo("  Discount:  WELCOME10")
        click.echo("=" * 60)

    @app.cli.command("reclaim-purchases")
    @click.option("--max-age-hours", type=int, default=None,
                  help="Override PENDING_PURCHASE_TTL_HOURS.")
    def reclaim_purchases(max_age_hours):
        """Mark abandoned PENDING purchases as FAILED (reason "expired").

        Safe to run repeatedly; schedule it from cron.

        Usage:
            flask reclaim-purchases
            flask reclaim-purchases --max-age-hours 48
        """
        from app.services.purchase_service import reclaim_stale_purchases

        count = reclaim_stale_purchases(max_age_hours=max_age_hours)
        click.echo(f"Reclaimed {count} stale pending purchase(s).")
