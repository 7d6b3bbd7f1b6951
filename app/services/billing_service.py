"""Billing service — profile store, tax rates and subscription sync helpers.

Responsible for:
- Reading and upserting BillingProfile rows (free text sanitized with bleach)
- Resolving the tax rate that applies to a billing profile
- Getting or creating BillingCustomer records (Stripe customer routing)
- Upserting subscriptions and recording settled subscription charges from
  Stripe webhook data
- Writing billing audit events

Functions flush but do NOT commit — the caller commits.
"""

import logging
from decimal import Decimal, InvalidOperation

import bleach
from flask import current_app

from app.extensions import db
from app.models.audit import AuditEvent
from app.models.billing import BillingCustomer, BillingProfile
from app.models.subscription import (
    Subscription,
    SubscriptionCharge,
    SubscriptionPlan,
)

logger = logging.getLogger(__name__)


# Stripe subscription status -> local status
STRIPE_STATUS_MAP = {
    "active": Subscription.ACTIVE,
    "trialing": Subscription.ACTIVE,
    "past_due": Subscription.PAST_DUE,
    "unpaid": Subscription.PAST_DUE,
    "canceled": Subscription.CANCELED,
    "incomplete_expired": Subscription.EXPIRED,
}


def _sanitize(text):
    """Strip all HTML tags from user input."""
    if text is None:
        return text
    return bleach.clean(str(text), tags=[], strip=True).strip()


def log_billing_audit(action, metadata=None, actor_user_id=None):
    """Log a billing-related audit event.

    Actor is None for system-initiated actions (webhooks, sweeps).
    """
    event = AuditEvent(
        actor_user_id=actor_user_id,
        action=action,
        metadata_=metadata or {},
    )
    db.session.add(event)
    db.session.flush()


# ──────────────────────────────────────────────
# Billing profile
# ──────────────────────────────────────────────

def get_billing_profile(user_id):
    """Return the user's BillingProfile or None."""
    return BillingProfile.query.filter_by(user_id=user_id).first()


def upsert_billing_profile(user_id, data):
    """Create or update the user's billing profile.

    Args:
        user_id: User UUID string.
        data: dict of BillingProfile.SNAPSHOT_FIELDS values. Unknown keys
              are ignored.

    Returns:
        The BillingProfile.

    Raises:
        ValueError: If legal_name is missing or country is not a 2-letter code.
    """
    cleaned = {}
    for field in BillingProfile.SNAPSHOT_FIELDS:
        if field in data:
            value = _sanitize(data[field])
            cleaned[field] = value or None

    profile = get_billing_profile(user_id)

    legal_name = cleaned.get(
        "legal_name", profile.legal_name if profile else None
    )
    if not legal_name:
        raise ValueError("Legal name is required.")

    country = cleaned.get("country")
    if country is not None:
        country = country.upper()
        if len(country) != 2 or not country.isalpha():
            raise ValueError("Country must be a 2-letter ISO code.")
        cleaned["country"] = country

    created = profile is None
    if created:
        profile = BillingProfile(user_id=user_id, legal_name=legal_name)
        db.session.add(profile)

    for field, value in cleaned.items():
        setattr(profile, field, value)
    db.session.flush()

    log_billing_audit(
        "billing_profile.created" if created else "billing_profile.updated",
        {"user_id": user_id, "fields": sorted(cleaned.keys())},
        actor_user_id=user_id,
    )
    return profile


# ──────────────────────────────────────────────
# Tax
# ──────────────────────────────────────────────

def get_tax_rate_for(billing_profile, app_config=None):
    """Tax percentage for a billing profile as a Decimal, e.g. Decimal("21").

    Country rules from TAX_RATES_BY_COUNTRY win; otherwise DEFAULT_TAX_RATE.
    A missing profile gets the default rate.
    """
    app_config = app_config or current_app.config
    rates = app_config.get("TAX_RATES_BY_COUNTRY") or {}
    raw = app_config.get("DEFAULT_TAX_RATE", "0")

    country = billing_profile.country if billing_profile is not None else None
    if country and country.upper() in rates:
        raw = rates[country.upper()]

    try:
        rate = Decimal(str(raw))
    except InvalidOperation:
        raise ValueError(f"Invalid tax rate configured: {raw!r}")
    if rate < 0 or rate > 100:
        raise ValueError(f"Tax rate out of range: {rate}")
    return rate


# ──────────────────────────────────────────────
# Stripe customer / subscription sync
# ──────────────────────────────────────────────

def get_or_create_billing_customer(user_id, stripe_customer_id):
    """Get existing BillingCustomer or create one.

    Returns the BillingCustomer instance (flushed).
    """
    customer = BillingCustomer.query.filter_by(user_id=user_id).first()

    if customer:
        if customer.stripe_customer_id != stripe_customer_id:
            logger.warning(
                f"Stripe customer for user {user_id} changed "
                f"{customer.stripe_customer_id} -> {stripe_customer_id}"
            )
            customer.stripe_customer_id = stripe_customer_id
            db.session.flush()
        return customer

    customer = BillingCustomer(
        user_id=user_id,
        stripe_customer_id=stripe_customer_id,
    )
    db.session.add(customer)
    db.session.flush()
    return customer


def get_user_id_from_stripe_customer(stripe_customer_id):
    """Look up user_id from a Stripe customer ID.

    Returns user_id string or None.
    """
    customer = BillingCustomer.query.filter_by(
        stripe_customer_id=stripe_customer_id
    ).first()
    if customer:
        return customer.user_id
    return None


def get_plan_from_price_id(price_id):
    """Map a Stripe price ID to a SubscriptionPlan, or None."""
    if not price_id:
        return None
    return SubscriptionPlan.query.filter_by(stripe_price_id=price_id).first()


def map_stripe_status(stripe_status):
    """Map a Stripe subscription status to the local status.

    Unknown statuses (incomplete, paused, ...) map to PAST_DUE so they
    never grant access.
    """
    return STRIPE_STATUS_MAP.get(stripe_status, Subscription.PAST_DUE)


def upsert_subscription(user_id, stripe_subscription_id, stripe_status,
                        plan, current_period_start, current_period_end,
                        canceled_at=None):
    """Create or update a Subscription from Stripe data.

    This is the core sync function called by webhook handlers.
    Returns the Subscription instance.
    """
    status = map_stripe_status(stripe_status)

    sub = Subscription.query.filter_by(
        stripe_subscription_id=stripe_subscription_id
    ).first()

    if sub:
        sub.status = status
        if plan is not None:
            sub.plan_id = plan.id
        if current_period_start:
            sub.current_period_start = current_period_start
        if current_period_end:
            sub.current_period_end = current_period_end
        if canceled_at:
            sub.canceled_at = canceled_at
    else:
        if plan is None:
            raise ValueError(
                f"Unknown plan for new subscription {stripe_subscription_id}"
            )
        sub = Subscription(
            user_id=user_id,
            plan_id=plan.id,
            stripe_subscription_id=stripe_subscription_id,
            status=status,
            current_period_start=current_period_start,
            current_period_end=current_period_end,
            canceled_at=canceled_at,
        )
        db.session.add(sub)

    db.session.flush()
    return sub


def record_subscription_charge(subscription, external_charge_id, amount_cents,
                               currency, period_start=None, period_end=None):
    """Record a settled subscription charge.

    Idempotent on external_charge_id: a redelivered charge returns the
    existing row and created=False.

    Returns (SubscriptionCharge, created: bool).
    """
    existing = SubscriptionCharge.query.filter_by(
        external_charge_id=external_charge_id
    ).first()
    if existing:
        return existing, False

    if amount_cents is None or amount_cents < 0:
        raise ValueError(f"Invalid charge amount: {amount_cents}")

    charge = SubscriptionCharge(
        subscription_id=subscription.id,
        external_charge_id=external_charge_id,
        amount_cents=amount_cents,
        currency=currency.upper(),
        period_start=period_start,
        period_end=period_end,
    )
    db.session.add(charge)
    db.session.flush()

    log_billing_audit("subscription.charge_recorded", {
        "subscription_id": subscription.id,
        "external_charge_id": external_charge_id,
        "amount_cents": amount_cents,
    })
    return charge, True
