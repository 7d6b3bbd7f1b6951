"""Stripe service — all Stripe API calls and webhook handling.

Responsible for:
- The payment gateway used by checkout: PaymentIntents created with manual
  capture (create_order) and captured on confirmation (capture_order)
- Mapping Stripe errors onto PaymentDeclined / ProcessorError
- Checkout Sessions for plan subscriptions, linking the user to a Stripe
  Customer (BillingCustomer) so subscription events can be routed back
- Handling incoming webhooks with signature verification
- Dispatching to event-specific handlers
- Idempotency via stripe_events table
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import stripe
from flask import current_app

from app.errors import (
    BillingError,
    InvalidState,
    NotFound,
    PaymentDeclined,
    ProcessorError,
)
from app.extensions import db
from app.models.billing import BillingCustomer
from app.models.stripe_event import StripeEvent
from app.models.subscription import Subscription
from app.models.user import User
from app.services import billing_service, invoice_service, purchase_service

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentOrder:
    order_id: str
    client_secret: Optional[str] = None


@dataclass(frozen=True)
class CaptureResult:
    capture_id: Optional[str]
    payer_email: Optional[str]
    amount_captured_cents: int
    currency: str


def _to_datetime(ts):
    if ts:
        return datetime.fromtimestamp(ts, tz=timezone.utc)
    return None


def _extract_period(sub_data):
    """Extract (current_period_start, current_period_end) from a Stripe subscription.

    In newer Stripe API versions the period has moved from the subscription
    top level to items.data[0]. This helper checks both locations.

    Returns timezone-aware datetimes or None.
    """
    start = sub_data.get("current_period_start")
    end = sub_data.get("current_period_end")

    if not start or not end:
        items = sub_data.get("items")
        if items and items.get("data") and len(items["data"]) > 0:
            first = items["data"][0]
            start = start or first.get("current_period_start")
            end = end or first.get("current_period_end")

    return _to_datetime(start), _to_datetime(end)


def _extract_price_id(sub_data):
    items = sub_data.get("items")
    if items and items.get("data"):
        return (items["data"][0].get("price") or {}).get("id")
    return None


def capture_result_from_intent(intent):
    """Build a CaptureResult from a succeeded PaymentIntent payload."""
    return CaptureResult(
        capture_id=intent.get("latest_charge") or intent.get("id"),
        payer_email=intent.get("receipt_email"),
        amount_captured_cents=intent.get("amount_received") or 0,
        currency=(intent.get("currency") or "").upper(),
    )


# ──────────────────────────────────────────────
# Payment gateway
# ──────────────────────────────────────────────

class StripeGateway:
    """Payment collaborator backed by Stripe PaymentIntents.

    create_order() authorizes nothing by itself; the client confirms the
    intent with the returned client_secret, then capture_order() captures
    the authorized amount.
    """

    def __init__(self, api_key):
        self.api_key = api_key

    def create_order(self, amount_cents, currency, metadata=None):
        stripe.api_key = self.api_key
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency.lower(),
                capture_method="manual",
                automatic_payment_methods={"enabled": True},
                metadata=metadata or {},
            )
        except stripe.CardError as e:
            raise PaymentDeclined(e.user_message or str(e))
        except stripe.StripeError as e:
            logger.error(f"Stripe order creation failed: {e}", exc_info=True)
            raise ProcessorError(f"Payment processor error: {e}")

        logger.info(f"Created PaymentIntent {intent['id']} for {amount_cents} {currency}")
        return PaymentOrder(
            order_id=intent["id"],
            client_secret=intent.get("client_secret"),
        )

    def capture_order(self, order_id):
        stripe.api_key = self.api_key
        try:
            intent = stripe.PaymentIntent.capture(order_id)
        except stripe.CardError as e:
            raise PaymentDeclined(e.user_message or str(e))
        except stripe.InvalidRequestError as e:
            # Intent canceled or never confirmed by the customer: definitive.
            if getattr(e, "code", None) == "payment_intent_unexpected_state":
                raise PaymentDeclined(str(e))
            logger.error(f"Stripe capture failed for {order_id}: {e}", exc_info=True)
            raise ProcessorError(f"Payment processor error: {e}")
        except stripe.StripeError as e:
            logger.error(f"Stripe capture failed for {order_id}: {e}", exc_info=True)
            raise ProcessorError(f"Payment processor error: {e}")

        if intent.get("status") != "succeeded":
            raise ProcessorError(
                f"PaymentIntent {order_id} not settled (status={intent.get('status')})"
            )
        return capture_result_from_intent(intent)


def get_payment_gateway():
    """Gateway configured from the current app."""
    return StripeGateway(current_app.config["STRIPE_SECRET_KEY"])


# ──────────────────────────────────────────────
# Subscription checkout
# ──────────────────────────────────────────────

def create_subscription_checkout(user, plan):
    """Create a Stripe Checkout Session subscribing the user to a plan.

    Gets or creates the user's Stripe Customer first and stores the link
    as a BillingCustomer, so the customer.subscription.* events that follow
    resolve to this user. user_id also travels in the session and
    subscription metadata for events that arrive before the link exists.

    Returns the Checkout Session URL.

    Raises:
        InvalidState: The plan is not sold through Stripe.
        ProcessorError: Stripe API failure.
    """
    if not plan.is_active or not plan.stripe_price_id:
        raise InvalidState(f"Plan {plan.name} is not available for subscription.")

    stripe.api_key = current_app.config["STRIPE_SECRET_KEY"]
    app_base_url = current_app.config["APP_BASE_URL"]
    metadata = {"user_id": str(user.id), "plan_id": str(plan.id)}

    billing_customer = BillingCustomer.query.filter_by(user_id=user.id).first()
    try:
        if billing_customer:
            stripe_customer_id = billing_customer.stripe_customer_id
        else:
            customer_params = {"email": user.email, "metadata": {"user_id": str(user.id)}}
            if user.full_name:
                customer_params["name"] = user.full_name
            customer = stripe.Customer.create(**customer_params)
            stripe_customer_id = customer["id"]
            billing_service.get_or_create_billing_customer(user.id, stripe_customer_id)
            db.session.commit()
            logger.info(f"Created Stripe customer {stripe_customer_id} for user {user.id}")

        session = stripe.checkout.Session.create(
            mode="subscription",
            customer=stripe_customer_id,
            client_reference_id=str(user.id),
            line_items=[{"price": plan.stripe_price_id, "quantity": 1}],
            success_url=(
                f"{app_base_url}/account/subscription"
                f"?session_id={{CHECKOUT_SESSION_ID}}"
            ),
            cancel_url=f"{app_base_url}/account/subscription",
            metadata=metadata,
            subscription_data={"metadata": metadata},
        )
    except stripe.StripeError as e:
        logger.error(f"Stripe checkout failed for user {user.id}: {e}", exc_info=True)
        raise ProcessorError(f"Payment processor error: {e}")

    logger.info(f"Checkout session {session['id']} for user {user.id}, plan {plan.id}")
    return session["url"]


# ──────────────────────────────────────────────
# Webhook Handling
# ──────────────────────────────────────────────

def verify_webhook_signature(payload, sig_header):
    """Verify Stripe webhook signature and construct the event.

    Returns the verified Stripe event object.
    Raises stripe.SignatureVerificationError on invalid signature.
    """
    webhook_secret = current_app.config["STRIPE_WEBHOOK_SECRET"]
    return stripe.Webhook.construct_event(payload, sig_header, webhook_secret)


def handle_webhook_event(event):
    """Process a verified Stripe webhook event.

    Idempotency: checks stripe_events table before processing.
    If the event was already processed, returns immediately.

    Returns (success: bool, message: str).
    """
    event_id = event["id"]
    event_type = event["type"]

    # --- Idempotency check ---
    existing = StripeEvent.query.filter_by(
        stripe_event_id=event_id
    ).first()
    if existing:
        logger.info(f"Duplicate webhook event {event_id}, skipping")
        return True, "already_processed"

    # --- Route to handler ---
    handlers = {
        "checkout.session.completed": _handle_checkout_session_completed,
        "payment_intent.succeeded": _handle_payment_intent_succeeded,
        "payment_intent.payment_failed": _handle_payment_intent_failed,
        "payment_intent.canceled": _handle_payment_intent_failed,
        "customer.subscription.created": _handle_subscription_changed,
        "customer.subscription.updated": _handle_subscription_changed,
        "customer.subscription.deleted": _handle_subscription_changed,
        "invoice.payment_succeeded": _handle_invoice_payment_succeeded,
    }

    handler = handlers.get(event_type)
    if handler:
        try:
            handler(event)
        except BillingError as e:
            # Business-rule outcome (already invoiced, wrong state): the
            # event is settled, retrying would hit the same rule.
            db.session.rollback()
            logger.warning(f"{event_type} {event_id} not applied: {e.message}")
        except Exception as e:
            logger.error(f"Error handling {event_type}: {e}", exc_info=True)
            db.session.rollback()
            return False, str(e)

    # --- Record event for idempotency ---
    stripe_event = StripeEvent(
        stripe_event_id=event_id,
        event_type=event_type,
    )
    db.session.add(stripe_event)
    db.session.commit()

    return True, "processed"


# ──────────────────────────────────────────────
# Event Handlers
# ──────────────────────────────────────────────

def _link_customer(user_id, stripe_customer_id, source):
    """Store the user <-> Stripe customer link. Returns user_id, or None if
    the user does not exist."""
    if db.session.get(User, user_id) is None:
        logger.warning(f"{source}: unknown user {user_id} for customer {stripe_customer_id}")
        return None
    billing_service.get_or_create_billing_customer(user_id, stripe_customer_id)
    return user_id


def _handle_checkout_session_completed(event):
    """Handle checkout.session.completed for plan subscriptions.

    Links the Stripe customer to the user named in the session. The
    subscription itself is synced from customer.subscription.* events.
    """
    session = event["data"]["object"]
    if session.get("mode") != "subscription":
        return

    metadata = session.get("metadata") or {}
    user_id = metadata.get("user_id") or session.get("client_reference_id")
    stripe_customer_id = session.get("customer")
    if not user_id or not stripe_customer_id:
        logger.warning("checkout.session.completed missing user_id or customer")
        return

    if _link_customer(user_id, stripe_customer_id, event["type"]):
        billing_service.log_billing_audit("billing_customer.linked", {
            "user_id": user_id,
            "stripe_customer_id": stripe_customer_id,
            "checkout_session_id": session.get("id"),
        })


def _handle_payment_intent_succeeded(event):
    """Handle payment_intent.succeeded.

    Completes the matching PENDING purchase when the synchronous capture
    never reported back (timeout, client gone). No-op if already COMPLETED.
    """
    intent = event["data"]["object"]
    order_id = intent.get("id")

    if purchase_service.get_purchase_by_order(order_id) is None:
        logger.warning(f"payment_intent.succeeded: no purchase for order {order_id}")
        return

    purchase = purchase_service.complete_from_processor(
        order_id, capture_result_from_intent(intent)
    )
    invoice_service.invoice_completed_purchase(purchase)


def _handle_payment_intent_failed(event):
    """Handle payment_intent.payment_failed / payment_intent.canceled."""
    intent = event["data"]["object"]
    order_id = intent.get("id")

    reason = event["type"].split(".", 1)[1]
    last_error = intent.get("last_payment_error") or {}
    if last_error.get("message"):
        reason = f"{reason}: {last_error['message']}"

    try:
        purchase_service.fail_purchase(order_id, reason)
    except NotFound:
        logger.warning(f"{event['type']}: no purchase for order {order_id}")


def _handle_subscription_changed(event):
    """Handle customer.subscription.created / updated / deleted.

    Upserts the local Subscription from the Stripe object. Deletion maps
    to CANCELED through the status Stripe sends.
    """
    sub_data = event["data"]["object"]
    stripe_subscription_id = sub_data.get("id")
    stripe_customer_id = sub_data.get("customer")

    existing_sub = Subscription.query.filter_by(
        stripe_subscription_id=stripe_subscription_id
    ).first()

    if existing_sub:
        user_id = existing_sub.user_id
    else:
        user_id = billing_service.get_user_id_from_stripe_customer(stripe_customer_id)
        metadata_user_id = (sub_data.get("metadata") or {}).get("user_id")
        if not user_id and metadata_user_id and stripe_customer_id:
            # Subscription event arrived before checkout.session.completed.
            user_id = _link_customer(metadata_user_id, stripe_customer_id, event["type"])

    if not user_id:
        logger.warning(
            f"{event['type']}: cannot find user for sub={stripe_subscription_id}"
        )
        return

    price_id = _extract_price_id(sub_data)
    plan = billing_service.get_plan_from_price_id(price_id)
    if plan is None and existing_sub is None:
        logger.warning(
            f"{event['type']}: unknown price {price_id} for sub={stripe_subscription_id}"
        )
        return

    period_start, period_end = _extract_period(sub_data)
    status = sub_data.get("status", "active")
    if event["type"] == "customer.subscription.deleted":
        status = "canceled"

    sub = billing_service.upsert_subscription(
        user_id=user_id,
        stripe_subscription_id=stripe_subscription_id,
        stripe_status=status,
        plan=plan,
        current_period_start=period_start,
        current_period_end=period_end,
        canceled_at=_to_datetime(sub_data.get("canceled_at")),
    )

    billing_service.log_billing_audit(event["type"].replace("customer.", ""), {
        "subscription_id": sub.id,
        "stripe_subscription_id": stripe_subscription_id,
        "status": sub.status,
    })


def _handle_invoice_payment_succeeded(event):
    """Handle invoice.payment_succeeded for subscriptions.

    Records the settled charge and issues our own invoice for it. Stripe's
    invoice id is the charge's external id, so redelivery is a no-op.
    """
    stripe_invoice = event["data"]["object"]
    stripe_subscription_id = stripe_invoice.get("subscription")
    if not stripe_subscription_id:
        parent = stripe_invoice.get("parent") or {}
        details = parent.get("subscription_details") or {}
        stripe_subscription_id = details.get("subscription")

    if not stripe_subscription_id:
        logger.info(f"invoice.payment_succeeded {stripe_invoice.get('id')}: not a subscription")
        return

    sub = Subscription.query.filter_by(
        stripe_subscription_id=stripe_subscription_id
    ).first()
    if sub is None:
        raise ValueError(
            f"invoice.payment_succeeded: no local subscription {stripe_subscription_id}"
        )

    if sub.status == Subscription.PAST_DUE:
        sub.status = Subscription.ACTIVE
        db.session.flush()

    period_start = period_end = None
    lines = (stripe_invoice.get("lines") or {}).get("data") or []
    if lines:
        period = lines[0].get("period") or {}
        period_start = _to_datetime(period.get("start"))
        period_end = _to_datetime(period.get("end"))

    charge, created = billing_service.record_subscription_charge(
        subscription=sub,
        external_charge_id=stripe_invoice["id"],
        amount_cents=stripe_invoice.get("amount_paid"),
        currency=stripe_invoice.get("currency") or sub.plan.currency,
        period_start=period_start,
        period_end=period_end,
    )
    db.session.commit()

    if created or charge.invoice is None:
        invoice_service.issue_for_subscription_charge(charge)
