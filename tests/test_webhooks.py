"""Tests for the webhooks blueprint and Stripe event handling.

Covers:
- Webhook signature verification (missing, invalid)
- Idempotent event processing (duplicate events skipped)
- payment_intent.succeeded completes and invoices a PENDING purchase
- payment_intent.payment_failed / canceled fail a PENDING purchase
- checkout.session.completed links the user to the Stripe customer
- customer.subscription.created / updated / deleted sync the subscription
- Subscription metadata links a not-yet-known customer
- invoice.payment_succeeded records the charge and issues an invoice
- Business-rule outcomes are recorded; unexpected errors ask for a retry
- Unknown event types (accepted but not processed)
"""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from app.extensions import db
from app.models.audit import AuditEvent
from app.models.billing import BillingCustomer
from app.models.invoice import Invoice
from app.models.purchase import Purchase
from app.models.stripe_event import StripeEvent
from app.models.subscription import Subscription, SubscriptionCharge
from app.services import entitlement_service, purchase_service


def _post_webhook(client):
    return client.post(
        "/stripe/webhooks",
        data="{}",
        content_type="application/json",
        headers={"Stripe-Signature": "valid_sig"},
    )


def _ts(dt):
    return int(dt.timestamp())


def _pending_order(gateway, seed_data, code=None):
    cart = purchase_service.build_cart_snapshot([seed_data["book_id"]])
    return purchase_service.create_order(
        seed_data["buyer_id"], cart, discount_code=code, gateway=gateway
    )


class TestWebhookSignature:
    """Tests for webhook signature validation."""

    def test_missing_signature_returns_400(self, client, seed_data):
        """POST /stripe/webhooks without signature -> 400."""
        resp = client.post(
            "/stripe/webhooks",
            data="{}",
            content_type="application/json",
        )
        assert resp.status_code == 400
        assert b"Missing signature" in resp.data

    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_invalid_signature_returns_400(self, mock_construct, client, seed_data):
        """POST /stripe/webhooks with bad signature -> 400."""
        mock_construct.side_effect = Exception("Invalid signature")

        resp = client.post(
            "/stripe/webhooks",
            data="{}",
            content_type="application/json",
            headers={"Stripe-Signature": "bad_sig"},
        )
        assert resp.status_code == 400
        assert b"Invalid signature" in resp.data


class TestWebhookIdempotency:
    """Tests for duplicate event handling."""

    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_duplicate_event_returns_200(self, mock_construct, client, seed_data):
        """Duplicate event_id -> 200 with 'already_processed'."""
        db.session.add(StripeEvent(
            stripe_event_id="evt_duplicate_123",
            event_type="payment_intent.succeeded",
        ))
        db.session.commit()

        mock_construct.return_value = {
            "id": "evt_duplicate_123",
            "type": "payment_intent.succeeded",
            "data": {"object": {}},
        }

        resp = _post_webhook(client)
        assert resp.status_code == 200
        data = json.loads(resp.data)
        assert data["status"] == "already_processed"


class TestPaymentIntentSucceeded:
    """Tests for payment_intent.succeeded."""

    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_completes_pending_purchase(self, mock_construct, client, seed_data, gateway):
        """Capture never reported back -> webhook completes, redeems and invoices."""
        order = _pending_order(gateway, seed_data, code="SAVE20")

        mock_construct.return_value = {
            "id": "evt_pi_001",
            "type": "payment_intent.succeeded",
            "data": {
                "object": {
                    "id": order.external_order_id,
                    "amount_received": 800,
                    "currency": "eur",
                    "latest_charge": "ch_async_001",
                    "receipt_email": "buyer@example.com",
                }
            },
        }

        resp = _post_webhook(client)
        assert resp.status_code == 200

        purchase = purchase_service.get_purchase_by_order(order.external_order_id)
        assert purchase.status == Purchase.COMPLETED
        assert purchase.external_capture_id == "ch_async_001"
        assert purchase.redemption is not None
        assert Invoice.query.filter_by(purchase_id=purchase.id).count() == 1
        assert entitlement_service.has_access(seed_data["buyer_id"], seed_data["book_id"])

        evt = StripeEvent.query.filter_by(stripe_event_id="evt_pi_001").first()
        assert evt is not None

    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_already_completed_is_noop(self, mock_construct, client, seed_data, gateway):
        order = _pending_order(gateway, seed_data)
        purchase_service.capture_order(order.external_order_id, gateway=gateway)

        mock_construct.return_value = {
            "id": "evt_pi_002",
            "type": "payment_intent.succeeded",
            "data": {
                "object": {
                    "id": order.external_order_id,
                    "amount_received": 1000,
                    "currency": "eur",
                }
            },
        }

        resp = _post_webhook(client)
        assert resp.status_code == 200
        assert Purchase.query.filter_by(status=Purchase.COMPLETED).count() == 1
        assert Invoice.query.count() == 1

    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_capture_after_failure_recorded(self, mock_construct, client, seed_data, gateway):
        """Processor says captured but we already failed it -> audited, not retried."""
        order = _pending_order(gateway, seed_data)
        purchase_service.fail_purchase(order.external_order_id, "expired")

        mock_construct.return_value = {
            "id": "evt_pi_003",
            "type": "payment_intent.succeeded",
            "data": {
                "object": {
                    "id": order.external_order_id,
                    "amount_received": 1000,
                    "currency": "eur",
                }
            },
        }

        resp = _post_webhook(client)
        assert resp.status_code == 200

        assert purchase_service.get_purchase_by_order(
            order.external_order_id
        ).status == Purchase.FAILED
        assert AuditEvent.query.filter_by(
            action="purchase.capture_after_terminal"
        ).count() == 1
        assert StripeEvent.query.filter_by(stripe_event_id="evt_pi_003").count() == 1

    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_unknown_order_ignored(self, mock_construct, client, seed_data):
        mock_construct.return_value = {
            "id": "evt_pi_004",
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_not_ours", "amount_received": 100}},
        }

        resp = _post_webhook(client)
        assert resp.status_code == 200
        assert Purchase.query.count() == 0


class TestPaymentIntentFailed:
    """Tests for payment_intent.payment_failed / canceled."""

    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_fails_pending_purchase(self, mock_construct, client, seed_data, gateway):
        order = _pending_order(gateway, seed_data)

        mock_construct.return_value = {
            "id": "evt_fail_001",
            "type": "payment_intent.payment_failed",
            "data": {
                "object": {
                    "id": order.external_order_id,
                    "last_payment_error": {"message": "Your card has insufficient funds."},
                }
            },
        }

        resp = _post_webhook(client)
        assert resp.status_code == 200

        purchase = purchase_service.get_purchase_by_order(order.external_order_id)
        assert purchase.status == Purchase.FAILED
        assert purchase.failure_reason == "payment_failed: Your card has insufficient funds."

    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_unknown_order_accepted(self, mock_construct, client, seed_data):
        mock_construct.return_value = {
            "id": "evt_fail_002",
            "type": "payment_intent.canceled",
            "data": {"object": {"id": "pi_not_ours"}},
        }

        resp = _post_webhook(client)
        assert resp.status_code == 200
        assert StripeEvent.query.filter_by(stripe_event_id="evt_fail_002").count() == 1


class TestSubscriptionEvents:
    """Tests for customer.subscription.* events."""

    def _link_customer(self, seed_data, stripe_customer_id="cus_buyer"):
        db.session.add(BillingCustomer(
            user_id=seed_data["buyer_id"],
            stripe_customer_id=stripe_customer_id,
        ))
        db.session.commit()

    def _sub_payload(self, status="active", sub_id="sub_001"):
        now = datetime.now(timezone.utc)
        return {
            "id": sub_id,
            "customer": "cus_buyer",
            "status": status,
            "current_period_start": _ts(now - timedelta(days=1)),
            "current_period_end": _ts(now + timedelta(days=29)),
            "items": {
                "data": [{"price": {"id": "price_monthly_test"}}]
            },
        }

    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_created_grants_catalog(self, mock_construct, client, seed_data):
        self._link_customer(seed_data)
        mock_construct.return_value = {
            "id": "evt_sub_001",
            "type": "customer.subscription.created",
            "data": {"object": self._sub_payload()},
        }

        resp = _post_webhook(client)
        assert resp.status_code == 200

        sub = Subscription.query.filter_by(stripe_subscription_id="sub_001").one()
        assert sub.status == Subscription.ACTIVE
        assert sub.user_id == seed_data["buyer_id"]
        assert sub.plan_id == seed_data["plan_id"]
        assert entitlement_service.has_access(seed_data["buyer_id"], seed_data["second_book_id"])

        audit = AuditEvent.query.filter_by(action="subscription.created").first()
        assert audit is not None

    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_updated_to_past_due_revokes(self, mock_construct, client, seed_data,
                                         make_subscription):
        self._link_customer(seed_data)
        make_subscription(seed_data["buyer_id"], seed_data["plan_id"],
                          stripe_subscription_id="sub_001")

        mock_construct.return_value = {
            "id": "evt_sub_002",
            "type": "customer.subscription.updated",
            "data": {"object": self._sub_payload(status="past_due")},
        }

        resp = _post_webhook(client)
        assert resp.status_code == 200

        sub = Subscription.query.filter_by(stripe_subscription_id="sub_001").one()
        assert sub.status == Subscription.PAST_DUE
        assert not entitlement_service.has_access(seed_data["buyer_id"], seed_data["book_id"])

    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_deleted_marks_canceled(self, mock_construct, client, seed_data,
                                    make_subscription):
        self._link_customer(seed_data)
        make_subscription(seed_data["buyer_id"], seed_data["plan_id"],
                          stripe_subscription_id="sub_001")

        mock_construct.return_value = {
            "id": "evt_sub_003",
            "type": "customer.subscription.deleted",
            "data": {"object": {"id": "sub_001", "customer": "cus_buyer"}},
        }

        resp = _post_webhook(client)
        assert resp.status_code == 200

        sub = Subscription.query.filter_by(stripe_subscription_id="sub_001").one()
        assert sub.status == Subscription.CANCELED

    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_unknown_customer_skipped(self, mock_construct, client, seed_data):
        mock_construct.return_value = {
            "id": "evt_sub_004",
            "type": "customer.subscription.created",
            "data": {"object": self._sub_payload()},
        }

        resp = _post_webhook(client)
        assert resp.status_code == 200
        assert Subscription.query.count() == 0

    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_created_links_customer_from_metadata(self, mock_construct, client,
                                                  seed_data):
        """No BillingCustomer yet: the subscription metadata names the user."""
        payload = self._sub_payload()
        payload["metadata"] = {"user_id": seed_data["buyer_id"]}
        mock_construct.return_value = {
            "id": "evt_sub_005",
            "type": "customer.subscription.created",
            "data": {"object": payload},
        }

        resp = _post_webhook(client)
        assert resp.status_code == 200

        customer = BillingCustomer.query.filter_by(user_id=seed_data["buyer_id"]).one()
        assert customer.stripe_customer_id == "cus_buyer"
        sub = Subscription.query.filter_by(stripe_subscription_id="sub_001").one()
        assert sub.user_id == seed_data["buyer_id"]
        assert entitlement_service.has_access(seed_data["buyer_id"], seed_data["book_id"])

    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_metadata_with_unknown_user_skipped(self, mock_construct, client, seed_data):
        payload = self._sub_payload()
        payload["metadata"] = {"user_id": "no-such-user"}
        mock_construct.return_value = {
            "id": "evt_sub_006",
            "type": "customer.subscription.created",
            "data": {"object": payload},
        }

        resp = _post_webhook(client)
        assert resp.status_code == 200
        assert BillingCustomer.query.count() == 0
        assert Subscription.query.count() == 0


class TestCheckoutSessionCompleted:
    """Tests for checkout.session.completed (plan subscriptions)."""

    def _session_event(self, seed_data, event_id="evt_cs_001", mode="subscription",
                       user_id=None):
        return {
            "id": event_id,
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_test_001",
                    "mode": mode,
                    "customer": "cus_new",
                    "subscription": "sub_new",
                    "client_reference_id": user_id or seed_data["buyer_id"],
                    "metadata": {"user_id": user_id or seed_data["buyer_id"]},
                }
            },
        }

    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_links_customer_then_subscription_syncs(self, mock_construct, client,
                                                    seed_data):
        mock_construct.return_value = self._session_event(seed_data)
        resp = _post_webhook(client)
        assert resp.status_code == 200

        customer = BillingCustomer.query.filter_by(user_id=seed_data["buyer_id"]).one()
        assert customer.stripe_customer_id == "cus_new"
        assert AuditEvent.query.filter_by(action="billing_customer.linked").count() == 1

        # The subscription event carries no metadata; the customer link routes it.
        now = datetime.now(timezone.utc)
        mock_construct.return_value = {
            "id": "evt_cs_002",
            "type": "customer.subscription.created",
            "data": {
                "object": {
                    "id": "sub_new",
                    "customer": "cus_new",
                    "status": "active",
                    "current_period_start": _ts(now - timedelta(days=1)),
                    "current_period_end": _ts(now + timedelta(days=29)),
                    "items": {"data": [{"price": {"id": "price_monthly_test"}}]},
                }
            },
        }
        resp = _post_webhook(client)
        assert resp.status_code == 200

        sub = Subscription.query.filter_by(stripe_subscription_id="sub_new").one()
        assert sub.user_id == seed_data["buyer_id"]
        assert sub.status == Subscription.ACTIVE

    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_payment_mode_session_ignored(self, mock_construct, client, seed_data):
        mock_construct.return_value = self._session_event(seed_data, mode="payment")

        resp = _post_webhook(client)
        assert resp.status_code == 200
        assert BillingCustomer.query.count() == 0

    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_unknown_user_ignored(self, mock_construct, client, seed_data):
        mock_construct.return_value = self._session_event(seed_data, user_id="ghost")

        resp = _post_webhook(client)
        assert resp.status_code == 200
        assert BillingCustomer.query.count() == 0
        assert StripeEvent.query.filter_by(stripe_event_id="evt_cs_001").count() == 1


class TestInvoicePaymentSucceeded:
    """Tests for invoice.payment_succeeded."""

    def _invoice_event(self, event_id="evt_inv_001", stripe_invoice_id="in_001",
                       sub_id="sub_001"):
        now = datetime.now(timezone.utc)
        return {
            "id": event_id,
            "type": "invoice.payment_succeeded",
            "data": {
                "object": {
                    "id": stripe_invoice_id,
                    "subscription": sub_id,
                    "amount_paid": 999,
                    "currency": "eur",
                    "lines": {
                        "data": [{
                            "period": {
                                "start": _ts(now - timedelta(days=1)),
                                "end": _ts(now + timedelta(days=29)),
                            }
                        }]
                    },
                }
            },
        }

    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_records_charge_and_issues_invoice(self, mock_construct, client, seed_data,
                                               make_subscription):
        make_subscription(seed_data["buyer_id"], seed_data["plan_id"],
                          stripe_subscription_id="sub_001")
        mock_construct.return_value = self._invoice_event()

        resp = _post_webhook(client)
        assert resp.status_code == 200

        charge = SubscriptionCharge.query.filter_by(external_charge_id="in_001").one()
        assert charge.amount_cents == 999
        assert charge.currency == "EUR"

        invoice = Invoice.query.filter_by(subscription_charge_id=charge.id).one()
        assert invoice.invoice_type == Invoice.SUBSCRIPTION
        assert invoice.user_id == seed_data["buyer_id"]
        assert invoice.invoice_number == 1

    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_redelivery_with_new_event_id_issues_nothing(self, mock_construct, client,
                                                         seed_data, make_subscription):
        make_subscription(seed_data["buyer_id"], seed_data["plan_id"],
                          stripe_subscription_id="sub_001")

        mock_construct.return_value = self._invoice_event(event_id="evt_inv_001")
        assert _post_webhook(client).status_code == 200
        mock_construct.return_value = self._invoice_event(event_id="evt_inv_002")
        assert _post_webhook(client).status_code == 200

        assert SubscriptionCharge.query.count() == 1
        assert Invoice.query.count() == 1

    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_reactivates_past_due(self, mock_construct, client, seed_data,
                                  make_subscription):
        make_subscription(seed_data["buyer_id"], seed_data["plan_id"],
                          status=Subscription.PAST_DUE,
                          stripe_subscription_id="sub_001")
        mock_construct.return_value = self._invoice_event()

        resp = _post_webhook(client)
        assert resp.status_code == 200

        sub = Subscription.query.filter_by(stripe_subscription_id="sub_001").one()
        assert sub.status == Subscription.ACTIVE

    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_unknown_subscription_asks_for_retry(self, mock_construct, client, seed_data):
        """Subscription not synced yet -> 500 so Stripe redelivers; event not recorded."""
        mock_construct.return_value = self._invoice_event(sub_id="sub_unknown")

        resp = _post_webhook(client)
        assert resp.status_code == 500
        assert StripeEvent.query.filter_by(stripe_event_id="evt_inv_001").count() == 0


class TestUnknownEvent:
    """Tests for unhandled event types."""

    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_unknown_event_accepted(self, mock_construct, client, seed_data):
        """Unknown event type -> 200, recorded but no handler called."""
        mock_construct.return_value = {
            "id": "evt_unknown_001",
            "type": "some.unknown.event",
            "data": {"object": {}},
        }

        resp = _post_webhook(client)
        assert resp.status_code == 200

        evt = StripeEvent.query.filter_by(stripe_event_id="evt_unknown_001").first()
        assert evt is not None
        assert evt.event_type == "some.unknown.event"
