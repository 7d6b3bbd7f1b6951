"""Tests for the entitlement service.

Covers:
- Free content and sample chapters for everyone (including anonymous)
- COMPLETED purchases grant their audiobook and its chapters only
- ACTIVE subscriptions inside their period grant the whole catalog
- Non-ACTIVE or out-of-period subscriptions grant nothing
- Reads only: resolving access writes nothing
"""

from datetime import datetime, timedelta, timezone

from app.models.audit import AuditEvent
from app.models.purchase import Purchase
from app.models.subscription import Subscription
from app.services import entitlement_service, purchase_service
from app.services.entitlement_service import (
    VIA_FREE,
    VIA_PURCHASE,
    VIA_SAMPLE,
    VIA_SUBSCRIPTION,
)


def _buy(gateway, user_id, content_id):
    cart = purchase_service.build_cart_snapshot([content_id])
    order = purchase_service.create_order(user_id, cart, gateway=gateway)
    return purchase_service.capture_order(order.external_order_id, gateway=gateway)


class TestOpenContent:
    """Free books and sample chapters."""

    def test_free_book_for_anonymous(self, seed_data):
        decision = entitlement_service.resolve_access(None, seed_data["free_book_id"])
        assert decision.granted is True
        assert decision.via == VIA_FREE

    def test_sample_chapter_for_anyone(self, seed_data):
        decision = entitlement_service.resolve_access(
            seed_data["buyer_id"], seed_data["sample_chapter_id"]
        )
        assert decision.granted is True
        assert decision.via == VIA_SAMPLE

    def test_regular_chapter_denied_for_anonymous(self, seed_data):
        assert not entitlement_service.has_access(None, seed_data["chapter_id"])

    def test_unknown_content_denied(self, seed_data):
        decision = entitlement_service.resolve_access(seed_data["buyer_id"], "missing")
        assert decision.to_dict() == {"granted": False, "via": None}


class TestPurchaseEntitlement:
    """COMPLETED purchases."""

    def test_access_after_completed_purchase(self, seed_data, gateway):
        """No purchase -> denied; after completion -> granted, nothing else changed."""
        user_id, book_id = seed_data["buyer_id"], seed_data["book_id"]
        assert entitlement_service.has_access(user_id, book_id) is False

        _buy(gateway, user_id, book_id)

        decision = entitlement_service.resolve_access(user_id, book_id)
        assert decision.granted is True
        assert decision.via == VIA_PURCHASE

    def test_purchase_covers_chapters(self, seed_data, gateway):
        _buy(gateway, seed_data["buyer_id"], seed_data["book_id"])
        assert entitlement_service.has_access(seed_data["buyer_id"], seed_data["chapter_id"])

    def test_purchase_is_per_user_and_per_book(self, seed_data, gateway):
        _buy(gateway, seed_data["buyer_id"], seed_data["book_id"])

        assert not entitlement_service.has_access(seed_data["other_id"], seed_data["book_id"])
        assert not entitlement_service.has_access(
            seed_data["buyer_id"], seed_data["second_book_id"]
        )

    def test_pending_purchase_grants_nothing(self, seed_data, gateway):
        cart = purchase_service.build_cart_snapshot([seed_data["book_id"]])
        order = purchase_service.create_order(seed_data["buyer_id"], cart, gateway=gateway)

        assert purchase_service.get_purchase(order.purchase_id).status == Purchase.PENDING
        assert not entitlement_service.has_access(seed_data["buyer_id"], seed_data["book_id"])


class TestSubscriptionEntitlement:
    """ACTIVE subscriptions covering now."""

    def test_active_subscription_grants_catalog(self, seed_data, make_subscription):
        make_subscription(seed_data["buyer_id"], seed_data["plan_id"])

        for content_id in (seed_data["book_id"], seed_data["second_book_id"],
                           seed_data["chapter_id"]):
            decision = entitlement_service.resolve_access(seed_data["buyer_id"], content_id)
            assert decision.granted is True
            assert decision.via == VIA_SUBSCRIPTION

    def test_past_due_subscription_denied(self, seed_data, make_subscription):
        make_subscription(seed_data["buyer_id"], seed_data["plan_id"],
                          status=Subscription.PAST_DUE)
        assert not entitlement_service.has_access(seed_data["buyer_id"], seed_data["book_id"])

    def test_expired_period_denied(self, seed_data, make_subscription):
        now = datetime.now(timezone.utc)
        make_subscription(
            seed_data["buyer_id"], seed_data["plan_id"],
            start=now - timedelta(days=40), end=now - timedelta(days=10),
        )
        assert not entitlement_service.has_access(seed_data["buyer_id"], seed_data["book_id"])

    def test_explicit_now_inside_period(self, seed_data, make_subscription):
        now = datetime.now(timezone.utc)
        make_subscription(
            seed_data["buyer_id"], seed_data["plan_id"],
            start=now - timedelta(days=40), end=now - timedelta(days=10),
        )
        assert entitlement_service.has_access(
            seed_data["buyer_id"], seed_data["book_id"], now=now - timedelta(days=20)
        )

    def test_resolving_access_writes_nothing(self, seed_data, make_subscription):
        make_subscription(seed_data["buyer_id"], seed_data["plan_id"])
        before = AuditEvent.query.count()

        entitlement_service.has_access(seed_data["buyer_id"], seed_data["book_id"])
        entitlement_service.has_access(seed_data["other_id"], seed_data["book_id"])

        assert AuditEvent.query.count() == before
        assert Purchase.query.count() == 0
        assert Subscription.query.count() == 1
