"""Tests for discount code validation, redemption and admin management.

Covers:
- Percentage and fixed-amount pricing (floor, clamp to cart total)
- Every rejection reason, and the order the checks run in
- Case-insensitive lookup
- Previews never consume uses
- Per-user cap after a real redemption
- Admin create / update / deactivate / delete rules
"""

from datetime import datetime, timedelta, timezone

import pytest

from app.errors import DiscountRejected, DiscountRejection, NotFound
from app.extensions import db
from app.models.audit import AuditEvent
from app.models.discount import DiscountCode, DiscountKind, DiscountRedemption
from app.services import discount_service, purchase_service


def _complete_purchase(gateway, user_id, content_ids, code=None):
    cart = purchase_service.build_cart_snapshot(content_ids)
    order = purchase_service.create_order(user_id, cart, discount_code=code, gateway=gateway)
    return purchase_service.capture_order(order.external_order_id, gateway=gateway)


class TestDiscountAmount:
    """Tests for compute_discount_amount."""

    def test_percentage_floors_to_whole_cents(self):
        assert discount_service.compute_discount_amount(DiscountKind.PERCENTAGE, 20, 999) == 199

    def test_percentage_of_hundred_is_whole_cart(self):
        assert discount_service.compute_discount_amount(DiscountKind.PERCENTAGE, 100, 1234) == 1234

    def test_fixed_amount_clamped_to_cart_total(self):
        assert discount_service.compute_discount_amount(DiscountKind.FIXED_AMOUNT, 500, 300) == 300

    def test_zero_cart_gets_zero_discount(self):
        assert discount_service.compute_discount_amount(DiscountKind.FIXED_AMOUNT, 500, 0) == 0


class TestValidateDiscount:
    """Tests for the read-only preview."""

    def test_save20_on_ten_euros(self, seed_data):
        """SAVE20 on a 1000 cart -> 200 off, 800 to pay."""
        result = discount_service.validate_discount("SAVE20", 1000, seed_data["buyer_id"])
        assert result.valid is True
        assert result.discount_amount_cents == 200
        assert result.final_amount_cents == 800
        assert result.to_dict() == {
            "valid": True,
            "discount_amount_cents": 200,
            "final_amount_cents": 800,
        }

    def test_code_is_case_insensitive_and_trimmed(self, seed_data):
        result = discount_service.validate_discount("  save20 ", 1000, seed_data["buyer_id"])
        assert result.valid is True

    def test_fixed_amount_never_goes_negative(self, seed_data):
        result = discount_service.validate_discount("FIVEOFF", 300, seed_data["buyer_id"])
        assert result.valid is True
        assert result.discount_amount_cents == 300
        assert result.final_amount_cents == 0

    def test_unknown_code(self, seed_data):
        result = discount_service.validate_discount("NOPE", 1000, seed_data["buyer_id"])
        assert result.valid is False
        assert result.reason == DiscountRejection.NOT_FOUND
        assert result.to_dict() == {"valid": False, "reason": "NotFound"}

    def test_empty_code_is_not_found(self, seed_data):
        result = discount_service.validate_discount("", 1000, seed_data["buyer_id"])
        assert result.reason == DiscountRejection.NOT_FOUND

    def test_inactive(self, seed_data):
        code = db.session.get(DiscountCode, seed_data["save20_id"])
        code.is_active = False
        db.session.commit()

        result = discount_service.validate_discount("SAVE20", 1000, seed_data["buyer_id"])
        assert result.reason == DiscountRejection.INACTIVE

    def test_not_yet_valid(self, seed_data):
        code = db.session.get(DiscountCode, seed_data["save20_id"])
        code.valid_from = datetime.now(timezone.utc) + timedelta(days=1)
        db.session.commit()

        result = discount_service.validate_discount("SAVE20", 1000, seed_data["buyer_id"])
        assert result.reason == DiscountRejection.OUT_OF_WINDOW

    def test_expired(self, seed_data):
        code = db.session.get(DiscountCode, seed_data["save20_id"])
        code.valid_until = datetime.now(timezone.utc) - timedelta(days=1)
        db.session.commit()

        result = discount_service.validate_discount("SAVE20", 1000, seed_data["buyer_id"])
        assert result.reason == DiscountRejection.OUT_OF_WINDOW

    def test_below_minimum(self, seed_data):
        code = db.session.get(DiscountCode, seed_data["save20_id"])
        code.min_purchase_cents = 1500
        db.session.commit()

        result = discount_service.validate_discount("SAVE20", 1000, seed_data["buyer_id"])
        assert result.reason == DiscountRejection.BELOW_MINIMUM

    def test_exhausted_total(self, seed_data):
        code = db.session.get(DiscountCode, seed_data["five_off_id"])
        code.max_uses_total = 2
        code.used_count = 2
        db.session.commit()

        result = discount_service.validate_discount("FIVEOFF", 1000, seed_data["buyer_id"])
        assert result.reason == DiscountRejection.EXHAUSTED_TOTAL

    def test_not_applicable_to_subscriptions(self, seed_data):
        result = discount_service.validate_discount(
            "SAVE20", 999, seed_data["buyer_id"], for_subscription=True
        )
        assert result.reason == DiscountRejection.NOT_APPLICABLE

    def test_not_applicable_to_purchases(self, seed_data):
        code = db.session.get(DiscountCode, seed_data["five_off_id"])
        code.applies_to_purchases = False
        db.session.commit()

        assert discount_service.validate_discount(
            "FIVEOFF", 1000, seed_data["buyer_id"]
        ).reason == DiscountRejection.NOT_APPLICABLE
        assert discount_service.validate_discount(
            "FIVEOFF", 999, seed_data["buyer_id"], for_subscription=True
        ).valid is True

    def test_first_failing_check_wins(self, seed_data):
        """Inactive and expired and below minimum -> Inactive."""
        code = db.session.get(DiscountCode, seed_data["save20_id"])
        code.is_active = False
        code.valid_until = datetime.now(timezone.utc) - timedelta(days=1)
        code.min_purchase_cents = 5000
        db.session.commit()

        result = discount_service.validate_discount("SAVE20", 1000, seed_data["buyer_id"])
        assert result.reason == DiscountRejection.INACTIVE

    def test_negative_cart_total_rejected(self, seed_data):
        with pytest.raises(ValueError):
            discount_service.validate_discount("SAVE20", -1, seed_data["buyer_id"])

    def test_preview_never_consumes_uses(self, seed_data):
        for _ in range(5):
            assert discount_service.validate_discount(
                "SAVE20", 1000, seed_data["buyer_id"]
            ).valid is True

        code = db.session.get(DiscountCode, seed_data["save20_id"])
        assert code.used_count == 0
        assert DiscountRedemption.query.count() == 0

    def test_anonymous_preview_skips_per_user_cap(self, seed_data):
        result = discount_service.validate_discount("SAVE20", 1000, None)
        assert result.valid is True


class TestRedemption:
    """Tests for redemption at purchase completion."""

    def test_per_user_cap_after_redemption(self, seed_data, gateway):
        """maxUsesPerUser=1: second preview for the same user is ExhaustedPerUser."""
        _complete_purchase(gateway, seed_data["buyer_id"], [seed_data["book_id"]], "SAVE20")

        code = db.session.get(DiscountCode, seed_data["save20_id"])
        assert code.used_count == 1
        assert code.max_uses_total is None

        again = discount_service.validate_discount("SAVE20", 500, seed_data["buyer_id"])
        assert again.valid is False
        assert again.reason == DiscountRejection.EXHAUSTED_PER_USER

        # Another user is unaffected
        other = discount_service.validate_discount("SAVE20", 500, seed_data["other_id"])
        assert other.valid is True

    def test_redemption_records_granted_amount(self, seed_data, gateway):
        purchase = _complete_purchase(
            gateway, seed_data["buyer_id"], [seed_data["book_id"]], "SAVE20"
        )

        redemption = DiscountRedemption.query.filter_by(purchase_id=purchase.id).one()
        assert redemption.discount_amount_cents == 200
        assert redemption.user_id == seed_data["buyer_id"]

        audit = AuditEvent.query.filter_by(action="discount.redeemed").one()
        assert audit.metadata_["purchase_id"] == purchase.id

    def test_redeem_rechecks_code(self, seed_data, gateway):
        code = db.session.get(DiscountCode, seed_data["save20_id"])
        code.is_active = False
        db.session.commit()

        with pytest.raises(DiscountRejected) as exc:
            discount_service.redeem_discount(
                seed_data["save20_id"], seed_data["buyer_id"], "no-purchase", 1000
            )
        assert exc.value.reason == DiscountRejection.INACTIVE


class TestDiscountAdmin:
    """Tests for admin CRUD in discount_service."""

    def test_create_normalizes_code(self, seed_data):
        discount = discount_service.create_discount_code(
            {"code": "spring-25", "kind": "percentage", "value": 25},
            seed_data["admin_id"],
        )
        db.session.commit()

        assert discount.code == "SPRING-25"
        assert discount.kind == DiscountKind.PERCENTAGE
        assert discount.max_uses_per_user == 1
        assert discount.applies_to_purchases is True
        assert AuditEvent.query.filter_by(action="discount.created").count() == 1

    def test_create_rejects_duplicate(self, seed_data):
        with pytest.raises(ValueError, match="already exists"):
            discount_service.create_discount_code(
                {"code": "save20", "kind": "PERCENTAGE", "value": 10},
                seed_data["admin_id"],
            )

    def test_create_rejects_percentage_over_100(self, seed_data):
        with pytest.raises(ValueError):
            discount_service.create_discount_code(
                {"code": "HUGE", "kind": "PERCENTAGE", "value": 150},
                seed_data["admin_id"],
            )

    def test_create_rejects_inverted_window(self, seed_data):
        with pytest.raises(ValueError, match="valid_until"):
            discount_service.create_discount_code(
                {
                    "code": "BACKWARDS",
                    "kind": "FIXED_AMOUNT",
                    "value": 100,
                    "valid_from": "2026-06-01T00:00:00Z",
                    "valid_until": "2026-05-01T00:00:00Z",
                },
                seed_data["admin_id"],
            )

    def test_create_rejects_unknown_kind(self, seed_data):
        with pytest.raises(ValueError, match="Invalid kind"):
            discount_service.create_discount_code(
                {"code": "ODD", "kind": "BOGO", "value": 1},
                seed_data["admin_id"],
            )

    def test_update_cannot_rename(self, seed_data):
        with pytest.raises(ValueError, match="renamed"):
            discount_service.update_discount_code(
                seed_data["save20_id"], {"code": "SAVE30"}, seed_data["admin_id"]
            )

    def test_update_fields(self, seed_data):
        discount = discount_service.update_discount_code(
            seed_data["save20_id"],
            {"value": 30, "min_purchase_cents": 800, "description": "<b>Spring</b> sale"},
            seed_data["admin_id"],
        )
        db.session.commit()

        assert discount.value == 30
        assert discount.min_purchase_cents == 800
        assert discount.description == "Spring sale"

    def test_cap_cannot_drop_below_use_count(self, seed_data):
        code = db.session.get(DiscountCode, seed_data["five_off_id"])
        code.used_count = 3
        db.session.commit()

        with pytest.raises(ValueError, match="current use count"):
            discount_service.update_discount_code(
                seed_data["five_off_id"], {"max_uses_total": 2}, seed_data["admin_id"]
            )

    def test_deactivate(self, seed_data):
        discount = discount_service.deactivate_discount_code(
            seed_data["save20_id"], seed_data["admin_id"]
        )
        db.session.commit()
        assert discount.is_active is False
        assert AuditEvent.query.filter_by(action="discount.deactivated").count() == 1

    def test_delete_unused_code(self, seed_data):
        discount_service.delete_discount_code(seed_data["five_off_id"], seed_data["admin_id"])
        db.session.commit()
        assert db.session.get(DiscountCode, seed_data["five_off_id"]) is None

    def test_delete_redeemed_code_refused(self, seed_data, gateway):
        _complete_purchase(gateway, seed_data["buyer_id"], [seed_data["book_id"]], "SAVE20")

        with pytest.raises(ValueError, match="deactivate"):
            discount_service.delete_discount_code(seed_data["save20_id"], seed_data["admin_id"])

    def test_get_unknown_code(self, seed_data):
        with pytest.raises(NotFound):
            discount_service.get_discount_code("missing-id")
