"""Discount service — code validation, pricing, redemption and admin CRUD.

validate_discount() is a read-only preview: it never mutates a code and
never records a redemption. Redemption happens only inside the transaction
that completes a purchase (redeem_discount), where every check is re-run
under a row lock and the usage counter is bumped with a conditional UPDATE,
so concurrent completions can never push used_count past max_uses_total.

Functions flush but do NOT commit — the caller commits.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import bleach
from sqlalchemy import func, or_, update

from app.errors import DiscountRejected, DiscountRejection, NotFound
from app.extensions import db, with_row_lock
from app.models.audit import AuditEvent
from app.models.discount import (
    DiscountCode,
    DiscountKind,
    DiscountRedemption,
    as_utc,
)
from app.models.purchase import Purchase

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiscountValidation:
    """Outcome of a discount preview.

    valid=True carries the amounts; valid=False carries the reason.
    """

    valid: bool
    discount_amount_cents: int = 0
    final_amount_cents: int = 0
    reason: Optional[DiscountRejection] = None
    discount_code_id: Optional[str] = None

    def to_dict(self):
        if not self.valid:
            return {"valid": False, "reason": self.reason.value}
        return {
            "valid": True,
            "discount_amount_cents": self.discount_amount_cents,
            "final_amount_cents": self.final_amount_cents,
        }


def normalize_code(code):
    """Codes are matched case-insensitively and whitespace-trimmed."""
    return (code or "").strip().upper()


def compute_discount_amount(kind, value, cart_total_cents):
    """Discount in cents for a cart total. Never exceeds the cart total.

    PERCENTAGE floors to whole cents; FIXED_AMOUNT is clamped to the cart.
    """
    if cart_total_cents <= 0:
        return 0
    if kind == DiscountKind.PERCENTAGE:
        amount = cart_total_cents * value // 100
    elif kind == DiscountKind.FIXED_AMOUNT:
        amount = min(value, cart_total_cents)
    else:
        raise ValueError(f"Unknown discount kind: {kind!r}")
    return max(0, min(amount, cart_total_cents))


def count_user_redemptions(discount_code_id, user_id):
    return (
        db.session.query(func.count(DiscountRedemption.id))
        .filter(
            DiscountRedemption.discount_code_id == discount_code_id,
            DiscountRedemption.user_id == user_id,
        )
        .scalar()
    )


def check_discount(discount, cart_total_cents, user_id, for_subscription=False,
                   now=None):
    """Run every eligibility check in order; raise on the first failure.

    Returns the discount amount in cents.

    Raises:
        DiscountRejected: with the first failing reason.
    """
    if discount is None:
        raise DiscountRejected(DiscountRejection.NOT_FOUND)
    if not discount.is_active:
        raise DiscountRejected(DiscountRejection.INACTIVE)
    if not discount.in_window(now):
        raise DiscountRejected(DiscountRejection.OUT_OF_WINDOW)
    if cart_total_cents < (discount.min_purchase_cents or 0):
        raise DiscountRejected(DiscountRejection.BELOW_MINIMUM)
    if discount.is_exhausted:
        raise DiscountRejected(DiscountRejection.EXHAUSTED_TOTAL)
    if user_id is not None and discount.max_uses_per_user is not None:
        if count_user_redemptions(discount.id, user_id) >= discount.max_uses_per_user:
            raise DiscountRejected(DiscountRejection.EXHAUSTED_PER_USER)
    if for_subscription and not discount.applies_to_subscriptions:
        raise DiscountRejected(DiscountRejection.NOT_APPLICABLE)
    if not for_subscription and not discount.applies_to_purchases:
        raise DiscountRejected(DiscountRejection.NOT_APPLICABLE)

    return compute_discount_amount(discount.kind, discount.value, cart_total_cents)


def get_discount_by_code(code):
    normalized = normalize_code(code)
    if not normalized:
        return None
    return DiscountCode.query.filter_by(code=normalized).first()


def apply_discount(code, cart_total_cents, user_id, for_subscription=False):
    """Resolve a code and price it against a cart, raising on rejection.

    Returns (DiscountCode, discount_amount_cents).
    """
    discount = get_discount_by_code(code)
    amount = check_discount(discount, cart_total_cents, user_id, for_subscription)
    return discount, amount


def validate_discount(code, cart_total_cents, user_id, for_subscription=False):
    """Preview a discount code against a cart total.

    Args:
        code: Code string as typed by the user.
        cart_total_cents: Current cart total in cents.
        user_id: User UUID string, or None for anonymous previews (per-user
                 cap skipped).
        for_subscription: True when pricing a subscription.

    Returns:
        DiscountValidation. Rejections are returned, not raised.
    """
    if cart_total_cents < 0:
        raise ValueError("Cart total cannot be negative.")
    try:
        discount, amount = apply_discount(
            code, cart_total_cents, user_id, for_subscription
        )
    except DiscountRejected as e:
        logger.info(f"Discount {normalize_code(code)!r} rejected: {e.reason.value}")
        return DiscountValidation(valid=False, reason=e.reason)

    return DiscountValidation(
        valid=True,
        discount_amount_cents=amount,
        final_amount_cents=max(0, cart_total_cents - amount),
        discount_code_id=discount.id,
    )


def redeem_discount(discount_code_id, user_id, purchase_id, cart_total_cents,
                    for_subscription=False, discount_amount_cents=None):
    """Record one use of a discount code for a purchase.

    Re-runs every check with the code row locked, then bumps used_count
    with a conditional UPDATE so the total cap holds even when the lock is
    unavailable. Losing that race reports ExhaustedTotal.

    discount_amount_cents, when given, is the amount already granted at
    checkout and is what the redemption records.

    Returns:
        The DiscountRedemption row.

    Raises:
        DiscountRejected: If the code no longer validates.
    """
    discount = with_row_lock(
        DiscountCode.query.filter_by(id=discount_code_id)
    ).populate_existing().first()

    amount = check_discount(discount, cart_total_cents, user_id, for_subscription)
    if discount_amount_cents is not None:
        amount = discount_amount_cents

    result = db.session.execute(
        update(DiscountCode)
        .where(
            DiscountCode.id == discount.id,
            or_(
                DiscountCode.max_uses_total.is_(None),
                DiscountCode.used_count < DiscountCode.max_uses_total,
            ),
        )
        .values(used_count=DiscountCode.used_count + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning(
            f"Discount {discount.code} hit its total cap while redeeming "
            f"for purchase {purchase_id}"
        )
        raise DiscountRejected(DiscountRejection.EXHAUSTED_TOTAL)

    db.session.refresh(discount, ["used_count"])

    redemption = DiscountRedemption(
        discount_code_id=discount.id,
        user_id=user_id,
        purchase_id=purchase_id,
        discount_amount_cents=amount,
    )
    db.session.add(redemption)
    db.session.flush()

    db.session.add(AuditEvent(
        actor_user_id=user_id,
        action="discount.redeemed",
        metadata_={
            "discount_code_id": discount.id,
            "code": discount.code,
            "purchase_id": purchase_id,
            "discount_amount_cents": amount,
            "used_count": discount.used_count,
        },
    ))
    db.session.flush()

    logger.info(
        f"Discount {discount.code} redeemed for purchase {purchase_id} "
        f"({amount} cents, used {discount.used_count})"
    )
    return redemption


# ──────────────────────────────────────────────
# Admin CRUD
# ──────────────────────────────────────────────

EDITABLE_FIELDS = [
    "description",
    "kind",
    "value",
    "min_purchase_cents",
    "max_uses_total",
    "max_uses_per_user",
    "valid_from",
    "valid_until",
    "is_active",
    "applies_to_purchases",
    "applies_to_subscriptions",
]


def _parse_datetime(value, field):
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            raise ValueError(f"'{field}' must be an ISO-8601 datetime.")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_optional_int(value, field, minimum):
    if value is None or value == "":
        return None
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"'{field}' must be an integer.")
    if parsed < minimum:
        raise ValueError(f"'{field}' must be at least {minimum}.")
    return parsed


def _clean_fields(data):
    """Validate and coerce admin input. Returns a dict of model values."""
    cleaned = {}
    for field in EDITABLE_FIELDS:
        if field not in data:
            continue
        value = data[field]
        if field == "description":
            cleaned[field] = bleach.clean(value or "", tags=[], strip=True).strip() or None
        elif field == "kind":
            try:
                cleaned[field] = DiscountKind(str(value).upper())
            except ValueError:
                raise ValueError(
                    f"Invalid kind '{value}'. Must be one of: "
                    f"{', '.join(k.value for k in DiscountKind)}"
                )
        elif field == "value":
            cleaned[field] = _parse_optional_int(value, field, 1)
            if cleaned[field] is None:
                raise ValueError("'value' is required.")
        elif field == "min_purchase_cents":
            cleaned[field] = _parse_optional_int(value, field, 0) or 0
        elif field in ("max_uses_total", "max_uses_per_user"):
            cleaned[field] = _parse_optional_int(value, field, 1)
        elif field in ("valid_from", "valid_until"):
            cleaned[field] = _parse_datetime(value, field)
        else:
            cleaned[field] = bool(value)
    return cleaned


def _check_consistency(discount):
    if discount.kind == DiscountKind.PERCENTAGE and not 1 <= discount.value <= 100:
        raise ValueError("Percentage discounts must be between 1 and 100.")
    if discount.kind == DiscountKind.FIXED_AMOUNT and discount.value <= 0:
        raise ValueError("Fixed discounts must be a positive amount in cents.")
    if (
        discount.valid_from is not None
        and discount.valid_until is not None
        and as_utc(discount.valid_until) <= as_utc(discount.valid_from)
    ):
        raise ValueError("'valid_until' must be after 'valid_from'.")
    if (
        discount.max_uses_total is not None
        and discount.max_uses_total < (discount.used_count or 0)
    ):
        raise ValueError(
            f"'max_uses_total' cannot be below the current use count ({discount.used_count})."
        )
    if not discount.applies_to_purchases and not discount.applies_to_subscriptions:
        raise ValueError("A discount must apply to purchases, subscriptions or both.")


def create_discount_code(data, actor_user_id):
    """Create a discount code from admin input.

    Raises:
        ValueError: On missing/invalid fields or a duplicate code.
    """
    code = normalize_code(data.get("code"))
    if not code:
        raise ValueError("Code is required.")
    if len(code) > 64 or not all(c.isalnum() or c in "-_" for c in code):
        raise ValueError("Code may only contain letters, digits, '-' and '_'.")
    if "kind" not in data or "value" not in data:
        raise ValueError("'kind' and 'value' are required.")
    if get_discount_by_code(code) is not None:
        raise ValueError(f"Discount code '{code}' already exists.")

    cleaned = _clean_fields(data)
    discount = DiscountCode(code=code, used_count=0, **cleaned)
    if discount.max_uses_per_user is None and "max_uses_per_user" not in data:
        discount.max_uses_per_user = 1
    if discount.is_active is None:
        discount.is_active = True
    if discount.applies_to_purchases is None:
        discount.applies_to_purchases = True
    if discount.applies_to_subscriptions is None:
        discount.applies_to_subscriptions = False
    if discount.min_purchase_cents is None:
        discount.min_purchase_cents = 0
    _check_consistency(discount)

    db.session.add(discount)
    db.session.flush()

    db.session.add(AuditEvent(
        actor_user_id=actor_user_id,
        action="discount.created",
        metadata_={"discount_code_id": discount.id, "code": code},
    ))
    db.session.flush()
    return discount


def get_discount_code(discount_code_id):
    discount = db.session.get(DiscountCode, discount_code_id)
    if discount is None:
        raise NotFound(f"Discount code {discount_code_id} not found.")
    return discount


def list_discount_codes(include_inactive=True):
    query = DiscountCode.query
    if not include_inactive:
        query = query.filter_by(is_active=True)
    return query.order_by(DiscountCode.created_at.desc()).all()


def update_discount_code(discount_code_id, data, actor_user_id):
    """Update editable fields. The code string and used_count never change."""
    discount = get_discount_code(discount_code_id)
    if "code" in data and normalize_code(data["code"]) != discount.code:
        raise ValueError("A discount code cannot be renamed.")

    cleaned = _clean_fields(data)
    for field, value in cleaned.items():
        setattr(discount, field, value)
    _check_consistency(discount)
    db.session.flush()

    db.session.add(AuditEvent(
        actor_user_id=actor_user_id,
        action="discount.updated",
        metadata_={
            "discount_code_id": discount.id,
            "fields": sorted(cleaned.keys()),
        },
    ))
    db.session.flush()
    return discount


def deactivate_discount_code(discount_code_id, actor_user_id):
    discount = get_discount_code(discount_code_id)
    if not discount.is_active:
        return discount
    discount.is_active = False
    db.session.flush()

    db.session.add(AuditEvent(
        actor_user_id=actor_user_id,
        action="discount.deactivated",
        metadata_={"discount_code_id": discount.id, "code": discount.code},
    ))
    db.session.flush()
    return discount


def delete_discount_code(discount_code_id, actor_user_id):
    """Delete an unused code. Codes with redemptions must be deactivated."""
    discount = get_discount_code(discount_code_id)
    if discount.redemptions.count() > 0 or discount.used_count > 0:
        raise ValueError(
            "Discount code has redemptions and cannot be deleted; deactivate it instead."
        )
    if Purchase.query.filter_by(discount_code_id=discount.id).count() > 0:
        raise ValueError(
            "Discount code is referenced by purchases; deactivate it instead."
        )
    code = discount.code
    db.session.delete(discount)
    db.session.add(AuditEvent(
        actor_user_id=actor_user_id,
        action="discount.deleted",
        metadata_={"discount_code_id": discount_code_id, "code": code},
    ))
    db.session.flush()
