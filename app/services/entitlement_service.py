"""Entitlement service — may this user play this content?

Access is a logical OR, evaluated in this order:
1. free content (is_free flag or zero price) or a sample chapter, for anyone
2. a COMPLETED purchase containing the audiobook
3. an ACTIVE subscription whose current period covers now (whole catalog)

Read-only: nothing here writes to the database.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from app.extensions import db
from app.models.catalog import Audiobook, Chapter
from app.models.purchase import Purchase, PurchaseItem
from app.models.subscription import Subscription


VIA_FREE = "free"
VIA_SAMPLE = "sample"
VIA_PURCHASE = "purchase"
VIA_SUBSCRIPTION = "subscription"


@dataclass(frozen=True)
class AccessDecision:
    granted: bool
    via: Optional[str] = None

    def to_dict(self):
        return {"granted": self.granted, "via": self.via}


DENIED = AccessDecision(granted=False)


def _resolve_content(content_id):
    """Map a content id to (audiobook, chapter). Chapter ids resolve to their book."""
    book = db.session.get(Audiobook, content_id)
    if book is not None:
        return book, None
    chapter = db.session.get(Chapter, content_id)
    if chapter is not None:
        return chapter.audiobook, chapter
    return None, None


def has_purchased(user_id, audiobook_id):
    return db.session.query(
        PurchaseItem.query
        .join(Purchase, Purchase.id == PurchaseItem.purchase_id)
        .filter(
            Purchase.user_id == user_id,
            Purchase.status == Purchase.COMPLETED,
            PurchaseItem.audiobook_id == audiobook_id,
        )
        .exists()
    ).scalar()


def get_active_subscription(user_id, now=None):
    """The user's ACTIVE subscription covering now, or None."""
    now = now or datetime.now(timezone.utc)
    return (
        Subscription.query
        .filter(
            Subscription.user_id == user_id,
            Subscription.status == Subscription.ACTIVE,
            Subscription.current_period_start <= now,
            Subscription.current_period_end >= now,
        )
        .order_by(Subscription.current_period_end.desc())
        .first()
    )


def resolve_access(user_id, content_id, now=None):
    """Full decision, including which rule granted access.

    user_id may be None for anonymous visitors; they only get free and
    sample content.
    """
    book, chapter = _resolve_content(content_id)
    if book is None:
        return DENIED

    if book.is_free_content:
        return AccessDecision(granted=True, via=VIA_FREE)
    if chapter is not None and chapter.is_sample:
        return AccessDecision(granted=True, via=VIA_SAMPLE)

    if user_id is None:
        return DENIED

    if has_purchased(user_id, book.id):
        return AccessDecision(granted=True, via=VIA_PURCHASE)
    if get_active_subscription(user_id, now) is not None:
        return AccessDecision(granted=True, via=VIA_SUBSCRIPTION)

    return DENIED


def has_access(user_id, content_id, now=None):
    return resolve_access(user_id, content_id, now).granted
