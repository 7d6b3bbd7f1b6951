"""Shared test fixtures for the commerce core test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, CSRF off)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- seed_data: buyer + second user + admin, a small catalog, a plan and
  two discount codes
- file_app: a second app on a SQLite file, seeded the same way, for
  tests that run concurrent sessions
- gateway: in-memory payment gateway standing in for Stripe
"""

from datetime import datetime, timedelta, timezone

import pytest
from werkzeug.security import generate_password_hash

from app import create_app
from app.config import TestConfig, config_by_name
from app.errors import PaymentDeclined, ProcessorError
from app.extensions import db as _db
from app.models.catalog import Audiobook, Chapter
from app.models.discount import DiscountCode, DiscountKind
from app.models.subscription import Subscription, SubscriptionPlan
from app.models.user import User
from app.services.stripe_service import CaptureResult, PaymentOrder


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


class FakeGateway:
    """Records calls; captures whatever amount the order was created for.

    Set decline / fail to make the next captures raise PaymentDeclined /
    ProcessorError. capture_amount overrides the captured amount.
    """

    def __init__(self):
        self.orders = {}
        self.created = []
        self.captured = []
        self.decline = False
        self.fail = False
        self.capture_amount = None

    def create_order(self, amount_cents, currency, metadata=None):
        order_id = f"pi_test_{len(self.created) + 1}"
        self.orders[order_id] = (amount_cents, currency)
        self.created.append({
            "order_id": order_id,
            "amount_cents": amount_cents,
            "currency": currency,
            "metadata": metadata,
        })
        return PaymentOrder(order_id=order_id, client_secret=f"{order_id}_secret")

    def capture_order(self, order_id):
        self.captured.append(order_id)
        if self.decline:
            raise PaymentDeclined("Your card was declined.")
        if self.fail:
            raise ProcessorError("Payment processor timed out")
        amount, currency = self.orders[order_id]
        if self.capture_amount is not None:
            amount = self.capture_amount
        return CaptureResult(
            capture_id=f"ch_{order_id}",
            payer_email="buyer@example.com",
            amount_captured_cents=amount,
            currency=currency,
        )


@pytest.fixture
def gateway():
    return FakeGateway()


def seed_catalog():
    """Seed users, catalog, plan and discount codes into the current app's db.

    Returns plain ids so tests can use them after the session expires
    the objects.
    """
    # --- Users ---
    buyer = User(
        email="buyer@example.com",
        password_hash=generate_password_hash("buyer123"),
        full_name="Bea Buyer",
    )
    other = User(
        email="other@example.com",
        password_hash=generate_password_hash("other123"),
        full_name="Otto Other",
    )
    admin = User(
        email="admin@audivia.local",
        password_hash=generate_password_hash("admin123"),
        full_name="Admin User",
        is_admin=True,
    )
    _db.session.add_all([buyer, other, admin])
    _db.session.flush()

    # --- Catalog ---
    book = Audiobook(title="The Quiet Harbour", author="M. Alvarez",
                     price_cents=1000, currency="EUR")
    second_book = Audiobook(title="Salt and Iron", author="J. Okafor",
                            price_cents=500, currency="EUR")
    free_book = Audiobook(title="Short Stories Sampler", author="Various",
                          price_cents=0, currency="EUR", is_free=True)
    _db.session.add_all([book, second_book, free_book])
    _db.session.flush()

    sample_chapter = Chapter(audiobook_id=book.id, title="Prologue",
                             number=1, is_sample=True)
    chapter = Chapter(audiobook_id=book.id, title="Landfall", number=2)
    _db.session.add_all([sample_chapter, chapter])

    # --- Plan ---
    plan = SubscriptionPlan(
        name="Unlimited Monthly",
        price_cents=999,
        currency="EUR",
        interval_months=1,
        stripe_price_id="price_monthly_test",
    )
    _db.session.add(plan)

    # --- Discount codes ---
    save20 = DiscountCode(
        code="SAVE20",
        kind=DiscountKind.PERCENTAGE,
        value=20,
        max_uses_per_user=1,
    )
    five_off = DiscountCode(
        code="FIVEOFF",
        kind=DiscountKind.FIXED_AMOUNT,
        value=500,
        max_uses_per_user=None,
        applies_to_subscriptions=True,
    )
    _db.session.add_all([save20, five_off])

    _db.session.commit()

    return {
        "buyer_id": buyer.id,
        "other_id": other.id,
        "admin_id": admin.id,
        "book_id": book.id,
        "second_book_id": second_book.id,
        "free_book_id": free_book.id,
        "sample_chapter_id": sample_chapter.id,
        "chapter_id": chapter.id,
        "plan_id": plan.id,
        "save20_id": save20.id,
        "five_off_id": five_off.id,
    }


@pytest.fixture
def seed_data(app, db_session):
    return seed_catalog()


@pytest.fixture
def file_app(tmp_path, monkeypatch):
    """App on a SQLite file, for tests that race several sessions.

    In-memory SQLite gives every connection its own database, so threads
    need a file. Yields (app, ids) with seed_catalog() committed.
    """

    class FileDbConfig(TestConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'commerce.db'}"
        SQLALCHEMY_ENGINE_OPTIONS = {"connect_args": {"timeout": 30}}

    monkeypatch.setitem(config_by_name, "file_testing", FileDbConfig)
    file_app = create_app("file_testing")

    with file_app.app_context():
        _db.create_all()
        ids = seed_catalog()

    yield file_app, ids

    with file_app.app_context():
        _db.drop_all()
        _db.engine.dispose()


@pytest.fixture
def make_subscription(db_session):
    """Factory: insert a subscription covering now unless start/end say otherwise."""

    def _make(user_id, plan_id, status=Subscription.ACTIVE,
              start=None, end=None, stripe_subscription_id=None):
        now = datetime.now(timezone.utc)
        sub = Subscription(
            user_id=user_id,
            plan_id=plan_id,
            status=status,
            current_period_start=start or now - timedelta(days=1),
            current_period_end=end or now + timedelta(days=29),
            stripe_subscription_id=stripe_subscription_id,
        )
        _db.session.add(sub)
        _db.session.commit()
        return sub

    return _make
