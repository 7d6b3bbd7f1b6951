import os


def _parse_tax_rates(raw):
    """Parse "ES:21,PT:23,FR:5.5" into {"ES": "21", ...}.

    Values stay strings; the tax provider converts them to Decimal.
    """
    rates = {}
    for chunk in (raw or "").split(","):
        chunk = chunk.strip()
        if not chunk or ":" not in chunk:
            continue
        country, rate = chunk.split(":", 1)
        rates[country.strip().upper()] = rate.strip()
    return rates


class Config:
    """Base configuration. Shared across all environments."""

    # --- Required ---
    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Handle DATABASE_URL: some PaaS providers (Railway, Heroku) use
    # "postgres://" which SQLAlchemy 1.4+ doesn't accept.
    _db_url = os.environ.get("DATABASE_URL", "")
    if _db_url.startswith("postgres://"):
        _db_url = _db_url.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = _db_url or None

    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
    STRIPE_PUBLISHABLE_KEY = os.environ.get("STRIPE_PUBLISHABLE_KEY")
    APP_BASE_URL = os.environ.get("APP_BASE_URL", "http://localhost:5000")

    # --- Catalog / pricing ---
    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "EUR")

    # --- Tax ---
    # Percentages. Country rules win over the default rate.
    DEFAULT_TAX_RATE = os.environ.get("DEFAULT_TAX_RATE", "21")
    TAX_RATES_BY_COUNTRY = _parse_tax_rates(
        os.environ.get("TAX_RATES_BY_COUNTRY", "")
    )

    # --- Invoicing ---
    INVOICE_NUMBER_PREFIX = os.environ.get("INVOICE_NUMBER_PREFIX", "AUD")
    INVOICE_RENDERER_URL = os.environ.get("INVOICE_RENDERER_URL")      # e.g. https://render.internal/invoices
    INVOICE_RENDERER_TOKEN = os.environ.get("INVOICE_RENDERER_TOKEN")
    INVOICE_RENDERER_TIMEOUT = int(os.environ.get("INVOICE_RENDERER_TIMEOUT", 10))

    # Seller block frozen onto every invoice at issue time
    SELLER_NAME = os.environ.get("SELLER_NAME", "Audivia S.L.")
    SELLER_TAX_ID = os.environ.get("SELLER_TAX_ID", "B12345678")
    SELLER_ADDRESS = os.environ.get(
        "SELLER_ADDRESS", "Calle Principal 123, 28001 Madrid, Spain"
    )
    SELLER_EMAIL = os.environ.get("SELLER_EMAIL", "billing@audivia.com")

    # --- Purchases ---
    # PENDING purchases older than this are marked FAILED by reclaim-purchases
    PENDING_PURCHASE_TTL_HOURS = int(
        os.environ.get("PENDING_PURCHASE_TTL_HOURS", 24)
    )

    # --- Rate limits ---
    DISCOUNT_VALIDATE_RATE_LIMIT = os.environ.get(
        "DISCOUNT_VALIDATE_RATE_LIMIT", "30 per minute"
    )

    # --- SQLAlchemy ---
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    # --- Session / cookies ---
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    REMEMBER_COOKIE_HTTPONLY = True
    REMEMBER_COOKIE_SAMESITE = "Lax"

    # --- WTF / CSRF ---
    WTF_CSRF_ENABLED = True

    @staticmethod
    def validate():
        """Fail fast if required env vars are missing."""
        required = [
            "SECRET_KEY",
            "DATABASE_URL",
            "STRIPE_SECRET_KEY",
            "STRIPE_WEBHOOK_SECRET",
            "APP_BASE_URL",
        ]
        missing = [v for v in required if not os.environ.get(v)]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}"
            )


class DevConfig(Config):
    """Local development."""

    DEBUG = True
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False


class TestConfig(Config):
    """Testing — in-memory SQLite, CSRF disabled."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    STRIPE_SECRET_KEY = "sk_test_fake"
    STRIPE_WEBHOOK_SECRET = "whsec_test_fake"
    STRIPE_PUBLISHABLE_KEY = "pk_test_fake"
    APP_BASE_URL = "http://localhost:5000"
    DEFAULT_TAX_RATE = "21"
    TAX_RATES_BY_COUNTRY = {"PT": "23", "FR": "5.5"}
    INVOICE_RENDERER_URL = None  # rendering skipped unless a test patches it in
    WTF_CSRF_ENABLED = False  # disable CSRF for test requests
    RATELIMIT_ENABLED = False  # disable rate limiting in tests
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False
    SERVER_NAME = "localhost"

    @staticmethod
    def validate():
        """Skip validation in test mode — everything is hardcoded."""
        pass


class ProdConfig(Config):
    """Production."""

    DEBUG = False
    SESSION_COOKIE_SECURE = True
    REMEMBER_COOKIE_SECURE = True


config_by_name = {
    "development": DevConfig,
    "production": ProdConfig,
    "testing": TestConfig,
}
