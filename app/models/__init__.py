# Models package: import all models here so Alembic can discover them.

from app.models.user import User  # noqa: F401
from app.models.catalog import Audiobook, Chapter  # noqa: F401
from app.models.discount import DiscountCode, DiscountRedemption  # noqa: F401
from app.models.purchase import Purchase, PurchaseItem  # noqa: F401
from app.models.subscription import (  # noqa: F401
    Subscription,
    SubscriptionCharge,
    SubscriptionPlan,
)
from app.models.billing import BillingCustomer, BillingProfile  # noqa: F401
from app.models.invoice import (  # noqa: F401
    Invoice,
    InvoiceLineItem,
    InvoiceSequence,
)
from app.models.stripe_event import StripeEvent  # noqa: F401
from app.models.audit import AuditEvent  # noqa: F401
