# Models package — import all models here so Alembic can discover them.

from paysync.models.customer import Customer  # noqa: F401
from paysync.models.plan import Plan  # noqa: F401
from paysync.models.billing import (  # noqa: F401
    BillingCustomer,
    Payment,
    Subscription,
)
from paysync.models.stripe_event import StripeEvent  # noqa: F401
