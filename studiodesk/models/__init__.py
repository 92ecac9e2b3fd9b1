# Models package — import all models here so Alembic can discover them.

from studiodesk.models.user import User  # noqa: F401
from studiodesk.models.project import Booking, Project  # noqa: F401
from studiodesk.models.billing import (  # noqa: F401
    BillingCustomer,
    Payment,
    ProjectSubscription,
    Subscription,
)
from studiodesk.models.stripe_event import StripeEvent  # noqa: F401
from studiodesk.models.rag import RagChunk, RagDocument, RagUsage  # noqa: F401
from studiodesk.models.notification import Notification  # noqa: F401
