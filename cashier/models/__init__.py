"""SQLAlchemy models for cashier.

All models are imported here so that ``Base.metadata`` knows every table
(migrations and ``create_all`` rely on it). If you add a new model, import it
in this file.
"""

from cashier.models.subscription import Subscription
from cashier.models.user import BillableMixin, User
from cashier.models.webhook_event import WebhookEvent

__all__ = [
    "BillableMixin",
    "Subscription",
    "User",
    "WebhookEvent",
]
