# Models package — import all models here so Alembic can discover them.

from paybridge.models.customer_token import CustomerToken  # noqa: F401
from paybridge.models.schedule import RecurringSchedule  # noqa: F401
from paybridge.models.transaction import Transaction  # noqa: F401
from paybridge.models.webhook_event import WebhookEvent  # noqa: F401
