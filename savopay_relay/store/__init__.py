"""Payment Record Store and Event Audit Log."""
from .base import (
    PaymentNotFoundError,
    PaymentRecord,
    PaymentStore,
    ReportingStore,
    StoreError,
    WebhookEventLog,
    clamp_limit,
)
from .factory import create_stores
from .memory import InMemoryPaymentStore, InMemoryWebhookEventLog
from .sql import SqlPaymentStore, SqlWebhookEventLog

__all__ = [
    "PaymentNotFoundError",
    "PaymentRecord",
    "PaymentStore",
    "ReportingStore",
    "StoreError",
    "WebhookEventLog",
    "clamp_limit",
    "create_stores",
    "InMemoryPaymentStore",
    "InMemoryWebhookEventLog",
    "SqlPaymentStore",
    "SqlWebhookEventLog",
]
