"""Database package for the payment relay."""
from .connection import (
    build_session_factory,
    close_db,
    get_engine,
    get_session_factory,
    init_db,
)
from .models import WEBHOOK_EVENT_STATUSES, Base, Payment, WebhookEvent

__all__ = [
    "Base",
    "Payment",
    "WebhookEvent",
    "WEBHOOK_EVENT_STATUSES",
    "build_session_factory",
    "close_db",
    "get_engine",
    "get_session_factory",
    "init_db",
]
