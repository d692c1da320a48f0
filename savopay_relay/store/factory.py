"""Build the configured store pair."""
from typing import Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from savopay_relay.config import Settings

from .base import PaymentStore, WebhookEventLog
from .memory import InMemoryPaymentStore, InMemoryWebhookEventLog
from .sql import SqlPaymentStore, SqlWebhookEventLog


def create_stores(
    settings: Settings,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> Tuple[PaymentStore, WebhookEventLog]:
    """
    Create the payment store and webhook audit log for ``settings.store_backend``.

    Args:
        settings: Application settings
        session_factory: Optional session factory for the SQL backend

    Returns:
        Tuple[PaymentStore, WebhookEventLog]: Store and audit log
    """
    terminal_states = settings.get_terminal_states()

    if settings.store_backend == "memory":
        return (
            InMemoryPaymentStore(
                terminal_states=terminal_states,
                max_limit=settings.list_limit_max,
                default_limit=settings.list_limit_default,
            ),
            InMemoryWebhookEventLog(
                max_limit=settings.audit_limit_max,
                default_limit=settings.audit_limit_default,
            ),
        )

    return (
        SqlPaymentStore(
            session_factory,
            terminal_states=terminal_states,
            max_limit=settings.list_limit_max,
            default_limit=settings.list_limit_default,
        ),
        SqlWebhookEventLog(
            session_factory,
            max_limit=settings.audit_limit_max,
            default_limit=settings.audit_limit_default,
        ),
    )
