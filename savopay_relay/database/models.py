"""SQLAlchemy database models for the payment relay."""
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JsonType = JSON().with_variant(JSONB(), "postgresql")

# SQLite only autoincrements INTEGER PRIMARY KEY columns
PrimaryKeyType = BigInteger().with_variant(Integer(), "sqlite")

WEBHOOK_EVENT_STATUSES = ("received", "invalid_token", "bad_request", "updated", "error")


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Payment(Base):
    """
    Payment records table.

    One row per ForumPay payment_id. Amounts are kept as the provider
    sends them (decimal strings) so nothing is lost to float rounding.
    """

    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(PrimaryKeyType, primary_key=True, autoincrement=True)
    payment_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    order_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    pos_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    invoice_amount: Mapped[str | None] = mapped_column(String(64), nullable=True)
    invoice_currency: Mapped[str | None] = mapped_column(String(16), nullable=True)

    currency: Mapped[str | None] = mapped_column(String(32), nullable=True)
    address: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount: Mapped[str | None] = mapped_column(String(64), nullable=True)
    crypto_amount: Mapped[str | None] = mapped_column(String(64), nullable=True)

    status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    state: Mapped[str | None] = mapped_column(String(64), nullable=True)
    confirmed: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    confirmed_time: Mapped[str | None] = mapped_column(String(64), nullable=True)

    amount_exchange: Mapped[str | None] = mapped_column(String(64), nullable=True)
    network_processing_fee: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_transaction_time: Mapped[str | None] = mapped_column(String(64), nullable=True)
    invoice_date: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    print_string: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_json: Mapped[Dict[str, Any] | None] = mapped_column(JsonType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint("confirmed IN (0, 1)", name="valid_confirmed_flag"),
        Index("payments_state_idx", "state"),
        Index("payments_created_at_idx", "created_at"),
        # Stale-pending sweep: unconfirmed rows scanned oldest first
        Index(
            "payments_unconfirmed_created_idx",
            "created_at",
            "id",
            postgresql_where=text("confirmed <> 1"),
            sqlite_where=text("confirmed <> 1"),
        ),
    )

    def __repr__(self) -> str:
        """String representation of Payment."""
        return (
            f"<Payment(payment_id={self.payment_id}, state={self.state}, "
            f"confirmed={self.confirmed})>"
        )


class WebhookEvent(Base):
    """
    Webhook delivery audit trail.

    One row per inbound callback attempt, whatever its outcome.
    Immutable once written; payment_id is not a foreign key.
    """

    __tablename__ = "webhook_events"

    id: Mapped[int] = mapped_column(PrimaryKeyType, primary_key=True, autoincrement=True)
    payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload: Mapped[Dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('received', 'invalid_token', 'bad_request', 'updated', 'error')",
            name="valid_webhook_status",
        ),
        Index("webhook_events_received_at_idx", "received_at"),
    )

    def __repr__(self) -> str:
        """String representation of WebhookEvent."""
        return (
            f"<WebhookEvent(id={self.id}, payment_id={self.payment_id}, "
            f"status={self.status})>"
        )
