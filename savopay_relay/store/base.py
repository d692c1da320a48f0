"""
Payment Record Store and Event Audit Log interfaces.

Both stores are swappable: the reconciliation driver only relies on the
operations declared here. Write rules shared by every implementation:

- ``payment_id`` is the key and never changes.
- ``created_at`` keeps the value of the first successful write.
- identity and invoice terms (``IMMUTABLE_ONCE_SET``) are only filled while null.
- ``confirmed`` never goes back to 0 once stored as 1.
- ``None`` never overwrites a stored value.
- ``updated_at`` is refreshed on every mutation.
"""
from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

PaymentRecord = Dict[str, Any]

PAYMENT_FIELDS = (
    "payment_id",
    "order_id",
    "pos_id",
    "invoice_amount",
    "invoice_currency",
    "currency",
    "address",
    "amount",
    "crypto_amount",
    "status",
    "state",
    "confirmed",
    "confirmed_time",
    "amount_exchange",
    "network_processing_fee",
    "last_transaction_time",
    "invoice_date",
    "payer_id",
    "customer_email",
    "print_string",
    "raw_json",
    "created_at",
    "updated_at",
)

# Fields a partial update may touch
UPDATABLE_FIELDS = frozenset(PAYMENT_FIELDS) - {"payment_id", "created_at", "updated_at"}

IMMUTABLE_ONCE_SET = frozenset(
    {"order_id", "pos_id", "address", "invoice_amount", "invoice_currency"}
)

DEFAULT_MAX_LIMIT = 500


class StoreError(Exception):
    """Raised when the backing store is unavailable or rejects a write."""

    pass


class PaymentNotFoundError(Exception):
    """Raised when an update targets a payment_id the store does not hold."""

    def __init__(self, payment_id: str):
        super().__init__(f"Payment not found: {payment_id}")
        self.payment_id = payment_id


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def clamp_limit(limit: Optional[int], default: int, maximum: int = DEFAULT_MAX_LIMIT) -> int:
    """Clamp a caller-supplied page size to [1, maximum]."""
    if limit is None:
        limit = default
    return max(1, min(int(limit), maximum))


def clean_fields(fields: Mapping[str, Any], allowed: frozenset = UPDATABLE_FIELDS) -> Dict[str, Any]:
    """Drop unknown keys and ``None`` values so absent data never clobbers stored data."""
    return {key: value for key, value in fields.items() if key in allowed and value is not None}


def coerce_confirmed(value: Any) -> int:
    """Coerce a truthy/falsy flag (bool, int, or provider string) to 0/1."""
    if isinstance(value, str):
        return 1 if value.strip().lower() in ("1", "true", "yes", "y", "t") else 0
    return 1 if value else 0


class PaymentStore(ABC):
    """Payment Record Store: one row per payment_id."""

    @abstractmethod
    async def upsert_on_create(self, record: Mapping[str, Any]) -> None:
        """
        Insert a payment, or merge into the existing row for its payment_id.

        Args:
            record: Payment fields; must include ``payment_id``

        Raises:
            StoreError: If the store is unavailable
        """

    @abstractmethod
    async def apply_partial_update(self, payment_id: str, fields: Mapping[str, Any]) -> None:
        """
        Update only the fields present in ``fields``.

        An empty update (after dropping unknown and ``None`` values) is a no-op.

        Raises:
            PaymentNotFoundError: If no row exists for ``payment_id``
            StoreError: If the store is unavailable
        """

    @abstractmethod
    async def get(self, payment_id: str) -> Optional[PaymentRecord]:
        """Return the record, or ``None`` if unknown."""

    @abstractmethod
    async def list(self, limit: Optional[int] = None) -> List[PaymentRecord]:
        """Return records by most recent activity first, with a clamped limit."""

    @abstractmethod
    async def list_stale_pending(
        self, min_age_seconds: int, limit: Optional[int] = None
    ) -> List[PaymentRecord]:
        """
        Return non-terminal records older than ``min_age_seconds``.

        Ordered oldest ``created_at`` first.
        """


class ReportingStore(ABC):
    """Read-only aggregates for the admin reports."""

    @abstractmethod
    async def daily_summary(self, day: date) -> Dict[str, int]:
        """Return ``confirmed_count`` and ``total_count`` for payments created on ``day`` (UTC)."""


class WebhookEventLog(ABC):
    """Append-only audit trail of webhook deliveries."""

    @abstractmethod
    async def append(
        self,
        payment_id: Optional[str],
        status: str,
        error: Optional[str] = None,
        payload: Any = None,
    ) -> None:
        """Record one delivery attempt."""

    @abstractmethod
    async def list_recent(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Return the newest events first, with a clamped limit."""
