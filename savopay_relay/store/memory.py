"""
In-process store implementations.

Used in tests and for single-process deployments without a database.
A single asyncio.Lock serializes mutations; nothing awaits while it is held.
"""
import asyncio
import copy
from datetime import date, timedelta
from typing import Any, Dict, FrozenSet, List, Mapping, Optional

import structlog

from .base import (
    DEFAULT_MAX_LIMIT,
    IMMUTABLE_ONCE_SET,
    PAYMENT_FIELDS,
    PaymentNotFoundError,
    PaymentRecord,
    PaymentStore,
    ReportingStore,
    WebhookEventLog,
    clamp_limit,
    clean_fields,
    coerce_confirmed,
    utcnow,
)

logger = structlog.get_logger(__name__)

_UPSERT_FIELDS = frozenset(PAYMENT_FIELDS) - {"updated_at"}


def _merge(row: Dict[str, Any], fields: Mapping[str, Any]) -> None:
    for key, value in fields.items():
        if key in IMMUTABLE_ONCE_SET and row.get(key) is not None:
            continue
        if key == "confirmed":
            value = 1 if row.get("confirmed") == 1 else coerce_confirmed(value)
        row[key] = value


class InMemoryPaymentStore(PaymentStore, ReportingStore):
    """Keyed map of payment rows guarded by one lock."""

    def __init__(
        self,
        terminal_states: FrozenSet[str] = frozenset({"confirmed", "cancelled", "expired"}),
        max_limit: int = DEFAULT_MAX_LIMIT,
        default_limit: int = 200,
    ):
        self._rows: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()
        self.terminal_states = frozenset(state.lower() for state in terminal_states)
        self.max_limit = max_limit
        self.default_limit = default_limit

    async def upsert_on_create(self, record: Mapping[str, Any]) -> None:
        payment_id = record.get("payment_id")
        if not payment_id:
            raise ValueError("payment_id is required")

        fields = clean_fields(record, _UPSERT_FIELDS)
        now = utcnow()

        async with self._lock:
            row = self._rows.get(payment_id)
            if row is None:
                row = {name: None for name in PAYMENT_FIELDS}
                fields.setdefault("created_at", now)
                if "confirmed" in fields:
                    fields["confirmed"] = coerce_confirmed(fields["confirmed"])
                else:
                    fields["confirmed"] = 0
                row.update(fields)
                self._rows[payment_id] = row
            else:
                fields.pop("created_at", None)
                fields.pop("payment_id", None)
                _merge(row, fields)
            row["updated_at"] = now

        logger.debug("memory_store_upsert", payment_id=payment_id)

    async def apply_partial_update(self, payment_id: str, fields: Mapping[str, Any]) -> None:
        changes = clean_fields(fields)
        if not changes:
            return

        async with self._lock:
            row = self._rows.get(payment_id)
            if row is None:
                raise PaymentNotFoundError(payment_id)
            _merge(row, changes)
            row["updated_at"] = utcnow()

    async def get(self, payment_id: str) -> Optional[PaymentRecord]:
        row = self._rows.get(payment_id)
        return copy.deepcopy(row) if row is not None else None

    async def list(self, limit: Optional[int] = None) -> List[PaymentRecord]:
        limit = clamp_limit(limit, self.default_limit, self.max_limit)
        rows = sorted(
            self._rows.values(),
            key=lambda row: row["updated_at"] or row["created_at"],
            reverse=True,
        )
        return [copy.deepcopy(row) for row in rows[:limit]]

    def _is_pending(self, row: Mapping[str, Any]) -> bool:
        if row.get("confirmed") == 1:
            return False
        state = row.get("state")
        return state is None or state.lower() not in self.terminal_states

    async def list_stale_pending(
        self, min_age_seconds: int, limit: Optional[int] = None
    ) -> List[PaymentRecord]:
        limit = clamp_limit(limit, self.default_limit, self.max_limit)
        cutoff = utcnow() - timedelta(seconds=min_age_seconds)
        rows = [
            row
            for row in self._rows.values()
            if self._is_pending(row) and (row["created_at"] or row["updated_at"]) < cutoff
        ]
        rows.sort(key=lambda row: row["created_at"])
        return [copy.deepcopy(row) for row in rows[:limit]]

    async def daily_summary(self, day: date) -> Dict[str, int]:
        rows = [row for row in self._rows.values() if row["created_at"].date() == day]
        return {
            "confirmed_count": sum(1 for row in rows if row.get("confirmed") == 1),
            "total_count": len(rows),
        }


class InMemoryWebhookEventLog(WebhookEventLog):
    """Append-only list of webhook events."""

    def __init__(self, max_limit: int = DEFAULT_MAX_LIMIT, default_limit: int = 100):
        self._events: List[Dict[str, Any]] = []
        self._lock = asyncio.Lock()
        self.max_limit = max_limit
        self.default_limit = default_limit

    async def append(
        self,
        payment_id: Optional[str],
        status: str,
        error: Optional[str] = None,
        payload: Any = None,
    ) -> None:
        if payload is not None and not isinstance(payload, dict):
            payload = {"raw": str(payload)}

        async with self._lock:
            self._events.append(
                {
                    "id": len(self._events) + 1,
                    "payment_id": payment_id,
                    "status": status,
                    "error": error,
                    "payload": copy.deepcopy(payload),
                    "received_at": utcnow(),
                }
            )

    async def list_recent(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        limit = clamp_limit(limit, self.default_limit, self.max_limit)
        return [copy.deepcopy(event) for event in reversed(self._events[-limit:])]
