"""
SQLAlchemy-backed store implementations.

Every mutation is a single statement so the row-level atomicity of the
database is the only concurrency control:

- upsert: INSERT ... ON CONFLICT (payment_id) DO UPDATE
- partial update: UPDATE ... WHERE payment_id = :id

The write rules from ``store.base`` are expressed inside those statements
with COALESCE (first non-null wins) and CASE (confirmed stays 1).
"""
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional

import structlog
from sqlalchemy import and_, case, func, insert, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from savopay_relay.database.models import Payment, WebhookEvent

from .base import (
    DEFAULT_MAX_LIMIT,
    IMMUTABLE_ONCE_SET,
    PAYMENT_FIELDS,
    PaymentNotFoundError,
    PaymentRecord,
    PaymentStore,
    ReportingStore,
    StoreError,
    WebhookEventLog,
    clamp_limit,
    clean_fields,
    coerce_confirmed,
    utcnow,
)

logger = structlog.get_logger(__name__)

payments = Payment.__table__
webhook_events = WebhookEvent.__table__

_UPSERT_FIELDS = frozenset(PAYMENT_FIELDS) - {"updated_at"}


def _insert_for(dialect_name: str) -> Callable[..., Any]:
    """Pick the dialect insert() that supports ON CONFLICT."""
    if dialect_name == "postgresql":
        return postgresql.insert
    if dialect_name == "sqlite":
        return sqlite.insert
    raise StoreError(f"Upsert is not supported on dialect '{dialect_name}'")


def _confirmed_guard(new_value: Any) -> Any:
    """Keep confirmed at 1 once set; otherwise take the new value."""
    return case((payments.c.confirmed == 1, 1), else_=new_value)


def _set_once(column_name: str, new_value: Any) -> Any:
    return func.coalesce(payments.c[column_name], new_value)


def _activity():
    return func.coalesce(payments.c.updated_at, payments.c.created_at)


class _SqlBase:
    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            from savopay_relay.database.connection import get_session_factory

            self._session_factory = get_session_factory()
        return self._session_factory


class SqlPaymentStore(_SqlBase, PaymentStore, ReportingStore):
    """Payment Record Store on a relational database."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        terminal_states: FrozenSet[str] = frozenset({"confirmed", "cancelled", "expired"}),
        max_limit: int = DEFAULT_MAX_LIMIT,
        default_limit: int = 200,
    ):
        super().__init__(session_factory)
        self.terminal_states = frozenset(state.lower() for state in terminal_states)
        self.max_limit = max_limit
        self.default_limit = default_limit

    async def upsert_on_create(self, record: Mapping[str, Any]) -> None:
        if not record.get("payment_id"):
            raise ValueError("payment_id is required")

        values = clean_fields(record, _UPSERT_FIELDS)
        now = utcnow()
        values.setdefault("created_at", now)
        values["updated_at"] = now
        values["confirmed"] = coerce_confirmed(values.get("confirmed", 0))

        try:
            async with self._sessions()() as session:
                insert_ = _insert_for(session.get_bind().dialect.name)
                stmt = insert_(payments).values(**values)

                merge: Dict[str, Any] = {}
                for name in values:
                    if name in ("payment_id", "created_at"):
                        continue
                    if name in IMMUTABLE_ONCE_SET:
                        merge[name] = _set_once(name, stmt.excluded[name])
                    elif name == "confirmed":
                        merge[name] = _confirmed_guard(stmt.excluded.confirmed)
                    else:
                        merge[name] = stmt.excluded[name]

                stmt = stmt.on_conflict_do_update(
                    index_elements=[payments.c.payment_id], set_=merge
                )
                await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("payment_upsert_failed", payment_id=record.get("payment_id"), error=str(e))
            raise StoreError(f"Payment upsert failed: {e}") from e

    async def apply_partial_update(self, payment_id: str, fields: Mapping[str, Any]) -> None:
        changes = clean_fields(fields)
        if not changes:
            return

        values: Dict[str, Any] = {}
        for name, value in changes.items():
            if name in IMMUTABLE_ONCE_SET:
                values[name] = _set_once(name, value)
            elif name == "confirmed":
                values[name] = _confirmed_guard(coerce_confirmed(value))
            else:
                values[name] = value
        values["updated_at"] = utcnow()

        try:
            async with self._sessions()() as session:
                result = await session.execute(
                    update(payments).where(payments.c.payment_id == payment_id).values(**values)
                )
                rowcount = result.rowcount
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("payment_update_failed", payment_id=payment_id, error=str(e))
            raise StoreError(f"Payment update failed: {e}") from e

        if rowcount == 0:
            raise PaymentNotFoundError(payment_id)

    async def _fetch_all(self, stmt: Any) -> List[PaymentRecord]:
        try:
            async with self._sessions()() as session:
                result = await session.execute(stmt)
                return [dict(row) for row in result.mappings().all()]
        except SQLAlchemyError as e:
            logger.error("payment_query_failed", error=str(e))
            raise StoreError(f"Payment query failed: {e}") from e

    async def get(self, payment_id: str) -> Optional[PaymentRecord]:
        rows = await self._fetch_all(
            select(payments).where(payments.c.payment_id == payment_id).limit(1)
        )
        return rows[0] if rows else None

    async def list(self, limit: Optional[int] = None) -> List[PaymentRecord]:
        limit = clamp_limit(limit, self.default_limit, self.max_limit)
        return await self._fetch_all(
            select(payments).order_by(_activity().desc(), payments.c.id.desc()).limit(limit)
        )

    async def list_stale_pending(
        self, min_age_seconds: int, limit: Optional[int] = None
    ) -> List[PaymentRecord]:
        limit = clamp_limit(limit, self.default_limit, self.max_limit)
        cutoff = utcnow() - timedelta(seconds=min_age_seconds)
        stmt = (
            select(payments)
            .where(
                and_(
                    or_(
                        payments.c.state.is_(None),
                        func.lower(payments.c.state).not_in(sorted(self.terminal_states)),
                    ),
                    payments.c.confirmed != 1,
                    payments.c.created_at < cutoff,
                )
            )
            .order_by(payments.c.created_at.asc(), payments.c.id.asc())
            .limit(limit)
        )
        return await self._fetch_all(stmt)

    async def daily_summary(self, day: date) -> Dict[str, int]:
        start = datetime.combine(day, time.min, tzinfo=timezone.utc)
        end = start + timedelta(days=1)
        stmt = select(
            func.count().label("total_count"),
            func.coalesce(func.sum(case((payments.c.confirmed == 1, 1), else_=0)), 0).label(
                "confirmed_count"
            ),
        ).where(payments.c.created_at >= start, payments.c.created_at < end)

        try:
            async with self._sessions()() as session:
                row = (await session.execute(stmt)).one()
        except SQLAlchemyError as e:
            logger.error("daily_summary_failed", day=day.isoformat(), error=str(e))
            raise StoreError(f"Daily summary failed: {e}") from e

        return {"confirmed_count": int(row.confirmed_count), "total_count": int(row.total_count)}


class SqlWebhookEventLog(_SqlBase, WebhookEventLog):
    """Webhook audit trail on a relational database."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        max_limit: int = DEFAULT_MAX_LIMIT,
        default_limit: int = 100,
    ):
        super().__init__(session_factory)
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

        try:
            async with self._sessions()() as session:
                await session.execute(
                    insert(webhook_events).values(
                        payment_id=payment_id,
                        status=status,
                        error=error,
                        payload=payload,
                        received_at=utcnow(),
                    )
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("webhook_event_log_failed", payment_id=payment_id, error=str(e))
            raise StoreError(f"Webhook event log failed: {e}") from e

    async def list_recent(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        limit = clamp_limit(limit, self.default_limit, self.max_limit)
        stmt = (
            select(webhook_events)
            .order_by(webhook_events.c.received_at.desc(), webhook_events.c.id.desc())
            .limit(limit)
        )
        try:
            async with self._sessions()() as session:
                result = await session.execute(stmt)
                return [dict(row) for row in result.mappings().all()]
        except SQLAlchemyError as e:
            logger.error("webhook_event_list_failed", error=str(e))
            raise StoreError(f"Webhook event listing failed: {e}") from e
