"""
Contract tests for the payment store and webhook audit log.

Every test runs against both the in-memory and the SQL (SQLite) backend.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from savopay_relay.database.connection import build_session_factory
from savopay_relay.database.models import Base
from savopay_relay.store import (
    InMemoryPaymentStore,
    PaymentNotFoundError,
    SqlPaymentStore,
    clamp_limit,
)


def _naive(value: datetime) -> datetime:
    """SQLite hands datetimes back without tzinfo; compare in naive UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _payment(payment_id: str = "pay-1", **fields: Any) -> dict:
    record = {
        "payment_id": payment_id,
        "currency": "USDT",
        "address": "T111",
        "invoice_amount": "25.00",
        "invoice_currency": "USD",
        "state": "created",
    }
    record.update(fields)
    return record


class TestPaymentStore:
    """Write rules shared by every PaymentStore implementation."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_upsert_creates_record_with_defaults(self, payment_store: Any) -> None:
        """A new record starts unconfirmed with both timestamps set."""
        await payment_store.upsert_on_create(_payment())

        record = await payment_store.get("pay-1")

        assert record is not None
        assert record["payment_id"] == "pay-1"
        assert record["currency"] == "USDT"
        assert record["state"] == "created"
        assert record["confirmed"] == 0
        assert record["created_at"] is not None
        assert record["updated_at"] is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_unknown_returns_none(self, payment_store: Any) -> None:
        assert await payment_store.get("missing") is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_upsert_is_idempotent(self, payment_store: Any) -> None:
        """Applying the same upsert twice leaves the same record (updated_at aside)."""
        record = _payment(state="pending", crypto_amount="10.5", confirmed=0)

        await payment_store.upsert_on_create(record)
        first = await payment_store.get("pay-1")
        await payment_store.upsert_on_create(record)
        second = await payment_store.get("pay-1")

        first.pop("updated_at")
        second.pop("updated_at")
        assert first == second
        assert len(await payment_store.list()) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_created_at_keeps_first_write(self, payment_store: Any) -> None:
        """Later upserts never move created_at."""
        original = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        await payment_store.upsert_on_create(_payment(created_at=original))

        await payment_store.upsert_on_create(
            _payment(created_at=datetime(2025, 6, 1, tzinfo=timezone.utc), state="pending")
        )
        await payment_store.apply_partial_update("pay-1", {"state": "confirmed"})

        record = await payment_store.get("pay-1")
        assert _naive(record["created_at"]) == _naive(original)
        assert record["state"] == "confirmed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_confirmed_is_monotonic_on_upsert(self, payment_store: Any) -> None:
        await payment_store.upsert_on_create(_payment(confirmed=1, state="confirmed"))
        await payment_store.upsert_on_create(_payment(confirmed=0, state="pending"))

        record = await payment_store.get("pay-1")
        assert record["confirmed"] == 1
        assert record["state"] == "pending"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_confirmed_is_monotonic_on_partial_update(self, payment_store: Any) -> None:
        await payment_store.upsert_on_create(_payment())
        await payment_store.apply_partial_update("pay-1", {"confirmed": 1})
        await payment_store.apply_partial_update("pay-1", {"confirmed": 0})
        await payment_store.apply_partial_update("pay-1", {"confirmed": "false"})

        record = await payment_store.get("pay-1")
        assert record["confirmed"] == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_partial_update_does_not_clobber(self, payment_store: Any) -> None:
        """Absent and None fields leave stored values alone."""
        await payment_store.upsert_on_create(_payment(crypto_amount="10.5", print_string="RECEIPT"))

        await payment_store.apply_partial_update(
            "pay-1", {"state": "pending", "crypto_amount": None}
        )

        record = await payment_store.get("pay-1")
        assert record["crypto_amount"] == "10.5"
        assert record["print_string"] == "RECEIPT"
        assert record["state"] == "pending"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_upsert_does_not_clobber_with_none(self, payment_store: Any) -> None:
        await payment_store.upsert_on_create(_payment(crypto_amount="10.5"))
        await payment_store.upsert_on_create({"payment_id": "pay-1", "crypto_amount": None})

        record = await payment_store.get("pay-1")
        assert record["crypto_amount"] == "10.5"
        assert record["address"] == "T111"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_identity_fields_are_set_once(self, payment_store: Any) -> None:
        """Address and invoice terms are only filled while still empty."""
        await payment_store.upsert_on_create({"payment_id": "pay-1", "currency": "USDT"})
        await payment_store.apply_partial_update("pay-1", {"address": "T111"})
        await payment_store.apply_partial_update("pay-1", {"address": "T999"})
        await payment_store.upsert_on_create({"payment_id": "pay-1", "invoice_amount": "25.00"})
        await payment_store.upsert_on_create({"payment_id": "pay-1", "invoice_amount": "99.00"})

        record = await payment_store.get("pay-1")
        assert record["address"] == "T111"
        assert record["invoice_amount"] == "25.00"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_partial_update_refreshes_updated_at(self, payment_store: Any) -> None:
        await payment_store.upsert_on_create(_payment())
        before = (await payment_store.get("pay-1"))["updated_at"]

        await asyncio.sleep(0.01)
        await payment_store.apply_partial_update("pay-1", {"state": "pending"})

        after = (await payment_store.get("pay-1"))["updated_at"]
        assert _naive(after) > _naive(before)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_partial_update_unknown_raises_not_found(self, payment_store: Any) -> None:
        with pytest.raises(PaymentNotFoundError) as exc_info:
            await payment_store.apply_partial_update("missing", {"state": "pending"})

        assert exc_info.value.payment_id == "missing"
        assert await payment_store.get("missing") is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_partial_update_is_noop(self, payment_store: Any) -> None:
        """An update with nothing to apply succeeds even for an unknown id."""
        await payment_store.apply_partial_update("missing", {})
        await payment_store.apply_partial_update("missing", {"state": None, "unknown": "x"})

        assert await payment_store.get("missing") is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_orders_by_recent_activity(self, payment_store: Any) -> None:
        for payment_id in ("pay-1", "pay-2", "pay-3"):
            await payment_store.upsert_on_create(_payment(payment_id))
            await asyncio.sleep(0.01)

        await payment_store.apply_partial_update("pay-1", {"state": "pending"})

        rows = await payment_store.list()
        assert [row["payment_id"] for row in rows] == ["pay-1", "pay-3", "pay-2"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_clamps_limit(self, payment_store: Any) -> None:
        for index in range(3):
            await payment_store.upsert_on_create(_payment(f"pay-{index}"))

        assert len(await payment_store.list(limit=2)) == 2
        assert len(await payment_store.list(limit=0)) == 1
        assert len(await payment_store.list(limit=-5)) == 1
        assert len(await payment_store.list(limit=100_000)) == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_stale_pending_selects_non_terminal(self, payment_store: Any) -> None:
        """Only old, unconfirmed, non-terminal records are swept."""
        old = datetime.now(timezone.utc) - timedelta(minutes=10)

        await payment_store.upsert_on_create(_payment("created", created_at=old))
        await payment_store.upsert_on_create(_payment("pending", state="pending", created_at=old))
        await payment_store.upsert_on_create(
            {"payment_id": "no-state", "currency": "BTC", "address": "bc1q", "created_at": old}
        )
        await payment_store.upsert_on_create(
            _payment("terminal", state="confirmed", created_at=old)
        )
        await payment_store.upsert_on_create(
            _payment("cancelled", state="Cancelled", created_at=old)
        )
        await payment_store.upsert_on_create(
            _payment("confirmed-flag", state="pending", confirmed=1, created_at=old)
        )
        await payment_store.upsert_on_create(_payment("fresh"))

        rows = await payment_store.list_stale_pending(min_age_seconds=60, limit=25)

        assert {row["payment_id"] for row in rows} == {"created", "pending", "no-state"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_stale_pending_oldest_created_first(self, payment_store: Any) -> None:
        """A recent touch does not push an older payment behind newer ones."""
        now = datetime.now(timezone.utc)
        await payment_store.upsert_on_create(_payment("old", created_at=now - timedelta(hours=2)))
        await payment_store.upsert_on_create(
            _payment("newer", created_at=now - timedelta(hours=1))
        )
        await payment_store.apply_partial_update("old", {"status": "waiting"})

        rows = await payment_store.list_stale_pending(min_age_seconds=60, limit=2)

        assert [row["payment_id"] for row in rows] == ["old", "newer"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_stale_pending_ties_keep_insertion_order(self, payment_store: Any) -> None:
        old = datetime.now(timezone.utc) - timedelta(minutes=10)
        await payment_store.upsert_on_create(_payment("pay-a", created_at=old))
        await payment_store.upsert_on_create(_payment("pay-b", created_at=old))
        await payment_store.apply_partial_update("pay-a", {"status": "waiting"})

        rows = await payment_store.list_stale_pending(min_age_seconds=60, limit=1)

        assert [row["payment_id"] for row in rows] == ["pay-a"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_daily_summary_counts_confirmed(self, payment_store: Any) -> None:
        await payment_store.upsert_on_create(_payment("pay-1", confirmed=1, state="confirmed"))
        await payment_store.upsert_on_create(_payment("pay-2"))
        await payment_store.upsert_on_create(
            _payment("pay-3", created_at=datetime(2020, 1, 1, tzinfo=timezone.utc))
        )

        summary = await payment_store.daily_summary(datetime.now(timezone.utc).date())

        assert summary == {"confirmed_count": 1, "total_count": 2}


class TestWebhookEventLog:
    """Audit log contract."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_recent_newest_first(self, event_log: Any) -> None:
        await event_log.append("pay-1", "bad_request", error="Missing fields", payload={"a": 1})
        await event_log.append("pay-1", "updated", payload={"payment_id": "pay-1"})
        await event_log.append(None, "invalid_token", error="Invalid token", payload=None)

        events = await event_log.list_recent()

        assert [event["status"] for event in events] == ["invalid_token", "updated", "bad_request"]
        assert events[0]["payment_id"] is None
        assert events[1]["payload"] == {"payment_id": "pay-1"}
        assert events[2]["error"] == "Missing fields"
        assert all(event["received_at"] is not None for event in events)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_recent_clamps_limit(self, event_log: Any) -> None:
        for index in range(5):
            await event_log.append(f"pay-{index}", "updated")

        recent = await event_log.list_recent(limit=2)

        assert [event["payment_id"] for event in recent] == ["pay-4", "pay-3"]
        assert len(await event_log.list_recent(limit=0)) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicates_are_kept(self, event_log: Any) -> None:
        await event_log.append("pay-1", "updated", payload={"payment_id": "pay-1"})
        await event_log.append("pay-1", "updated", payload={"payment_id": "pay-1"})

        assert len(await event_log.list_recent()) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_non_object_payload_is_wrapped(self, event_log: Any) -> None:
        await event_log.append(None, "bad_request", payload=["payment_id", "abc123"])
        await event_log.append(None, "bad_request", payload=None)

        events = await event_log.list_recent()

        assert events[0]["payload"] is None
        assert events[1]["payload"] == {"raw": "['payment_id', 'abc123']"}


class TestClampLimit:
    @pytest.mark.unit
    def test_defaults_and_bounds(self) -> None:
        assert clamp_limit(None, 200) == 200
        assert clamp_limit(0, 200) == 1
        assert clamp_limit(10_000, 200) == 500
        assert clamp_limit(10_000, 200, maximum=50) == 50
        assert clamp_limit(42, 200) == 42


class TestConcurrentUpdates:
    """Racing writers against the in-memory store."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_racing_upserts_keep_invariants(self) -> None:
        """Concurrent upserts never lose the confirmation or create duplicates."""
        store = InMemoryPaymentStore()
        first_created = datetime(2024, 1, 1, tzinfo=timezone.utc)
        await store.upsert_on_create(_payment(created_at=first_created))

        updates = [
            store.upsert_on_create(
                _payment(
                    confirmed=1 if index == 7 else 0,
                    state=f"state-{index}",
                    created_at=datetime.now(timezone.utc),
                )
            )
            for index in range(50)
        ]
        updates += [
            store.apply_partial_update("pay-1", {"confirmed": 0, "status": f"s-{index}"})
            for index in range(50)
        ]
        await asyncio.gather(*updates)

        record = await store.get("pay-1")
        assert record["confirmed"] == 1
        assert record["created_at"] == first_created
        assert len(await store.list()) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_get_returns_a_copy(self) -> None:
        store = InMemoryPaymentStore()
        await store.upsert_on_create(_payment(raw_json={"state": "created"}))

        record = await store.get("pay-1")
        record["state"] = "tampered"
        record["raw_json"]["state"] = "tampered"

        stored = await store.get("pay-1")
        assert stored["state"] == "created"
        assert stored["raw_json"] == {"state": "created"}


class TestConcurrentSqlUpdates:
    """Racing writers against the SQL store on a file-backed database."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_racing_upserts_keep_invariants(self, tmp_path: Any) -> None:
        """Each write is one statement, so separate connections cannot undo a confirmation."""
        engine = create_async_engine(
            f"sqlite+aiosqlite:///{tmp_path / 'race.db'}", connect_args={"timeout": 30}
        )
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        store = SqlPaymentStore(build_session_factory(engine))

        try:
            first_created = datetime(2024, 1, 1, tzinfo=timezone.utc)
            await store.upsert_on_create(_payment(created_at=first_created))

            updates = [
                store.upsert_on_create(
                    _payment(
                        confirmed=1 if index == 7 else 0,
                        state=f"state-{index}",
                        created_at=datetime.now(timezone.utc),
                    )
                )
                for index in range(20)
            ]
            updates += [
                store.apply_partial_update("pay-1", {"confirmed": 0, "status": f"s-{index}"})
                for index in range(20)
            ]
            await asyncio.gather(*updates)

            record = await store.get("pay-1")
            assert record["confirmed"] == 1
            assert _naive(record["created_at"]) == _naive(first_created)
            assert len(await store.list()) == 1
        finally:
            await engine.dispose()


class TestPaymentSchema:
    @pytest.mark.unit
    def test_sweep_index_matches_stale_pending_filter(self) -> None:
        """The partial index carries the same confirmed predicate the sweep query uses."""
        table = Base.metadata.tables["payments"]
        index = next(i for i in table.indexes if i.name == "payments_unconfirmed_created_idx")

        assert [column.name for column in index.columns] == ["created_at", "id"]
        assert str(index.dialect_options["postgresql"]["where"]) == "confirmed <> 1"
        assert not table.c.confirmed.nullable
        assert all(i.name != "payments_pending_idx" for i in table.indexes)
