"""
Pytest configuration and fixtures.
"""
from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from savopay_relay.config import Settings
from savopay_relay.core import ReconciliationDriver
from savopay_relay.database.connection import build_session_factory
from savopay_relay.database.models import Base
from savopay_relay.integrations import ProviderError
from savopay_relay.store import (
    InMemoryPaymentStore,
    InMemoryWebhookEventLog,
    SqlPaymentStore,
    SqlWebhookEventLog,
)

WEBHOOK_TOKEN = "s3cret-token"
ADMIN_USER = "admin"
ADMIN_PASS = "admin-pass"


class FakeForumPay:
    """
    In-process stand-in for ForumPayClient.

    ``responses`` maps payment_id to the CheckPayment body to return, or to
    an exception to raise.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.responses: Dict[str, Any] = {}
        self.calls: List[Tuple[str, Optional[str], Optional[str]]] = []
        self.start_calls: List[Dict[str, Any]] = []
        self.start_response: Any = {
            "payment_id": "pay-new-1",
            "address": "TXaddress1",
            "amount": "25.000000",
            "print_string": None,
        }
        self.closed = False

    async def check_payment(self, payment_id: str, currency: str, address: str) -> Any:
        self.calls.append((payment_id, currency, address))
        response = self.responses.get(payment_id, {"state": "waiting", "confirmed": False})
        if isinstance(response, Exception):
            raise response
        return response

    async def start_payment(self, **kwargs: Any) -> Any:
        self.start_calls.append(kwargs)
        if isinstance(self.start_response, Exception):
            raise self.start_response
        return self.start_response

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        webhook_token=WEBHOOK_TOKEN,
        admin_user=ADMIN_USER,
        admin_pass=ADMIN_PASS,
        store_backend="memory",
        forumpay_base_url="https://forumpay.test",
        forumpay_pay_user="pos-user",
        forumpay_pay_secret="pos-secret",
        forumpay_pos_id="savopay-pos-test",
        pending_min_age_seconds=60,
        sweep_batch_size=25,
        disable_auto_recheck=True,
        app_name="savopay-relay-test",
        app_env="test",
        log_level="DEBUG",
    )


@pytest.fixture
def memory_store(test_settings: Settings) -> InMemoryPaymentStore:
    return InMemoryPaymentStore(terminal_states=test_settings.get_terminal_states())


@pytest.fixture
def memory_events() -> InMemoryWebhookEventLog:
    return InMemoryWebhookEventLog()


@pytest.fixture
def fake_provider(test_settings: Settings) -> FakeForumPay:
    return FakeForumPay(test_settings)


@pytest.fixture
def driver(
    memory_store: InMemoryPaymentStore,
    memory_events: InMemoryWebhookEventLog,
    fake_provider: FakeForumPay,
    test_settings: Settings,
) -> ReconciliationDriver:
    return ReconciliationDriver(memory_store, memory_events, fake_provider, test_settings)


@pytest_asyncio.fixture
async def sql_session_factory() -> AsyncGenerator[async_sessionmaker, Any]:
    """SQLite database shared by every session of one test."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield build_session_factory(engine)

    await engine.dispose()


@pytest.fixture
def sql_store(sql_session_factory: async_sessionmaker) -> SqlPaymentStore:
    return SqlPaymentStore(sql_session_factory)


@pytest.fixture
def sql_events(sql_session_factory: async_sessionmaker) -> SqlWebhookEventLog:
    return SqlWebhookEventLog(sql_session_factory)


@pytest_asyncio.fixture(params=["memory", "sql"])
async def backend(
    request: pytest.FixtureRequest, test_settings: Settings
) -> AsyncGenerator[Tuple[Any, Any], Any]:
    """Store and audit log pair, once per implementation."""
    if request.param == "memory":
        yield (
            InMemoryPaymentStore(terminal_states=test_settings.get_terminal_states()),
            InMemoryWebhookEventLog(),
        )
        return

    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = build_session_factory(engine)

    yield (
        SqlPaymentStore(session_factory, terminal_states=test_settings.get_terminal_states()),
        SqlWebhookEventLog(session_factory),
    )

    await engine.dispose()


@pytest.fixture
def payment_store(backend: Tuple[Any, Any]) -> Any:
    return backend[0]


@pytest.fixture
def event_log(backend: Tuple[Any, Any]) -> Any:
    return backend[1]


@pytest_asyncio.fixture
async def client(
    test_settings: Settings,
    memory_store: InMemoryPaymentStore,
    memory_events: InMemoryWebhookEventLog,
    fake_provider: FakeForumPay,
) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client against an app wired to in-memory stores."""
    from savopay_relay.api.main import create_app

    app = create_app(
        settings=test_settings,
        store=memory_store,
        events=memory_events,
        provider=fake_provider,
    )
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def admin_auth() -> Tuple[str, str]:
    return (ADMIN_USER, ADMIN_PASS)


@pytest.fixture
def provider_failure() -> ProviderError:
    return ProviderError("check_payment failed: 502", status_code=502, body={"raw": "Bad Gateway"})
