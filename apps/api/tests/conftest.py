from decimal import Decimal
from typing import Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base, get_db
from main import app
from routers import deps
from services.calls import apply_call_status
from services.call_events import InMemoryCallEventFeed
from services.notifications import InMemoryNotificationSink
from services.purchases import record_purchase
from services.session_token import create_payments_token, create_session_token


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    deps._local_counters.clear()
    yield
    deps._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "ledger.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker

    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def sink():
    return InMemoryNotificationSink()


@pytest.fixture
def fund(db):
    """Top up a tenant through the purchase path."""

    async def _fund(user_id: str, credits: int, reference: Optional[str] = None):
        return await record_purchase(
            user_id,
            db,
            package_id="test",
            package_name="Test Credits",
            credits=Decimal(credits),
            price=Decimal("0"),
            payment_reference=reference or f"seed:{user_id}:{credits}",
        )

    return _fund


@pytest.fixture
def seed_call(db):
    """Create or update a call record as the call subsystem would."""

    async def _seed_call(
        user_id: str,
        call_id: str,
        duration_seconds: Optional[int] = 60,
        status: str = "completed",
        feed=None,
    ):
        return await apply_call_status(
            user_id,
            db,
            call_id=call_id,
            status=status,
            duration_seconds=duration_seconds,
            feed=feed,
        )

    return _seed_call


@pytest_asyncio.fixture
async def client(session_maker, sink):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    feed = InMemoryCallEventFeed()
    app.dependency_overrides[get_db] = override_get_db
    app.state.call_feed = feed
    app.state.notification_sink = sink
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as api_client:
        yield api_client

    app.dependency_overrides.pop(get_db, None)
    app.state.call_feed = None
    app.state.notification_sink = None
    await feed.close()


@pytest.fixture
def auth_headers():
    def _headers(user_id: str) -> dict:
        token = create_session_token(user_id)["token"]
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def payments_headers():
    token = create_payments_token("payments-webhook")["token"]
    return {"Authorization": f"Bearer {token}"}
