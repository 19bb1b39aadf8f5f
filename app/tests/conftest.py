"""
Shared fixtures: a throwaway SQLite database per test, built through the
same engine factory the application uses, and an HTTP client wired to it.
"""
import time
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from app.main import app
from app.core.database import Base, build_engine, build_session_factory, get_db
from app.core.rate_limit import limiter
from app.core.supabase_auth import AuthSession, get_current_session
from app.models.user import User
from app.models.user_subscription import UserSubscription


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(session_factory):
    """AsyncClient against the app, with get_db pointing at the test database."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    limiter.reset()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def login():
    """
    Authenticate requests as a given user.

    Usage: login("user-1", strong_auth_age=60)
    """

    def _login(user_id: str, strong_auth_age: int | None = 60, method: str = "password") -> AuthSession:
        claims = {"sub": user_id}
        if strong_auth_age is not None:
            claims["amr"] = [{"method": method, "timestamp": int(time.time()) - strong_auth_age}]
        session = AuthSession(user_id=user_id, email=f"{user_id}@example.com", claims=claims)
        app.dependency_overrides[get_current_session] = lambda: session
        return session

    return _login


@pytest.fixture
def make_user(session_factory):
    """
    Insert a user and, when keyword arguments are given, their subscription row.

    Usage: await make_user("user-1", plan_code="plus", stripe_customer_id="cus_1")
    """

    async def _make_user(user_id: str, created_at: datetime | None = None, **subscription) -> None:
        async with session_factory() as session:
            session.add(User(
                id=user_id,
                email=f"{user_id}@example.com",
                created_at=created_at or datetime(2026, 1, 10, tzinfo=timezone.utc),
            ))
            if subscription:
                subscription.setdefault("plan_interval", "month")
                subscription.setdefault("status", "active")
                subscription.setdefault("billing_state", "active")
                subscription.setdefault("cancel_at_period_end", False)
                session.add(UserSubscription(user_id=user_id, **subscription))
            await session.commit()

    return _make_user
