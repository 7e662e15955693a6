"""
Pytest configuration and fixtures.
"""

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from backend.app.core.config import Settings
from backend.app.core.database import Base
from backend.app.core.resilience import RetryPolicy
from backend.app.core.security import Role, create_access_token

# Import all models to register them with Base.metadata
from backend.app.models.cloud_action_orm import CloudActionORM, CloudActionLogORM, OperationType
from backend.app.models.platform_credential_orm import PlatformCredentialORM

from backend.app.services.action_runner import ActionRunner
from backend.app.services.action_store import ActionStore
from backend.app.services.credentials import CredentialResolver
from backend.app.services.orchestrator import Orchestrator, build_orchestrator
from backend.app.services.platform_adapter import MockPlatformAdapter
from backend.app.services.step_executor import StepExecutor

TENANT_A = "tenant-a"
TENANT_B = "tenant-b"
APP_ID = "orders-app"


class FakeClock:
    """Injectable clock; tests move time forward explicitly."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings() -> Settings:
    """Defaults only; a local .env must not leak into tests."""
    return Settings(_env_file=None)


@pytest.fixture
async def engine(tmp_path):
    """
    File-backed SQLite per test. Runners and the API open their own sessions
    concurrently, so a single shared in-memory connection is not enough.
    """
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'actions.db'}")
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    """Returns the session factory for testing."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def platform() -> MockPlatformAdapter:
    return MockPlatformAdapter()


@pytest.fixture
async def credential_id(session_factory) -> str:
    async with session_factory() as session:
        row = PlatformCredentialORM(tenant_id=TENANT_A, username="ops@example.com", api_key="key-a")
        session.add(row)
        await session.commit()
        return row.id


@pytest.fixture
async def credential_id_b(session_factory) -> str:
    async with session_factory() as session:
        row = PlatformCredentialORM(tenant_id=TENANT_B, username="ops-b@example.com", pat="pat-b")
        session.add(row)
        await session.commit()
        return row.id


@pytest.fixture
def store(session_factory, clock) -> ActionStore:
    return ActionStore(session_factory, clock=clock)


@pytest.fixture
def executor(platform, session_factory, clock) -> StepExecutor:
    return StepExecutor(platform, CredentialResolver(session_factory), clock=clock)


@pytest.fixture
def runner(store, executor, settings, clock) -> ActionRunner:
    return ActionRunner(
        store,
        executor,
        RetryPolicy.from_settings(settings),
        stale_after_seconds=settings.stale_after_seconds,
        clock=clock,
    )


@pytest.fixture
def orchestrator(settings, session_factory, platform, clock) -> Orchestrator:
    return build_orchestrator(settings, session_factory=session_factory, adapter=platform, clock=clock)


@pytest.fixture
def make_action(store, credential_id):
    """Factory for scheduled actions owned by tenant A."""

    async def _make(operation_type=OperationType.START, environment_name="acceptance", **kwargs) -> CloudActionORM:
        kwargs.setdefault("tenant_id", TENANT_A)
        kwargs.setdefault("app_id", APP_ID)
        kwargs.setdefault("credential_id", credential_id)
        return await store.create(operation_type=operation_type, environment_name=environment_name, **kwargs)

    return _make


@pytest.fixture
def run_cycles(orchestrator, store, clock, settings):
    """Run dispatch cycles one interval apart until ``done(action)`` or the cycle limit."""

    async def _run(action_id: str, done, max_cycles: int = 20) -> CloudActionORM:
        action = await store.get(action_id)
        for _ in range(max_cycles):
            if done(action):
                return action
            await orchestrator.run_cycle()
            action = await store.get(action_id)
            clock.advance(seconds=settings.dispatch_interval_seconds)
        return action

    return _run


@pytest.fixture
def auth_headers():
    """Bearer headers for a real signed token with the given role and tenant."""

    def _headers(role: str = Role.OPERATOR, tenant_id: str = TENANT_A, username: str = "operator-1") -> dict:
        token = create_access_token({"sub": username, "role": role, "tenant_id": tenant_id})
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture(scope="function")
async def client(orchestrator) -> AsyncGenerator[AsyncClient, None]:
    """
    Test client wired to the test orchestrator (and through it the test database).
    """
    from backend.app.main import app
    from backend.app.api.cloud_actions import get_orchestrator

    app.dependency_overrides[get_orchestrator] = lambda: orchestrator

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()
