from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from chaingate.core.config import settings

# Override settings for tests
settings.app_env = "development"
settings.provider_timeout_seconds = 5.0
settings.chain_timeout_seconds = 10.0
settings.provider_max_retries = 0

import chaingate.models  # noqa: E402,F401
from chaingate.core.dependencies import get_provider_registry  # noqa: E402
from chaingate.db.base import Base  # noqa: E402
from chaingate.db.postgres import get_db  # noqa: E402
from chaingate.gateway.providers import ProviderRegistry  # noqa: E402
from chaingate.gateway.rate_limiter import TieredRateLimiter, build_tier_policies  # noqa: E402
from chaingate.main import app  # noqa: E402
from tests.stubs import build_stub_registry  # noqa: E402


@pytest.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Fresh SQLite database per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def stub_registry() -> ProviderRegistry:
    return build_stub_registry()


@pytest.fixture(autouse=True)
def fresh_rate_limiter():
    """Every test starts with empty rate-limit windows (development limits)."""
    app.state.rate_limiter = TieredRateLimiter(build_tier_policies("development"))
    yield app.state.rate_limiter


@pytest.fixture
async def client(session_factory, stub_registry) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_provider_registry] = lambda: stub_registry

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
async def registered_user(client: AsyncClient) -> dict:
    response = await client.post(
        "/api/users/register",
        json={"username": "alice_01", "email": "Alice@Example.com", "password": "Secret1!"},
    )
    assert response.status_code == 201
    return response.json()["user"]
