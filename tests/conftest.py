"""
Pytest configuration and fixtures for testing
"""
import os
from pathlib import Path

# Settings are read at import time, so the environment must be in place
# before any application module is imported
REPO_ROOT = Path(__file__).resolve().parent.parent
APP_URL = "http://localhost:3000"
os.environ["AUTH_JWT_SECRET"] = "test-session-secret-with-enough-bytes-for-hs256"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["RATE_LIMIT_PER_MINUTE"] = "0"
os.environ["BENCHMARK_DATA_DIR"] = str(REPO_ROOT / "data")
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_dummy"
os.environ["STRIPE_PRICE_PRO"] = "price_pro_test"
os.environ["STRIPE_PRICE_PRO_PLUS"] = "price_pro_plus_test"
os.environ["APP_URL"] = APP_URL
for _key in ("OPENAI_API_KEY", "REDIS_URL", "RENDER", "ENV", "AUTH_JWKS_URL", "AUTH_ISSUER"):
    os.environ.pop(_key, None)

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from auth_utils import create_session_token  # noqa: E402
from crud.user_access import UserAccessRepository  # noqa: E402
from database import Base, get_db  # noqa: E402

# Create in-memory SQLite database for testing
TEST_DATABASE_URL = "sqlite+aiosqlite://"


def auth_headers(user_id: str, email: str = None, email_verified: bool = False) -> dict:
    """Bearer header carrying a freshly minted session token."""
    token = create_session_token(user_id, email=email, email_verified=email_verified)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
async def test_engine():
    """
    Fresh in-memory database per test.

    StaticPool keeps the single connection alive so every session in the
    test sees the same tables.
    """
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        # Import models to ensure they're registered with Base
        import database_models  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest.fixture
async def test_db(session_factory):
    """
    Fixture that provides an isolated AsyncSession for each test.
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@pytest.fixture
async def async_client(session_factory):
    """
    Async HTTP client with the test database wired into get_db.
    """
    from main import app

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    app.dependency_overrides[get_db] = override_get_db

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def seed_access(session_factory):
    """
    Factory fixture: create or update a user's access row.

    Usage:
        await seed_access("user_1", plan="pro", is_admin=False)
    """
    async def _seed(user_id: str, **fields):
        async with session_factory() as session:
            access = await UserAccessRepository(session).upsert(user_id, fields, create_fields=fields)
            await session.commit()
            return access

    return _seed


@pytest.fixture
def read_access(session_factory):
    """Factory fixture: load a user's access row in a fresh session."""
    async def _read(user_id: str):
        async with session_factory() as session:
            return await UserAccessRepository(session).get_by_user_id(user_id)

    return _read
