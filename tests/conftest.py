"""
tests/conftest.py
Shared fixtures: a fresh SQLite schema per test, fake Redis, an ASGI client,
and one account per role.
"""

import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_rahaseva.db"
os.environ["APP_ENV"] = "test"
os.environ["JWT_SECRET_KEY"] = "test-secret-key"
os.environ["GOOGLE_CLIENT_ID"] = "rahaseva-test.apps.googleusercontent.com"

from decimal import Decimal

import fakeredis
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from config.database import AsyncSessionLocal, Base, engine, get_db
from config.redis_client import get_redis
from main import app
from services.provider.router import index_provider
from shared.models.models import PriceUnit, ServiceProvider, ServiceType, User, UserRole
from shared.utils.security import create_access_token, hash_password

TEST_PASSWORD = "password123"


def auth_headers(user: User) -> dict:
    token, _ = create_access_token(str(user.id), user.role.value, user.email)
    return {"Authorization": f"Bearer {token}"}


async def make_user(db, email: str, role: UserRole = UserRole.USER, **kwargs) -> User:
    user = User(
        name=kwargs.pop("name", email.split("@")[0].title()),
        email=email,
        password_hash=hash_password(TEST_PASSWORD),
        role=role,
        **kwargs,
    )
    db.add(user)
    await db.commit()
    return user


async def make_provider(db, owner: User, geo=None, **kwargs) -> ServiceProvider:
    """Add a provider; pass the fake Redis as geo to make it findable by nearby search."""
    fields = {
        "business_name": "Quick Fix Plumbing",
        "service_type": ServiceType.PLUMBER,
        "description": "Leaks, taps and bathroom fittings",
        "base_price": Decimal("500"),
        "price_unit": PriceUnit.HOUR,
        "address": "Banjara Hills, Hyderabad",
        "latitude": 17.4156,
        "longitude": 78.4347,
        "experience_years": 6,
        "contact_phone": "9876543210",
        "is_verified": True,
        "is_active": True,
    }
    fields.update(kwargs)
    provider = ServiceProvider(user_id=owner.id, **fields)
    db.add(provider)
    await db.commit()
    if geo is not None:
        await index_provider(geo, provider)
    return provider


# ── Database & Client ─────────────────────────────────────────

@pytest_asyncio.fixture
async def db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with AsyncSessionLocal() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def fake_server():
    return fakeredis.FakeServer()


@pytest_asyncio.fixture
async def fake_redis(fake_server):
    client = fakeredis.FakeAsyncRedis(server=fake_server, decode_responses=True)
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def client(db, fake_redis):
    async def _get_test_db():
        try:
            yield db
        except Exception:
            await db.rollback()
            raise

    app.dependency_overrides[get_db] = _get_test_db
    app.dependency_overrides[get_redis] = lambda: fake_redis

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ── Accounts ──────────────────────────────────────────────────

@pytest_asyncio.fixture
async def user(db) -> User:
    return await make_user(db, "asha@example.com", name="Asha Rao")


@pytest_asyncio.fixture
async def helper(db) -> User:
    return await make_user(db, "ravi@example.com", UserRole.HELPER, name="Ravi Kumar")


@pytest_asyncio.fixture
async def provider(db, helper, fake_redis) -> ServiceProvider:
    return await make_provider(db, helper, geo=fake_redis)


@pytest_asyncio.fixture
async def admin(db) -> User:
    return await make_user(db, "admin@example.com", UserRole.ADMIN, name="Platform Admin")
