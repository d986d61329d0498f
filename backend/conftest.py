import os
import time
import uuid

import pytest
import pytest_asyncio

# Tests run against a local SQLite file, no PostgreSQL needed.
# Must be set BEFORE database.py / main.py are imported.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test_lessonguard.db")
# Rate limiting off: every test request shares one client IP.
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

# Secrets are read at module level by config.py
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key-0123456789")
# PyJWT ≥ 2.9 requires HMAC keys ≥ 32 bytes for HS256
os.environ.setdefault("AUTH_JWT_SECRET", "test-auth-jwt-secret-for-hs256-0123456789")
os.environ.setdefault("BUNNY_STREAM_LIBRARY_ID", "123456")
os.environ.setdefault("BUNNY_STREAM_TOKEN_KEY", "bunny-token-key-0123456789")
os.environ.setdefault("BUNNY_STREAM_HOSTNAME", "vz-test.b-cdn.net")
os.environ.setdefault("DODO_WEBHOOK_SECRET", "whsec-test")

import fakeredis
import jwt
import redis_service as _redis_service

from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool
from database import Base, DATABASE_URL
from main import app
from dependencies import get_db
import event_log as _event_log
import models

# NullPool: no connection caching; each call gets a fresh connection, so a
# connection opened on one test's event loop is never reused on the next.
test_engine = create_async_engine(DATABASE_URL, poolclass=NullPool)
TestSessionLocal = sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


async def _get_test_db():
    """Drop-in replacement for get_db that uses the test engine."""
    async with TestSessionLocal() as session:
        yield session


# Override FastAPI's get_db dependency for ALL tests
app.dependency_overrides[get_db] = _get_test_db

# event_log writes through its own module-level SessionLocal (not get_db), so
# it bypasses the override above; point it at the test engine as well.
_event_log.SessionLocal = TestSessionLocal


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
    """
    Replace the module-level Redis singleton with an in-memory FakeAsyncRedis
    before every test, with the circuit breaker closed.
    """
    r = fakeredis.FakeAsyncRedis(decode_responses=True)
    _redis_service._redis = r
    _redis_service._circuit.record_success()
    yield r
    await r.aclose()
    _redis_service._redis = None
    _redis_service._circuit.record_success()


@pytest_asyncio.fixture(scope="function")
async def db_session():
    """Recreate all tables fresh before every test."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    async with TestSessionLocal() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture(scope="function")
async def admin_client():
    """HTTP client pre-loaded with the test admin key header."""
    transport = ASGITransport(app=app)
    headers = {"X-Admin-Key": os.environ["ADMIN_API_KEY"]}
    async with AsyncClient(transport=transport, base_url="http://test", headers=headers) as ac:
        yield ac


@pytest.fixture
def make_token():
    """Mint an identity-provider access token for *account_id*.

    Every call yields a distinct token (jti), like a fresh sign-in.
    """
    def _make(account_id: str, expires_in: int = 3600, audience: str = "authenticated", secret: str | None = None) -> str:
        now = int(time.time())
        claims = {
            "sub": account_id,
            "aud": audience,
            "iat": now,
            "exp": now + expires_in,
            "jti": str(uuid.uuid4()),
        }
        return jwt.encode(claims, secret or os.environ["AUTH_JWT_SECRET"], algorithm="HS256")
    return _make


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers():
    return bearer


@pytest_asyncio.fixture
async def catalog(db_session):
    """One course (creator-owned) with one module and one lesson with a video."""
    ids = {
        "creator": "c0ffee00-1111-4222-8333-444455556666",
        "student": "a1b2c3d4-e5f6-4711-8899-aabbccddeeff",
        "course": "course-" + uuid.uuid4().hex[:8],
        "module": "module-" + uuid.uuid4().hex[:8],
        "lesson": "lesson-" + uuid.uuid4().hex[:8],
        "video": "3f1c9a2e-7b4d-4e8a-9c11-2a5b6d7e8f90",
    }
    db_session.add(models.Course(id=ids["course"], owner_id=ids["creator"], title="Secure Streaming 101"))
    db_session.add(models.CourseModule(id=ids["module"], course_id=ids["course"], title="Basics", position=1))
    db_session.add(models.Lesson(id=ids["lesson"], module_id=ids["module"], title="Intro", video_id=ids["video"]))
    await db_session.commit()
    return ids
