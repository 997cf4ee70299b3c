"""
tests/conftest.py
Shared fixtures: a throwaway SQLite database per test, fakeredis, a recording
broadcaster, one account per role and an HTTP client wired to all of them.
"""

import os

# Must be set before config.settings is imported
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")

from typing import Any, Dict, List, Tuple

import fakeredis
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from config.database import Base, get_db, get_session_factory
from config.redis_client import get_redis
from main import app
from services.booking.workflow import BookingWorkflow
from services.realtime.broadcaster import Broadcaster, Scope, get_broadcaster
from shared.middleware.auth import RequestContext
from shared.models.models import Booking, User, UserRole
from shared.schemas.schemas import BookingCreateRequest
from shared.utils.security import create_access_token, hash_password

TEST_PASSWORD = "password123"
# Hash once; bcrypt is deliberately slow
TEST_PASSWORD_HASH = hash_password(TEST_PASSWORD)


# ── Helpers ───────────────────────────────────────────────────

def auth_headers(user: User) -> Dict[str, str]:
    token, _ = create_access_token(
        user_id=str(user.id),
        role=UserRole(user.role).value,
        email=user.email,
        name=user.name,
    )
    return {"Authorization": f"Bearer {token}"}


def ctx_for(user: User) -> RequestContext:
    """RequestContext for calling the workflow directly."""
    return RequestContext(
        user_id=user.id,
        role=UserRole(user.role),
        email=user.email,
        name=user.name,
        jti="test-jti",
    )


def booking_payload(**overrides) -> Dict[str, Any]:
    payload = {
        "pickupAddress": "12 Temple Street, Kandy",
        "pickupLocation": {"lat": 7.2936, "lng": 80.6413},
        "destinationAddress": "Kandy General Hospital",
        "destinationLocation": {"lat": 7.2906, "lng": 80.6337},
        "medicalCondition": "Chest pain",
        "priority": "high",
    }
    payload.update(overrides)
    return payload


async def make_user(
    db: AsyncSession,
    role: UserRole,
    email: str,
    name: str,
    **fields,
) -> User:
    user = User(
        name=name,
        email=email,
        phone=fields.pop("phone", "+94770000000"),
        password_hash=TEST_PASSWORD_HASH,
        role=role,
        available=fields.pop("available", True if role == UserRole.DRIVER else None),
        **fields,
    )
    db.add(user)
    await db.commit()
    return user


class RecordingBroadcaster(Broadcaster):
    """Broadcaster stub that records every publish call."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, Dict[str, Any], Scope]] = []

    async def publish(self, event: str, payload: Dict[str, Any], scope: Scope) -> int:
        self.events.append((event, payload, scope))
        return 1

    def named(self, event: str) -> List[Tuple[str, Dict[str, Any], Scope]]:
        return [e for e in self.events if e[0] == event]

    def clear(self) -> None:
        self.events.clear()


# ── Infrastructure ────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine(tmp_path):
    # File-backed so separate sessions really are separate connections
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        poolclass=NullPool,
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def redis():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def broadcaster() -> RecordingBroadcaster:
    return RecordingBroadcaster()


@pytest_asyncio.fixture
async def client(session_factory, redis, broadcaster):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = lambda: redis
    app.dependency_overrides[get_broadcaster] = lambda: broadcaster
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ── Accounts ──────────────────────────────────────────────────

@pytest_asyncio.fixture
async def patient(db) -> User:
    return await make_user(db, UserRole.PATIENT, "patient@example.com", "Nimal Perera")


@pytest_asyncio.fixture
async def other_patient(db) -> User:
    return await make_user(db, UserRole.PATIENT, "other.patient@example.com", "Kamala Silva")


@pytest_asyncio.fixture
async def driver(db) -> User:
    return await make_user(
        db,
        UserRole.DRIVER,
        "driver@example.com",
        "Sunil Fernando",
        location_lat=7.2950,
        location_lng=80.6350,
    )


@pytest_asyncio.fixture
async def second_driver(db) -> User:
    return await make_user(db, UserRole.DRIVER, "driver2@example.com", "Ruwan Jayasinghe")


@pytest_asyncio.fixture
async def admin_user(db) -> User:
    return await make_user(db, UserRole.ADMIN, "admin@example.com", "Dispatch Admin", verified=True)


# ── Bookings ──────────────────────────────────────────────────

@pytest_asyncio.fixture
async def pending_booking(db, patient, admin_user) -> Booking:
    """A pending booking created through the workflow, with one admin notified."""
    workflow = BookingWorkflow(db, RecordingBroadcaster())
    return await workflow.create_booking(
        ctx_for(patient),
        BookingCreateRequest.model_validate(booking_payload()),
    )
