"""Shared test fixtures — async DB, client, auth helpers, factories.

Reusable across all test modules (working days, ledger, workflow, sweeps, API).
Uses SQLite + aiosqlite for fast isolated tests without PostgreSQL.
"""

from __future__ import annotations

import os

# Set test JWT_SECRET before any other import touches pydantic-settings
os.environ.setdefault("JWT_SECRET", "test-secret-for-ci-do-not-use-in-production")

import uuid
from datetime import date, datetime, timedelta, timezone
from typing import AsyncGenerator, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from leaveflow.common.constants import LeaveType, UserRole
from leaveflow.config import settings
from leaveflow.database import Base, get_db
from leaveflow.main import create_app

# Import ALL model modules so every table is on Base.metadata
import leaveflow.auth.models  # noqa: F401
import leaveflow.common.audit  # noqa: F401
import leaveflow.leave.models  # noqa: F401
import leaveflow.notifications.models  # noqa: F401

from leaveflow.auth.models import User
from leaveflow.leave.models import Holiday, LeaveBalance

# ── SQLite compat: compile PG-specific types to TEXT/CHAR ───────────

from sqlalchemy.dialects.postgresql import JSONB, UUID as PG_UUID
from sqlalchemy.ext.compiler import compiles


@compiles(JSONB, "sqlite")
def _jsonb_sqlite(element, compiler, **kw):
    return "TEXT"


@compiles(PG_UUID, "sqlite")
def _uuid_sqlite(element, compiler, **kw):
    return "CHAR(36)"


# ── Test database (SQLite in-memory) ────────────────────────────────

TEST_DATABASE_URL = "sqlite+aiosqlite://"

engine = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


# Register PG-compatible functions for SQLite
@event.listens_for(engine.sync_engine, "connect")
def _register_sqlite_functions(dbapi_conn, connection_record):
    """Register NOW() and gen_random_uuid() as SQLite custom functions."""
    dbapi_conn.create_function(
        "NOW", 0, lambda: datetime.now(timezone.utc).isoformat(),
    )
    dbapi_conn.create_function(
        "gen_random_uuid", 0, lambda: str(uuid.uuid4()),
    )

TestSessionFactory = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False,
)


@pytest.fixture(autouse=True)
async def _setup_db():
    """Create all tables before each test, drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture(autouse=True)
def _reset_rate_limiter():
    """Reset rate limiter storage between tests to prevent cross-test interference."""
    from leaveflow.common.rate_limit import limiter

    limiter.reset()
    yield


async def _override_get_db() -> AsyncGenerator[AsyncSession, None]:
    async with TestSessionFactory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


# ── FastAPI test client ─────────────────────────────────────────────

@pytest.fixture
async def app():
    """Create a fresh app instance with DB dependency overridden."""
    application = create_app()
    application.dependency_overrides[get_db] = _override_get_db
    yield application
    application.dependency_overrides.clear()


@pytest.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client wired to the test app."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


# ── Database session (for direct DB operations in tests) ────────────

@pytest.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    async with TestSessionFactory() as session:
        yield session
        await session.commit()


# ── Model factories ─────────────────────────────────────────────────

def _make_user(
    *,
    email: Optional[str] = None,
    full_name: str = "Test User",
    role: UserRole = UserRole.employee,
    department: Optional[str] = "ENG",
) -> dict:
    return dict(
        id=uuid.uuid4(),
        email=email or f"{role.value}.{uuid.uuid4().hex[:6]}@leaveflow.test",
        full_name=full_name,
        role=role,
        department=department,
        is_active=True,
    )


async def _seed_user(
    db: AsyncSession,
    role: UserRole = UserRole.employee,
    *,
    department: Optional[str] = "ENG",
    full_name: Optional[str] = None,
) -> User:
    user = User(**_make_user(
        role=role,
        department=department,
        full_name=full_name or role.value.replace("_", " ").title(),
    ))
    db.add(user)
    await db.flush()
    return user


async def _seed_balance(
    db: AsyncSession,
    user_id: uuid.UUID,
    leave_type: LeaveType,
    *,
    year: int = 2026,
    opening: int = 0,
    accrued: int = 0,
    used: int = 0,
) -> LeaveBalance:
    bal = LeaveBalance(
        id=uuid.uuid4(),
        user_id=user_id,
        leave_type=leave_type,
        year=year,
        opening=opening,
        accrued=accrued,
        used=used,
        closing=opening + accrued - used,
    )
    db.add(bal)
    await db.flush()
    return bal


async def _seed_holiday(
    db: AsyncSession,
    day: date,
    *,
    name: str = "Public Holiday",
    is_optional: bool = False,
) -> Holiday:
    holiday = Holiday(id=uuid.uuid4(), date=day, name=name, is_optional=is_optional)
    db.add(holiday)
    await db.flush()
    return holiday


# ── Auth helpers ────────────────────────────────────────────────────

def create_access_token(
    user_id: uuid.UUID,
    expired: bool = False,
) -> str:
    """Generate a JWT access token for testing."""
    if expired:
        exp = datetime.now(timezone.utc) - timedelta(hours=1)
    else:
        exp = datetime.now(timezone.utc) + timedelta(hours=1)
    payload = {"sub": str(user_id), "type": "access", "exp": exp}
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}
