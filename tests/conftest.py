"""Shared test fixtures — async DB, client, auth helpers, factories.

Uses SQLite + aiosqlite for fast isolated tests without PostgreSQL.
"""

from __future__ import annotations

import os

# Set test JWT_SECRET before any other import touches pydantic-settings
os.environ.setdefault("JWT_SECRET", "test-secret-for-ci-do-not-use-in-production")

import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from leaveflow.common.constants import UserRole
from leaveflow.config import settings
from leaveflow.database import Base, get_db, import_models
from leaveflow.main import create_app

import_models()

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
    try:
        # Clear the in-memory storage used by slowapi/limits
        if hasattr(limiter, "_storage"):
            limiter._storage.reset()
    except Exception:
        pass
    yield


@pytest.fixture(autouse=True)
def _clear_working_day_cache():
    from leaveflow.calendar.service import WorkingDayCalculator

    WorkingDayCalculator.cache_clear()
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

def _make_employee(
    *,
    email: Optional[str] = None,
    full_name: str = "Test User",
    role: UserRole = UserRole.employee,
    manager_id: Optional[uuid.UUID] = None,
    hire_date: date = date(2020, 1, 15),
    country_code: str = "US",
) -> dict:
    return dict(
        id=uuid.uuid4(),
        email=email or f"user-{uuid.uuid4().hex[:8]}@leaveflow.test",
        full_name=full_name,
        role=role,
        manager_id=manager_id,
        hire_date=hire_date,
        country_code=country_code,
        is_active=True,
        created_at=datetime.now(timezone.utc),
        updated_at=datetime.now(timezone.utc),
    )


def _make_leave_type(
    *,
    code: str = "AL",
    name: str = "Annual Leave",
    default_allocation_days: Decimal = Decimal("20"),
    max_carryover_days: Decimal = Decimal("5"),
    accrual_rules: Optional[dict] = None,
    requires_approval: bool = True,
    max_days_per_request: Optional[int] = None,
) -> dict:
    return dict(
        id=uuid.uuid4(),
        code=code,
        name=name,
        default_allocation_days=default_allocation_days,
        max_carryover_days=max_carryover_days,
        accrual_rules=accrual_rules or {},
        requires_approval=requires_approval,
        max_days_per_request=max_days_per_request,
        is_active=True,
        created_at=datetime.now(timezone.utc),
        updated_at=datetime.now(timezone.utc),
    )


async def seed_employee(db: AsyncSession, **kwargs):
    from leaveflow.core_hr.models import Employee

    emp = Employee(**_make_employee(**kwargs))
    db.add(emp)
    await db.flush()
    return emp


async def seed_leave_type(db: AsyncSession, **kwargs):
    from leaveflow.leave.models import LeaveType

    lt = LeaveType(**_make_leave_type(**kwargs))
    db.add(lt)
    await db.flush()
    return lt


async def seed_balance(
    db: AsyncSession,
    employee_id: uuid.UUID,
    leave_type_id: uuid.UUID,
    *,
    year: int,
    allocated: Decimal = Decimal("10"),
    used: Decimal = Decimal("0"),
    pending: Decimal = Decimal("0"),
    carryover: Decimal = Decimal("0"),
):
    from leaveflow.leave.models import LeaveBalance

    bal = LeaveBalance(
        id=uuid.uuid4(),
        employee_id=employee_id,
        leave_type_id=leave_type_id,
        year=year,
        allocated_days=allocated,
        used_days=used,
        pending_days=pending,
        carryover_days=carryover,
    )
    db.add(bal)
    await db.flush()
    return bal


@pytest.fixture
async def manager(db):
    return await seed_employee(db, full_name="Morgan Manager", role=UserRole.manager)


@pytest.fixture
async def employee(db, manager):
    return await seed_employee(db, full_name="Erin Employee", manager_id=manager.id)


@pytest.fixture
async def hr_user(db):
    return await seed_employee(db, full_name="Harper HR", role=UserRole.hr)


@pytest.fixture
async def annual_leave(db):
    return await seed_leave_type(db)


# ── Auth helpers ────────────────────────────────────────────────────

def create_access_token(
    employee_id: uuid.UUID,
    expired: bool = False,
) -> str:
    """Generate a bearer token the way the identity provider would."""
    if expired:
        exp = datetime.now(timezone.utc) - timedelta(hours=1)
    else:
        exp = datetime.now(timezone.utc) + timedelta(hours=1)
    payload = {"sub": str(employee_id), "exp": exp}
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def auth_headers_for(employee) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(employee.id)}"}
