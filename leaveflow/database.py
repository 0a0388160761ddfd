"""Async SQLAlchemy engine, session scope and model registry."""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from leaveflow.config import settings

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.ENVIRONMENT == "development",
    pool_pre_ping=True,
)

# Ledger rows are re-read explicitly after guarded UPDATEs, so objects can
# outlive a commit without a refresh.
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


def import_models() -> None:
    """Register every mapped table on ``Base.metadata``.

    Scripts call this before touching the database so relationship targets
    resolve regardless of which module was imported first.
    """
    import leaveflow.calendar.models  # noqa: F401
    import leaveflow.common.audit  # noqa: F401
    import leaveflow.core_hr.models  # noqa: F401
    import leaveflow.leave.models  # noqa: F401
    import leaveflow.notifications.models  # noqa: F401


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """One unit of work: commit when the block exits cleanly, roll back otherwise.

    A status change and its ledger adjustment run inside the same scope, so
    they land together or not at all.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency: one request is one ``session_scope``."""
    async with session_scope() as session:
        yield session
