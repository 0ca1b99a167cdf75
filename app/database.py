"""
Database connection setup using async SQLAlchemy with PostgreSQL.

Provides the async engine and the session factory. Stores open one
short-lived session per operation, so a poll loop that runs for minutes
never holds a connection (or an open transaction) between attempts.
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from app.config import settings

engine = create_async_engine(
    settings.DATABASE_URL,
    pool_size=settings.DATABASE_POOL_SIZE,
    echo=settings.DEBUG,
)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy ORM models."""
    pass


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """FastAPI dependency returning the shared session factory."""
    return async_session


def enum_values(enum_cls) -> list[str]:
    """``values_callable`` for SAEnum: persist member values, not names."""
    return [member.value for member in enum_cls]
