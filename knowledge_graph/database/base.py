"""Declarative base, async engine and session factory."""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from knowledge_graph.core.config import DatabaseSettings, settings


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


def create_engine_from_settings(db_settings: DatabaseSettings) -> AsyncEngine:
    """Create the async engine for the configured database.

    Pool sizing and the asyncpg statement cache switch only apply to
    PostgreSQL; SQLite URLs get SQLAlchemy's defaults.
    """
    if db_settings.url.startswith("sqlite"):
        return create_async_engine(db_settings.url, echo=db_settings.echo, future=True)

    return create_async_engine(
        db_settings.url,
        pool_size=db_settings.pool_size,
        max_overflow=db_settings.max_overflow,
        echo=db_settings.echo,
        future=True,
        # Disable prepared statement cache for PgBouncer compatibility
        connect_args={"statement_cache_size": 0},
    )


engine = create_engine_from_settings(settings.database)

async_session_maker = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)
