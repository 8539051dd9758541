"""
SQLAlchemy 2.0 Database Configuration

Declarative base, column types and async engine management for the
billing ledger.
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import DateTime, String
from sqlalchemy.engine import Dialect
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from vendzz.billing.settings import Settings

# ==========================================
# SQLAlchemy 2.0 Declarative Base
# ==========================================


class Base(DeclarativeBase):
    """Base class for all database models using SQLAlchemy 2.0 declarative mapping."""

    pass


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC datetime column.

    SQLite drops tzinfo on the way back; values are re-tagged as UTC so the
    engine only ever compares aware datetimes.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime bound to a UTC column")
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


# ==========================================
# Common Mixins
# ==========================================


class TimestampMixin:
    """Adds created_at and updated_at timestamps to models."""

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=lambda: datetime.now(UTC), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
        nullable=False,
    )


class StrictTenantMixin:
    """Adds tenant_id for strict multi-tenancy (required tenant)."""

    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)


# ==========================================
# Engine Management
# ==========================================


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    """Create an async engine; pool options only apply to server databases."""
    url = settings.database.sqlalchemy_url
    kwargs: dict[str, Any] = {"echo": settings.database.echo}
    if not url.startswith("sqlite"):
        kwargs.update(
            pool_size=settings.database.pool_size,
            max_overflow=settings.database.max_overflow,
            pool_pre_ping=settings.database.pool_pre_ping,
        )
    return create_async_engine(url, **kwargs)


# ==========================================
# Database Initialization
# ==========================================


async def create_all_tables_async(engine: AsyncEngine) -> None:
    """Create all tables in the database asynchronously."""
    from vendzz.billing import tables  # noqa: F401  registers the mappings

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_all_tables_async(engine: AsyncEngine) -> None:
    """Drop all tables from the database asynchronously. Use with caution!"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


__all__ = [
    "Base",
    "StrictTenantMixin",
    "TimestampMixin",
    "UTCDateTime",
    "create_all_tables_async",
    "create_engine_from_settings",
    "drop_all_tables_async",
]
