"""Async SQLAlchemy 2.0 access to the fact store.

The service only reads. Every query runs on a pooled ``AsyncConnection``
whose ``schema_translate_map`` binds the logical schema names used by the
mappings to the physical tenant and shared schemas.
"""

from collections.abc import AsyncGenerator, AsyncIterator, Mapping
from contextlib import asynccontextmanager
from functools import lru_cache

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from app.core.config import get_settings


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for the fact store mappings."""

    pass


@lru_cache
def get_engine() -> AsyncEngine:
    """Create the process-wide async engine from settings.

    ``statement_timeout`` is set per connection so a runaway report cannot
    hold a pooled connection indefinitely.
    """
    settings = get_settings()
    engine: AsyncEngine = create_async_engine(
        settings.database_url,
        echo=settings.debug,
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        connect_args={
            "server_settings": {"statement_timeout": str(settings.db_statement_timeout_ms)},
        },
    )
    return engine


async def dispose_engine() -> None:
    """Close pooled connections (called on shutdown)."""
    if get_engine.cache_info().currsize:
        await get_engine().dispose()
        get_engine.cache_clear()


@asynccontextmanager
async def read_connection(
    engine: AsyncEngine,
    schema_map: Mapping[str, str] | None = None,
) -> AsyncIterator[AsyncConnection]:
    """Borrow a connection with logical schemas translated.

    Args:
        engine: Engine to borrow from.
        schema_map: Logical -> physical schema names (None for no translation).

    Yields:
        Connection returned to the pool (transaction rolled back) on exit.
    """
    async with engine.connect() as conn:
        if schema_map:
            conn = await conn.execution_options(schema_translate_map=dict(schema_map))
        yield conn


async def get_connection() -> AsyncGenerator[AsyncConnection, None]:
    """Dependency yielding a plain read connection.

    Yields:
        AsyncConnection: Connection without schema translation.
    """
    async with read_connection(get_engine()) as conn:
        yield conn
