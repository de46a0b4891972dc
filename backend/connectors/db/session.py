"""Async engine, session factory and the request-scoped session dependency."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from connectors.core.config import settings

# Applied to every new SQLite connection
_SQLITE_PRAGMAS = (
    "journal_mode=WAL",
    "synchronous=NORMAL",
    "busy_timeout=30000",
    "foreign_keys=ON",
)


def get_database_url() -> str:
    """Configured URL, or a SQLite file under ``config_path``."""
    if settings.database_url:
        return settings.database_url

    directory = settings.config_path
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError:
        # Unwritable /config outside a container
        directory = Path("./config")
        directory.mkdir(parents=True, exist_ok=True)
    return f"sqlite+aiosqlite:///{directory / 'connectors.db'}"


def _create_engine(url: str) -> AsyncEngine:
    sqlite = url.startswith("sqlite")
    created = create_async_engine(
        url,
        echo=settings.debug,
        connect_args={"timeout": 30} if sqlite else {},
        pool_pre_ping=True,
    )
    if sqlite:

        @event.listens_for(created.sync_engine, "connect")
        def _apply_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            for pragma in _SQLITE_PRAGMAS:
                cursor.execute(f"PRAGMA {pragma}")
            cursor.close()

    return created


engine = _create_engine(get_database_url())

async_session_maker = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one session per request, committed on success."""
    async with async_session_maker() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        await session.commit()
