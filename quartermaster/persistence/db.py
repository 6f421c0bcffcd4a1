from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from quartermaster.core.config import get_settings


WRITE_LOCK_OPTION = "quartermaster_write_lock"


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _install_sqlite_hooks(engine: AsyncEngine) -> None:
    # SQLite needs FK enforcement switched on per connection. Units opened through
    # begin_write take the write lock up front (BEGIN IMMEDIATE) so two transitions
    # serialize instead of deadlocking on a shared->reserved lock upgrade.
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _connection_record) -> None:  # type: ignore[no-untyped-def]
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn) -> None:  # type: ignore[no-untyped-def]
        if conn.get_execution_options().get(WRITE_LOCK_OPTION):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")


def build_engine(database_url: str | None = None) -> AsyncEngine:
    settings = get_settings()
    url = database_url or settings.database_url
    engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if _is_sqlite(url):
        engine_kwargs["connect_args"] = {"timeout": settings.sqlite_busy_timeout_s}
    else:
        # Configure bounded asyncpg pools for predictable latency under load.
        engine_kwargs["pool_size"] = max(1, int(settings.api_db_pool_size))
        engine_kwargs["max_overflow"] = max(0, int(settings.api_db_max_overflow))
        engine_kwargs["pool_timeout"] = 30
        engine_kwargs["pool_recycle"] = 1800
        if settings.api_db_statement_timeout_ms > 0:
            engine_kwargs["connect_args"] = {
                "server_settings": {"statement_timeout": str(int(settings.api_db_statement_timeout_ms))}
            }
    engine = create_async_engine(url, **engine_kwargs)
    if _is_sqlite(url):
        _install_sqlite_hooks(engine)
    return engine


engine = build_engine()
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


async def begin_write(session: AsyncSession) -> None:
    """Start a write unit on ``session``, holding the SQLite write lock from the start.

    Any read transaction still open on the session is rolled back first, which expires
    loaded instances. Postgres ignores the option and relies on row locks.
    """
    if session.in_transaction():
        await session.rollback()
    await session.connection(execution_options={WRITE_LOCK_OPTION: True})
