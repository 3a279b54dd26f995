"""
Database Connection Manager
===========================

Creates async engines for the target and state databases.

SQLite does not run DDL inside the transaction SQLAlchemy opens unless
pysqlite's implicit transaction handling is switched off, so every
SQLite engine created here issues its own BEGIN. That makes a group of
ALTER statements all-or-nothing on SQLite as it is on PostgreSQL.
"""

from pathlib import Path
from typing import Optional

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from dbretire.db.models import Base

# Global session maker for the state database
_async_session_maker: Optional[async_sessionmaker[AsyncSession]] = None
_engine: Optional[AsyncEngine] = None


def create_engine_for(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine, enabling transactional DDL for SQLite."""
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite" and parsed.database and parsed.database != ":memory:":
        Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)

    engine = create_async_engine(url, echo=echo)

    if engine.dialect.name == "sqlite":
        @event.listens_for(engine.sync_engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine.sync_engine, "begin")
        def _emit_begin(conn):
            conn.exec_driver_sql("BEGIN")

    return engine


async def init_state_db(url: str) -> async_sessionmaker[AsyncSession]:
    """
    Initialize the state database connection and create tables if they
    don't exist.
    """
    global _async_session_maker, _engine

    if _engine is not None:
        await _engine.dispose()

    _engine = create_engine_for(url)

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    _async_session_maker = async_sessionmaker(_engine, expire_on_commit=False)
    return _async_session_maker


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Get the configured session maker."""
    if _async_session_maker is None:
        raise RuntimeError("State database not initialized. Call init_state_db() first.")
    return _async_session_maker


async def close_state_db() -> None:
    """Dispose the state database engine."""
    global _async_session_maker, _engine
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _async_session_maker = None
