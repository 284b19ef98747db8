"""
StockPulse Database Session Management

Async SQLAlchemy engine factory and declarative base.

PostgreSQL (asyncpg) is the production store: row locks come from
SELECT ... FOR UPDATE and the per-transaction lock_timeout.

SQLite (aiosqlite) is used for tests and local runs. It has no row locks, so
every transaction starts with BEGIN IMMEDIATE and takes the database write
lock up front; the sqlite busy timeout plays the role of the lock timeout.
"""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Declarative base for all SQLAlchemy models."""
    pass


def build_engine(database_url: str, echo: bool = False, lock_timeout_seconds: float = 5.0) -> AsyncEngine:
    """Create the async engine for the given URL with dialect-specific locking setup."""
    if database_url.startswith("sqlite"):
        engine = create_async_engine(
            database_url,
            echo=echo,
            connect_args={"timeout": lock_timeout_seconds},
        )
        _install_sqlite_write_lock(engine)
        return engine

    return create_async_engine(
        database_url,
        echo=echo,
        pool_size=20,
        max_overflow=10,
        pool_pre_ping=True,
    )


def _install_sqlite_write_lock(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        # Stop the driver from emitting its own deferred BEGIN.
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")
