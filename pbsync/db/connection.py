"""Database connection factory.

Provides singleton async connection to SQLite (default) with WAL mode.
Backend selection via PBSYNC_DB_BACKEND env var.
"""
from __future__ import annotations

import asyncio
import logging
import weakref
from typing import Union, Any

import aiosqlite
import asyncpg

from pbsync import config

logger = logging.getLogger("pbsync.db")

# Type alias for DB connection/pool
DbConnection = Union[aiosqlite.Connection, Any]  # Any to support asyncpg.Pool

_connection: DbConnection | None = None

# One writer at a time per SQLite connection: a commit or rollback covers
# everything pending on the connection, not just the caller's statements.
_write_locks: weakref.WeakKeyDictionary = weakref.WeakKeyDictionary()


async def get_connection() -> DbConnection:
    """Return the singleton database connection/pool, creating it if needed."""
    global _connection
    if _connection is not None:
        return _connection

    if config.DB_BACKEND == "postgres":
        logger.info("Connecting to PostgreSQL")
        _connection = await asyncpg.create_pool(config.DATABASE_URL)
        return _connection

    config.DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    _connection = await open_sqlite(str(config.DB_PATH))
    logger.info(f"Database connection established: {config.DB_PATH}")
    return _connection


async def open_sqlite(path: str) -> aiosqlite.Connection:
    conn = await aiosqlite.connect(path)
    conn.row_factory = aiosqlite.Row
    # Enable WAL mode for better concurrent read performance
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA foreign_keys=ON")
    await conn.execute("PRAGMA busy_timeout=5000")
    return conn


async def close_connection() -> None:
    """Close the database connection."""
    global _connection
    if _connection is not None:
        await _connection.close()  # asyncpg Pool has close() too
        _connection = None
        logger.info("Database connection closed")


def write_lock(db: aiosqlite.Connection) -> asyncio.Lock:
    """Return the lock that serializes write transactions on ``db``."""
    lock = _write_locks.get(db)
    if lock is None:
        lock = _write_locks[db] = asyncio.Lock()
    return lock
