"""Repository factory to abstract DB backend (SQLite vs Postgres)."""
from __future__ import annotations

from typing import Any
import aiosqlite

from pbsync.db.repositories.hierarchy import SqliteHierarchyRepository
from pbsync.db.repositories.sync_runs import SqliteSyncRunRepository


def get_hierarchy_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteHierarchyRepository(db)
    from pbsync.db.repositories.postgres.hierarchy import PostgresHierarchyRepository
    return PostgresHierarchyRepository(db)


def get_sync_run_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteSyncRunRepository(db)
    from pbsync.db.repositories.postgres.sync_runs import PostgresSyncRunRepository
    return PostgresSyncRunRepository(db)
