"""Repository package for database access."""

from .hierarchy import SqliteHierarchyRepository
from .sync_runs import SqliteSyncRunRepository

__all__ = [
    "SqliteHierarchyRepository",
    "SqliteSyncRunRepository",
]
