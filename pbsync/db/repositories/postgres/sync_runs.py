"""PostgreSQL implementation of SyncRunRepository."""
from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone

import asyncpg

from pbsync.db.repositories.sync_runs import (
    COUNT_COLUMNS,
    _check_final_status,
    _finish_values,
    row_to_run,
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class PostgresSyncRunRepository:
    """PostgreSQL-backed sync run history."""

    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def create(self, workspace_id: str, parameters: dict | None = None) -> str:
        run_id = str(uuid.uuid4())
        await self.db.execute(
            """INSERT INTO sync_runs (id, workspace_id, status, started_at, parameters_json)
               VALUES ($1, $2, 'in_progress', $3, $4)""",
            run_id,
            workspace_id,
            _now(),
            json.dumps(parameters or {}, sort_keys=True, default=str),
        )
        return run_id

    async def finish(
        self,
        run_id: str,
        status: str,
        counts: dict[str, int] | None = None,
        error: str | None = None,
        stats: dict | None = None,
    ) -> bool:
        _check_final_status(status)
        assignments = ", ".join(
            f"{column} = ${i}" for i, column in enumerate(COUNT_COLUMNS.values(), start=3)
        )
        n = 2 + len(COUNT_COLUMNS)
        result = await self.db.execute(
            f"""UPDATE sync_runs
                SET status = $1, completed_at = $2, {assignments},
                    error_message = ${n + 1}, stats_json = ${n + 2}
                WHERE id = ${n + 3} AND status = 'in_progress'""",
            status,
            _now(),
            *_finish_values(counts),
            error,
            json.dumps(stats or {}, sort_keys=True, default=str),
            run_id,
        )
        return result.endswith(" 1")

    async def get(self, run_id: str) -> dict | None:
        row = await self.db.fetchrow("SELECT * FROM sync_runs WHERE id = $1", run_id)
        return row_to_run(row) if row else None

    async def list(self, workspace_id: str | None = None, limit: int = 20) -> list[dict]:
        if workspace_id:
            rows = await self.db.fetch(
                "SELECT * FROM sync_runs WHERE workspace_id = $1 ORDER BY started_at DESC LIMIT $2",
                workspace_id,
                limit,
            )
        else:
            rows = await self.db.fetch("SELECT * FROM sync_runs ORDER BY started_at DESC LIMIT $1", limit)
        return [row_to_run(r) for r in rows]
