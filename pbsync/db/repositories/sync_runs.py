"""SQLite implementation of SyncRunRepository."""
from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any

import aiosqlite

from pbsync.db.connection import write_lock
from pbsync.db.repositories.hierarchy import _parse_json

RUN_STATUSES = ("in_progress", "completed", "failed")
COUNT_COLUMNS = {
    "products": "products_count",
    "initiatives": "initiatives_count",
    "components": "components_count",
    "features": "features_count",
    "relationships": "relationships_count",
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _finish_values(counts: dict[str, int] | None) -> list[int]:
    counts = counts or {}
    return [int(counts.get(key, 0) or 0) for key in COUNT_COLUMNS]


def _check_final_status(status: str) -> None:
    if status not in ("completed", "failed"):
        raise ValueError(f"A sync run can only finish as completed or failed, not {status!r}")


def row_to_run(row: Any) -> dict:
    data = dict(row)
    data["parameters"] = _parse_json(data.pop("parameters_json", None), {})
    data["stats"] = _parse_json(data.pop("stats_json", None), {})
    return data


class SqliteSyncRunRepository:
    """SQLite-backed sync run history."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db
        self._write_lock = write_lock(db)

    async def create(self, workspace_id: str, parameters: dict | None = None) -> str:
        run_id = str(uuid.uuid4())
        async with self._write_lock:
            await self.db.execute(
                """INSERT INTO sync_runs (id, workspace_id, status, started_at, parameters_json)
                   VALUES (?, ?, 'in_progress', ?, ?)""",
                (run_id, workspace_id, _now(), json.dumps(parameters or {}, sort_keys=True, default=str)),
            )
            await self.db.commit()
        return run_id

    async def finish(
        self,
        run_id: str,
        status: str,
        counts: dict[str, int] | None = None,
        error: str | None = None,
        stats: dict | None = None,
    ) -> bool:
        """Move an in-progress run to its final status. Returns False if it already finished."""
        _check_final_status(status)
        assignments = ", ".join(f"{column} = ?" for column in COUNT_COLUMNS.values())
        async with self._write_lock:
            cursor = await self.db.execute(
                f"""UPDATE sync_runs
                    SET status = ?, completed_at = ?, {assignments},
                        error_message = ?, stats_json = ?
                    WHERE id = ? AND status = 'in_progress'""",
                (
                    status,
                    _now(),
                    *_finish_values(counts),
                    error,
                    json.dumps(stats or {}, sort_keys=True, default=str),
                    run_id,
                ),
            )
            updated = cursor.rowcount
            await cursor.close()
            await self.db.commit()
        return updated > 0

    async def get(self, run_id: str) -> dict | None:
        async with self.db.execute("SELECT * FROM sync_runs WHERE id = ?", (run_id,)) as cur:
            row = await cur.fetchone()
            return row_to_run(row) if row else None

    async def list(self, workspace_id: str | None = None, limit: int = 20) -> list[dict]:
        if workspace_id:
            async with self.db.execute(
                "SELECT * FROM sync_runs WHERE workspace_id = ? ORDER BY started_at DESC LIMIT ?",
                (workspace_id, limit),
            ) as cur:
                return [row_to_run(r) for r in await cur.fetchall()]
        async with self.db.execute(
            "SELECT * FROM sync_runs ORDER BY started_at DESC LIMIT ?", (limit,)
        ) as cur:
            return [row_to_run(r) for r in await cur.fetchall()]
