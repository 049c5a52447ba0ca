"""PostgreSQL implementation of HierarchyRepository."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

import asyncpg

from pbsync.db.repositories.hierarchy import (
    decode_row,
    encode_fields,
    encode_value,
    entity_columns,
    link_columns,
    storage_column,
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _placeholders(count: int, start: int = 1) -> str:
    return ", ".join(f"${i}" for i in range(start, start + count))


def _affected(status: str) -> int:
    # asyncpg returns the command tag, e.g. "INSERT 0 1".
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


class PostgresHierarchyRepository:
    """PostgreSQL-backed storage for products, initiatives, components and features."""

    def __init__(self, db: asyncpg.Pool):
        self.db = db

    def _insert_statement(self, entity: str) -> tuple[str, tuple[str, ...]]:
        columns = entity_columns(entity)
        stored = ", ".join(storage_column(c) for c in columns)
        sql = (
            f"INSERT INTO {entity} (id, workspace_id, external_id, {stored}, created_at, updated_at) "
            f"VALUES ({_placeholders(len(columns) + 5)})"
        )
        return sql, columns

    @staticmethod
    def _insert_params(row: dict[str, Any], columns: tuple[str, ...], internal_id: str, now: str) -> tuple:
        return (
            internal_id,
            row["workspace_id"],
            row["external_id"],
            *(encode_value(c, row.get(c)) for c in columns),
            now,
            now,
        )

    async def find_by_external_ids(
        self,
        entity: str,
        workspace_id: str,
        external_ids: list[str],
    ) -> dict[str, dict[str, Any]]:
        entity_columns(entity)
        if not external_ids:
            return {}
        rows = await self.db.fetch(
            f"SELECT * FROM {entity} WHERE workspace_id = $1 AND external_id = ANY($2::text[])",
            workspace_id,
            list(external_ids),
        )
        return {row["external_id"]: decode_row(row) for row in rows}

    async def insert_many(self, entity: str, rows: list[dict[str, Any]]) -> dict[str, str]:
        if not rows:
            return {}
        sql, columns = self._insert_statement(entity)
        now = _now()
        ids: dict[str, str] = {}
        records = []
        for row in rows:
            internal_id = str(uuid.uuid4())
            ids[row["external_id"]] = internal_id
            records.append(self._insert_params(row, columns, internal_id, now))
        async with self.db.acquire() as conn:
            async with conn.transaction():
                await conn.executemany(sql, records)
        return ids

    async def insert_one(self, entity: str, row: dict[str, Any]) -> str:
        sql, columns = self._insert_statement(entity)
        internal_id = str(uuid.uuid4())
        await self.db.execute(sql, *self._insert_params(row, columns, internal_id, _now()))
        return internal_id

    async def update_fields(self, entity: str, internal_id: str, fields: dict[str, Any]) -> None:
        pairs = encode_fields(entity, fields)
        if not pairs:
            return
        assignments = ", ".join(f"{column} = ${i}" for i, (column, _) in enumerate(pairs, start=1))
        n = len(pairs)
        await self.db.execute(
            f"UPDATE {entity} SET {assignments}, updated_at = ${n + 1} WHERE id = ${n + 2}",
            *(value for _, value in pairs),
            _now(),
            internal_id,
        )

    async def insert_links(self, table: str, rows: list[dict[str, Any]]) -> int:
        columns = link_columns(table)
        if not rows:
            return 0
        sql = (
            f"INSERT INTO {table} ({', '.join(columns)}, created_at) "
            f"VALUES ({_placeholders(len(columns) + 1)}) ON CONFLICT DO NOTHING"
        )
        now = _now()
        inserted = 0
        async with self.db.acquire() as conn:
            async with conn.transaction():
                for row in rows:
                    status = await conn.execute(sql, *(row.get(c) for c in columns), now)
                    inserted += _affected(status)
        return inserted

    async def get_by_external_id(self, entity: str, workspace_id: str, external_id: str) -> dict | None:
        entity_columns(entity)
        row = await self.db.fetchrow(
            f"SELECT * FROM {entity} WHERE workspace_id = $1 AND external_id = $2",
            workspace_id,
            external_id,
        )
        return decode_row(row) if row else None

    async def list_entities(self, entity: str, workspace_id: str, limit: int | None = None) -> list[dict]:
        entity_columns(entity)
        query = f"SELECT * FROM {entity} WHERE workspace_id = $1 ORDER BY name, external_id"
        if limit is not None:
            rows = await self.db.fetch(query + " LIMIT $2", workspace_id, limit)
        else:
            rows = await self.db.fetch(query, workspace_id)
        return [decode_row(r) for r in rows]

    async def list_links(self, table: str, workspace_id: str) -> list[dict]:
        link_columns(table)
        rows = await self.db.fetch(f"SELECT * FROM {table} WHERE workspace_id = $1", workspace_id)
        return [dict(r) for r in rows]
