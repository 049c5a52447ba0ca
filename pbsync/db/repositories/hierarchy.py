"""SQLite implementation of HierarchyRepository.

Rows go in and come out in a logical shape: JSON-backed columns are
exposed as ``metadata`` / ``timeframe`` dicts rather than their raw
``*_json`` text. Table and column names are only ever taken from the
registries below, never from caller input.
"""
from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any

import aiosqlite

from pbsync.db.connection import write_lock

ENTITY_COLUMNS: dict[str, tuple[str, ...]] = {
    "products": ("name", "description", "status", "metadata"),
    "initiatives": (
        "name", "description", "status", "owner", "timeframe", "product_id", "metadata",
    ),
    "components": ("name", "description", "status", "product_id", "metadata"),
    "features": (
        "name", "description", "status", "target_start_date", "target_end_date",
        "owner", "component_id", "parent_id", "metadata",
    ),
}

LINK_COLUMNS: dict[str, tuple[str, ...]] = {
    "initiative_features": ("initiative_id", "feature_id", "workspace_id"),
    "component_initiatives": (
        "component_id", "initiative_id", "direct_link", "link_via_feature", "workspace_id",
    ),
}

JSON_COLUMNS: dict[str, str] = {
    "metadata": "metadata_json",
    "timeframe": "timeframe_json",
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_json(value: object, default: Any) -> Any:
    if isinstance(value, (dict, list)):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return json.loads(value)
        except ValueError:
            return default
    return default


def entity_columns(entity: str) -> tuple[str, ...]:
    try:
        return ENTITY_COLUMNS[entity]
    except KeyError:
        raise ValueError(f"Unknown entity type: {entity}") from None


def link_columns(table: str) -> tuple[str, ...]:
    try:
        return LINK_COLUMNS[table]
    except KeyError:
        raise ValueError(f"Unknown link table: {table}") from None


def storage_column(column: str) -> str:
    return JSON_COLUMNS.get(column, column)


def encode_value(column: str, value: Any) -> Any:
    if column in JSON_COLUMNS:
        if value is None:
            return None if column == "timeframe" else "{}"
        return json.dumps(value, sort_keys=True, default=str)
    return value


def encode_fields(entity: str, fields: dict[str, Any]) -> list[tuple[str, Any]]:
    """Map logical fields to ``(storage column, value)`` pairs, rejecting unknown names."""
    allowed = entity_columns(entity)
    pairs = []
    for column, value in fields.items():
        if column not in allowed:
            raise ValueError(f"Unknown column for {entity}: {column}")
        pairs.append((storage_column(column), encode_value(column, value)))
    return pairs


def decode_row(row: Any) -> dict[str, Any]:
    data = dict(row)
    if "metadata_json" in data:
        data["metadata"] = _parse_json(data.pop("metadata_json"), {})
    if "timeframe_json" in data:
        data["timeframe"] = _parse_json(data.pop("timeframe_json"), None)
    return data


class SqliteHierarchyRepository:
    """SQLite-backed storage for products, initiatives, components and features."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db
        self._write_lock = write_lock(db)

    def _insert_statement(self, entity: str) -> tuple[str, tuple[str, ...]]:
        columns = entity_columns(entity)
        stored = ", ".join(storage_column(c) for c in columns)
        placeholders = ", ".join("?" for _ in range(len(columns) + 5))
        sql = (
            f"INSERT INTO {entity} (id, workspace_id, external_id, {stored}, created_at, updated_at) "
            f"VALUES ({placeholders})"
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
        placeholders = ", ".join("?" for _ in external_ids)
        async with self.db.execute(
            f"SELECT * FROM {entity} WHERE workspace_id = ? AND external_id IN ({placeholders})",
            (workspace_id, *external_ids),
        ) as cur:
            rows = await cur.fetchall()
        return {row["external_id"]: decode_row(row) for row in rows}

    async def insert_many(self, entity: str, rows: list[dict[str, Any]]) -> dict[str, str]:
        """Insert all rows in one transaction; nothing is kept if any row fails."""
        if not rows:
            return {}
        sql, columns = self._insert_statement(entity)
        now = _now()
        ids: dict[str, str] = {}
        params = []
        for row in rows:
            internal_id = str(uuid.uuid4())
            ids[row["external_id"]] = internal_id
            params.append(self._insert_params(row, columns, internal_id, now))
        async with self._write_lock:
            try:
                await self.db.executemany(sql, params)
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise
        return ids

    async def insert_one(self, entity: str, row: dict[str, Any]) -> str:
        sql, columns = self._insert_statement(entity)
        internal_id = str(uuid.uuid4())
        async with self._write_lock:
            try:
                await self.db.execute(sql, self._insert_params(row, columns, internal_id, _now()))
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise
        return internal_id

    async def update_fields(self, entity: str, internal_id: str, fields: dict[str, Any]) -> None:
        pairs = encode_fields(entity, fields)
        if not pairs:
            return
        assignments = ", ".join(f"{column} = ?" for column, _ in pairs)
        async with self._write_lock:
            try:
                await self.db.execute(
                    f"UPDATE {entity} SET {assignments}, updated_at = ? WHERE id = ?",
                    (*(value for _, value in pairs), _now(), internal_id),
                )
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

    async def insert_links(self, table: str, rows: list[dict[str, Any]]) -> int:
        """Insert join rows, skipping ones that already exist. Returns the number inserted."""
        columns = link_columns(table)
        if not rows:
            return 0
        placeholders = ", ".join("?" for _ in range(len(columns) + 1))
        sql = f"INSERT OR IGNORE INTO {table} ({', '.join(columns)}, created_at) VALUES ({placeholders})"
        now = _now()
        inserted = 0
        async with self._write_lock:
            try:
                for row in rows:
                    cursor = await self.db.execute(sql, (*(row.get(c) for c in columns), now))
                    inserted += max(cursor.rowcount, 0)
                    await cursor.close()
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise
        return inserted

    async def get_by_external_id(self, entity: str, workspace_id: str, external_id: str) -> dict | None:
        entity_columns(entity)
        async with self.db.execute(
            f"SELECT * FROM {entity} WHERE workspace_id = ? AND external_id = ?",
            (workspace_id, external_id),
        ) as cur:
            row = await cur.fetchone()
            return decode_row(row) if row else None

    async def list_entities(self, entity: str, workspace_id: str, limit: int | None = None) -> list[dict]:
        entity_columns(entity)
        query = f"SELECT * FROM {entity} WHERE workspace_id = ? ORDER BY name, external_id"
        params: tuple = (workspace_id,)
        if limit is not None:
            query += " LIMIT ?"
            params = (workspace_id, limit)
        async with self.db.execute(query, params) as cur:
            return [decode_row(r) for r in await cur.fetchall()]

    async def list_links(self, table: str, workspace_id: str) -> list[dict]:
        link_columns(table)
        async with self.db.execute(
            f"SELECT * FROM {table} WHERE workspace_id = ?", (workspace_id,)
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]
