"""PostgreSQL schema creation and versioning for the hierarchy store."""
from __future__ import annotations

import logging

import asyncpg

logger = logging.getLogger("pbsync.db")

SCHEMA_VERSION = 1

_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS products (
    id            TEXT PRIMARY KEY,
    workspace_id  TEXT NOT NULL,
    external_id   TEXT NOT NULL,
    name          TEXT NOT NULL DEFAULT '',
    description   TEXT,
    status        TEXT,
    metadata_json TEXT DEFAULT '{}',
    created_at    TEXT NOT NULL,
    updated_at    TEXT NOT NULL,
    UNIQUE (workspace_id, external_id)
);

CREATE TABLE IF NOT EXISTS initiatives (
    id             TEXT PRIMARY KEY,
    workspace_id   TEXT NOT NULL,
    external_id    TEXT NOT NULL,
    name           TEXT NOT NULL DEFAULT '',
    description    TEXT,
    status         TEXT,
    owner          TEXT,
    timeframe_json TEXT,
    product_id     TEXT REFERENCES products(id),
    metadata_json  TEXT DEFAULT '{}',
    created_at     TEXT NOT NULL,
    updated_at     TEXT NOT NULL,
    UNIQUE (workspace_id, external_id)
);

CREATE TABLE IF NOT EXISTS components (
    id            TEXT PRIMARY KEY,
    workspace_id  TEXT NOT NULL,
    external_id   TEXT NOT NULL,
    name          TEXT NOT NULL DEFAULT '',
    description   TEXT,
    status        TEXT,
    product_id    TEXT REFERENCES products(id),
    metadata_json TEXT DEFAULT '{}',
    created_at    TEXT NOT NULL,
    updated_at    TEXT NOT NULL,
    UNIQUE (workspace_id, external_id)
);

CREATE TABLE IF NOT EXISTS features (
    id                TEXT PRIMARY KEY,
    workspace_id      TEXT NOT NULL,
    external_id       TEXT NOT NULL,
    name              TEXT NOT NULL DEFAULT '',
    description       TEXT,
    status            TEXT,
    target_start_date TEXT,
    target_end_date   TEXT,
    owner             TEXT,
    component_id      TEXT REFERENCES components(id),
    parent_id         TEXT REFERENCES features(id),
    metadata_json     TEXT DEFAULT '{}',
    created_at        TEXT NOT NULL,
    updated_at        TEXT NOT NULL,
    UNIQUE (workspace_id, external_id)
);

CREATE INDEX IF NOT EXISTS idx_features_parent ON features(parent_id);
CREATE INDEX IF NOT EXISTS idx_features_component ON features(component_id);

CREATE TABLE IF NOT EXISTS initiative_features (
    initiative_id TEXT NOT NULL REFERENCES initiatives(id),
    feature_id    TEXT NOT NULL REFERENCES features(id),
    workspace_id  TEXT NOT NULL,
    created_at    TEXT NOT NULL,
    PRIMARY KEY (initiative_id, feature_id)
);

CREATE TABLE IF NOT EXISTS component_initiatives (
    component_id     TEXT NOT NULL REFERENCES components(id),
    initiative_id    TEXT NOT NULL REFERENCES initiatives(id),
    direct_link      BOOLEAN NOT NULL DEFAULT FALSE,
    link_via_feature TEXT,
    workspace_id     TEXT NOT NULL,
    created_at       TEXT NOT NULL,
    PRIMARY KEY (component_id, initiative_id)
);

CREATE TABLE IF NOT EXISTS sync_runs (
    id                  TEXT PRIMARY KEY,
    workspace_id        TEXT NOT NULL,
    status              TEXT NOT NULL DEFAULT 'in_progress',
    started_at          TEXT NOT NULL,
    completed_at        TEXT,
    products_count      INTEGER DEFAULT 0,
    initiatives_count   INTEGER DEFAULT 0,
    components_count    INTEGER DEFAULT 0,
    features_count      INTEGER DEFAULT 0,
    relationships_count INTEGER DEFAULT 0,
    error_message       TEXT,
    parameters_json     TEXT DEFAULT '{}',
    stats_json          TEXT DEFAULT '{}'
);

CREATE INDEX IF NOT EXISTS idx_sync_runs_workspace ON sync_runs(workspace_id, started_at DESC);
"""


async def run_migrations(pool: asyncpg.Pool) -> None:
    """Create all tables. Idempotent."""
    async with pool.acquire() as conn:
        try:
            current_version = await conn.fetchval("SELECT MAX(version) FROM schema_version") or 0
        except asyncpg.UndefinedTableError:
            current_version = 0

        if current_version >= SCHEMA_VERSION:
            logger.info("Schema is up to date (version %s)", current_version)
            return

        logger.info("Running Postgres migrations: %s → %s", current_version, SCHEMA_VERSION)
        async with conn.transaction():
            await conn.execute(_TABLES)
            await conn.execute("INSERT INTO schema_version (version) VALUES ($1)", SCHEMA_VERSION)
        logger.info("Migrations complete — schema version %s", SCHEMA_VERSION)
