"""Persist a collected hierarchy idempotently.

Entity types are written in dependency order (products, initiatives,
components, features, join rows). Each type is processed in chunks: one
batch lookup by external id, then inserts for unknown ids and field
updates only where ``has_changed`` reports a difference.

Features are written in two passes. Pass 1 stores every feature without
``parent_id``; pass 2 patches ``parent_id`` once the whole batch has an
internal id, so a child is never written before its parent exists.
"""
from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol

from pbsync import config
from pbsync.change_detection import changed_fields, has_changed
from pbsync.errors import FrozenIdMapError
from pbsync.observability import record_entity_writes
from pbsync.relationships import RelationshipMaps

logger = logging.getLogger("pbsync.persistence")

ENTITY_TYPES = ("products", "initiatives", "components", "features")
LINK_TABLES = ("initiative_features", "component_initiatives")

METADATA_EXCLUDED_FIELDS = frozenset({
    "id", "name", "description", "status", "targetStart", "targetEnd",
    "owner", "product_id", "component_id", "parent_id", "product", "components",
    "initiative_ids", "subFeatures", "timeframe",
})

_DANGLING_SAMPLE = 5


class HierarchyStore(Protocol):
    async def find_by_external_ids(
        self, entity: str, workspace_id: str, external_ids: list[str]
    ) -> dict[str, dict[str, Any]]: ...

    async def insert_many(self, entity: str, rows: list[dict[str, Any]]) -> dict[str, str]: ...

    async def insert_one(self, entity: str, row: dict[str, Any]) -> str: ...

    async def update_fields(self, entity: str, internal_id: str, fields: dict[str, Any]) -> None: ...

    async def insert_links(self, table: str, rows: list[dict[str, Any]]) -> int: ...


class IdMap(Mapping):
    """External id -> internal id for one entity type.

    Write-once per key: a second assignment is ignored. After ``freeze()``
    any assignment raises ``FrozenIdMapError``.
    """

    def __init__(self, entity: str):
        self.entity = entity
        self._ids: dict[str, str] = {}
        self._frozen = False

    def assign(self, external_id: str, internal_id: str) -> bool:
        if self._frozen:
            raise FrozenIdMapError(self.entity, external_id)
        if external_id in self._ids:
            return False
        self._ids[external_id] = internal_id
        return True

    def freeze(self) -> IdMap:
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __getitem__(self, external_id: str) -> str:
        return self._ids[external_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._ids)

    def __len__(self) -> int:
        return len(self._ids)

    def __repr__(self) -> str:
        state = "frozen" if self._frozen else "open"
        return f"IdMap({self.entity!r}, {len(self._ids)} ids, {state})"


@dataclass
class IdMaps:
    products: IdMap = field(default_factory=lambda: IdMap("products"))
    initiatives: IdMap = field(default_factory=lambda: IdMap("initiatives"))
    components: IdMap = field(default_factory=lambda: IdMap("components"))
    features: IdMap = field(default_factory=lambda: IdMap("features"))


@dataclass
class EntityStats:
    total: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    errors: int = 0


@dataclass
class ParentLinkStats:
    updated: int = 0
    unchanged: int = 0
    dangling: int = 0
    errors: int = 0


@dataclass
class LinkStats:
    total: int = 0
    inserted: int = 0
    errors: int = 0


@dataclass
class PersistResult:
    id_maps: IdMaps = field(default_factory=IdMaps)
    stats: dict[str, EntityStats] = field(
        default_factory=lambda: {entity: EntityStats() for entity in ENTITY_TYPES}
    )
    parent_links: ParentLinkStats = field(default_factory=ParentLinkStats)
    links: dict[str, LinkStats] = field(
        default_factory=lambda: {table: LinkStats() for table in LINK_TABLES}
    )

    @property
    def error_count(self) -> int:
        return (
            sum(s.errors for s in self.stats.values())
            + self.parent_links.errors
            + sum(s.errors for s in self.links.values())
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "entities": {entity: asdict(s) for entity, s in self.stats.items()},
            "parent_links": asdict(self.parent_links),
            "links": {table: asdict(s) for table, s in self.links.items()},
            "error_count": self.error_count,
        }


# ── Row builders ────────────────────────────────────────────────────


def clean_metadata(source: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in source.items() if k not in METADATA_EXCLUDED_FIELDS}


def owner_email(owner: Any) -> str | None:
    if isinstance(owner, dict):
        return owner.get("email") or None
    return owner or None


def status_name(status: Any) -> str | None:
    if isinstance(status, dict):
        return status.get("name") or None
    return status or None


def _ref_id(source: dict[str, Any], nested: str, *flat: str) -> str | None:
    ref = source.get(nested)
    if isinstance(ref, dict) and ref.get("id"):
        return str(ref["id"])
    for key in flat:
        if source.get(key):
            return str(source[key])
    return None


def _base_row(workspace_id: str, source: dict[str, Any]) -> dict[str, Any]:
    return {
        "workspace_id": workspace_id,
        "external_id": str(source["id"]),
        "name": source.get("name") or "",
        "description": source.get("description") or None,
        "status": status_name(source.get("status")),
    }


def product_row(workspace_id: str, product: dict[str, Any]) -> dict[str, Any]:
    return {**_base_row(workspace_id, product), "metadata": clean_metadata(product)}


def initiative_row(workspace_id: str, initiative: dict[str, Any], products: Mapping[str, str]) -> dict[str, Any]:
    product_ext = _ref_id(initiative, "product", "productId", "product_id")
    return {
        **_base_row(workspace_id, initiative),
        "owner": owner_email(initiative.get("owner")),
        "timeframe": initiative.get("timeframe") or None,
        "product_id": products.get(product_ext) if product_ext else None,
        "metadata": clean_metadata(initiative),
    }


def component_row(workspace_id: str, component: dict[str, Any]) -> dict[str, Any]:
    # product_id is only knowable transitively through features; left null.
    return {
        **_base_row(workspace_id, component),
        "product_id": None,
        "metadata": clean_metadata(component),
    }


def feature_row(workspace_id: str, feature: dict[str, Any], components: Mapping[str, str]) -> dict[str, Any]:
    """Pass-1 row: ``parent_id`` is deliberately absent."""
    timeframe = feature.get("timeframe") if isinstance(feature.get("timeframe"), dict) else {}
    component_ext = feature.get("component_id")
    return {
        **_base_row(workspace_id, feature),
        "target_start_date": feature.get("targetStart") or timeframe.get("startDate") or None,
        "target_end_date": feature.get("targetEnd") or timeframe.get("endDate") or None,
        "owner": owner_email(feature.get("owner")),
        "component_id": components.get(component_ext) if component_ext else None,
        "metadata": clean_metadata(feature),
    }


def _chunks(items: list, size: int) -> Iterator[list]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _with_ids(entities: list[dict[str, Any]], entity: str) -> list[dict[str, Any]]:
    """Drop entities without an id and keep the first occurrence of each id."""
    seen: set[str] = set()
    kept = []
    for item in entities:
        external_id = item.get("id")
        if not external_id:
            logger.warning("Skipping %s without an id", entity)
            continue
        if str(external_id) in seen:
            continue
        seen.add(str(external_id))
        kept.append(item)
    return kept


class PersistenceEngine:
    """Write collected entities and relationships through a hierarchy repository."""

    def __init__(self, repo: HierarchyStore, *, batch_size: int | None = None):
        self.repo = repo
        self.batch_size = max(1, batch_size or config.PERSIST_BATCH_SIZE)

    async def persist(
        self,
        workspace_id: str,
        products: list[dict[str, Any]],
        initiatives: list[dict[str, Any]],
        components: list[dict[str, Any]],
        features: list[dict[str, Any]],
        relationships: RelationshipMaps,
    ) -> PersistResult:
        result = PersistResult()
        maps = result.id_maps

        products = _with_ids(products, "products")
        await self._persist_entities(
            "products", workspace_id, [product_row(workspace_id, p) for p in products], maps.products, result
        )

        initiatives = _with_ids(initiatives, "initiatives")
        await self._persist_entities(
            "initiatives",
            workspace_id,
            [initiative_row(workspace_id, i, maps.products) for i in initiatives],
            maps.initiatives,
            result,
        )

        components = _with_ids(components, "components")
        await self._persist_entities(
            "components", workspace_id, [component_row(workspace_id, c) for c in components], maps.components, result
        )

        features = _with_ids(features, "features")
        stored_features = await self._persist_entities(
            "features",
            workspace_id,
            [feature_row(workspace_id, f, maps.components) for f in features],
            maps.features,
            result,
        )
        await self._link_parents(features, stored_features, result)

        await self._persist_links(workspace_id, relationships, result)

        logger.info(
            "Persistence finished for workspace %s with %s error(s)",
            workspace_id,
            result.error_count,
        )
        return result

    async def _persist_entities(
        self,
        entity: str,
        workspace_id: str,
        rows: list[dict[str, Any]],
        id_map: IdMap,
        result: PersistResult,
    ) -> dict[str, dict[str, Any]]:
        """Insert or update one entity type, freeze its id map, return the rows found stored."""
        stats = result.stats[entity]
        stats.total = len(rows)
        stored_rows: dict[str, dict[str, Any]] = {}
        for chunk in _chunks(rows, self.batch_size):
            stored_rows.update(await self._persist_chunk(entity, workspace_id, chunk, id_map, stats))
        id_map.freeze()

        logger.info(
            "Stored %s %s (%s inserted, %s updated, %s unchanged, %s errors)",
            stats.total, entity, stats.inserted, stats.updated, stats.unchanged, stats.errors,
        )
        for outcome in ("inserted", "updated", "unchanged", "errors"):
            record_entity_writes(entity, outcome, getattr(stats, outcome), workspace_id=workspace_id)
        return stored_rows

    async def _persist_chunk(
        self,
        entity: str,
        workspace_id: str,
        chunk: list[dict[str, Any]],
        id_map: IdMap,
        stats: EntityStats,
    ) -> dict[str, dict[str, Any]]:
        try:
            existing = await self.repo.find_by_external_ids(
                entity, workspace_id, [row["external_id"] for row in chunk]
            )
        except Exception:
            logger.exception("Lookup failed for a chunk of %s %s", len(chunk), entity)
            stats.errors += len(chunk)
            return {}

        new_rows = []
        for row in chunk:
            stored = existing.get(row["external_id"])
            if stored is None:
                new_rows.append(row)
                continue

            id_map.assign(row["external_id"], stored["id"])
            fields = {k: v for k, v in row.items() if k not in ("workspace_id", "external_id")}
            stored_view = {k: stored.get(k) for k in fields}
            if not has_changed(stored_view, fields):
                stats.unchanged += 1
                continue

            logger.debug(
                "%s %s changed: %s", entity, row["external_id"], ", ".join(changed_fields(stored_view, fields))
            )
            try:
                await self.repo.update_fields(entity, stored["id"], fields)
            except Exception as exc:
                logger.warning("Failed to update %s %s: %s", entity, row["external_id"], exc)
                stats.errors += 1
                continue
            stats.updated += 1

        if new_rows:
            await self._insert_rows(entity, new_rows, id_map, stats)
        return existing

    async def _insert_rows(
        self,
        entity: str,
        rows: list[dict[str, Any]],
        id_map: IdMap,
        stats: EntityStats,
    ) -> None:
        try:
            ids = await self.repo.insert_many(entity, rows)
        except Exception as exc:
            logger.warning(
                "Batch insert of %s %s failed (%s); retrying row by row", len(rows), entity, exc
            )
        else:
            for external_id, internal_id in ids.items():
                id_map.assign(external_id, internal_id)
            stats.inserted += len(ids)
            return

        for row in rows:
            try:
                internal_id = await self.repo.insert_one(entity, row)
            except Exception as exc:
                logger.warning("Failed to insert %s %s: %s", entity, row["external_id"], exc)
                stats.errors += 1
                continue
            id_map.assign(row["external_id"], internal_id)
            stats.inserted += 1

    async def _link_parents(
        self,
        features: list[dict[str, Any]],
        stored_features: dict[str, dict[str, Any]],
        result: PersistResult,
    ) -> None:
        """Pass 2: set ``parent_id`` on features whose parent now has an internal id."""
        feature_ids = result.id_maps.features
        links = result.parent_links
        dangling: list[str] = []

        for feature in features:
            child_ext = str(feature["id"])
            parent_ext = feature.get("parent_id")
            if not parent_ext or parent_ext == child_ext:
                continue
            child_id = feature_ids.get(child_ext)
            if child_id is None:
                # The child itself failed to persist and is already counted.
                continue
            parent_id = feature_ids.get(parent_ext)
            if parent_id is None:
                links.dangling += 1
                dangling.append(child_ext)
                continue

            stored = stored_features.get(child_ext)
            if stored is not None and stored.get("parent_id") == parent_id:
                links.unchanged += 1
                continue
            try:
                await self.repo.update_fields("features", child_id, {"parent_id": parent_id})
            except Exception as exc:
                logger.warning("Failed to set parent of feature %s: %s", child_ext, exc)
                links.errors += 1
                continue
            links.updated += 1

        if dangling:
            logger.warning(
                "%s feature(s) reference a parent outside this run, parent left unset (e.g. %s)",
                len(dangling),
                ", ".join(dangling[:_DANGLING_SAMPLE]),
            )
        logger.info(
            "Parent links: %s updated, %s unchanged, %s dangling, %s errors",
            links.updated, links.unchanged, links.dangling, links.errors,
        )

    async def _persist_links(self, workspace_id: str, relationships: RelationshipMaps, result: PersistResult) -> None:
        maps = result.id_maps
        initiative_features = [
            {
                "initiative_id": maps.initiatives[initiative_ext],
                "feature_id": maps.features[feature_ext],
                "workspace_id": workspace_id,
            }
            for initiative_ext, feature_exts in sorted(relationships.initiative_features.items())
            if initiative_ext in maps.initiatives
            for feature_ext in sorted(feature_exts)
            if feature_ext in maps.features
        ]
        component_initiatives = [
            {
                "component_id": maps.components[component_ext],
                "initiative_id": maps.initiatives[initiative_ext],
                "direct_link": False,
                "link_via_feature": None,
                "workspace_id": workspace_id,
            }
            for initiative_ext, component_exts in sorted(relationships.initiative_components.items())
            if initiative_ext in maps.initiatives
            for component_ext in sorted(component_exts)
            if component_ext in maps.components
        ]

        for table, rows in (
            ("initiative_features", initiative_features),
            ("component_initiatives", component_initiatives),
        ):
            stats = result.links[table]
            stats.total = len(rows)
            for chunk in _chunks(rows, self.batch_size):
                try:
                    stats.inserted += await self.repo.insert_links(table, chunk)
                except Exception as exc:
                    logger.warning("Failed to store %s %s rows: %s", len(chunk), table, exc)
                    stats.errors += len(chunk)
            logger.info("Stored %s %s links (%s new, %s errors)", stats.total, table, stats.inserted, stats.errors)
