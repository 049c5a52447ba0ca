"""Collect the ProductBoard hierarchy through its relation endpoints.

ProductBoard has no full-tree dump, so features are discovered through
three paths (initiative links, component membership, parent features) and
merged into one map keyed by external id.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

from pbsync import config
from pbsync.productboard.client import FetchError, FetchResult, Found, NotFound

logger = logging.getLogger("pbsync.collector")


class HierarchySource(Protocol):
    async def get_products(self, product_id: str | None = None, *, required: bool = True) -> FetchResult: ...

    async def get_initiatives(self, initiative_id: str | None = None, *, required: bool = True) -> FetchResult: ...

    async def get_components(self, *, required: bool = False) -> FetchResult: ...

    async def get_initiative_features(self, initiative_id: str, *, required: bool = False) -> FetchResult: ...

    async def get_component_features(self, component_id: str, *, required: bool = False) -> FetchResult: ...

    async def get_sub_features(self, feature_id: str, *, required: bool = False) -> FetchResult: ...


@dataclass
class CollectionFilters:
    product_id: str | None = None
    initiative_id: str | None = None
    include_features: bool = True
    include_components: bool = True
    include_initiatives: bool = True
    max_depth: int = 5


@dataclass
class PartialFailure:
    entity_type: str
    entity_id: str
    relation: str
    error: str


@dataclass
class CollectionCounts:
    products: int = 0
    initiatives: int = 0
    components: int = 0
    features: int = 0
    initiative_features: int = 0
    component_features: int = 0
    sub_features: int = 0


@dataclass
class CollectedEntities:
    products: list[dict[str, Any]] = field(default_factory=list)
    initiatives: list[dict[str, Any]] = field(default_factory=list)
    components: list[dict[str, Any]] = field(default_factory=list)
    features: list[dict[str, Any]] = field(default_factory=list)
    partial_failures: list[PartialFailure] = field(default_factory=list)
    counts: CollectionCounts = field(default_factory=CollectionCounts)


def _ids(items: list[dict[str, Any]]) -> list[str]:
    return [str(item["id"]) for item in items if item.get("id")]


def merge_initiative_features(
    feature_map: dict[str, dict[str, Any]],
    initiative_id: str,
    features: list[dict[str, Any]],
) -> None:
    """Attach ``initiative_id`` to each feature, creating entries as needed."""
    for feature in features:
        feature_id = feature.get("id")
        if not feature_id:
            continue
        entry = feature_map.get(feature_id)
        if entry is None:
            feature_map[feature_id] = {**feature, "initiative_ids": [initiative_id]}
            continue
        initiative_ids = entry.setdefault("initiative_ids", [])
        if initiative_id not in initiative_ids:
            initiative_ids.append(initiative_id)


def merge_component_features(
    feature_map: dict[str, dict[str, Any]],
    component_id: str,
    features: list[dict[str, Any]],
) -> None:
    for feature in features:
        feature_id = feature.get("id")
        if not feature_id:
            continue
        entry = feature_map.get(feature_id)
        if entry is None:
            feature_map[feature_id] = {**feature, "component_id": component_id}
        else:
            entry["component_id"] = component_id


def merge_sub_features(
    feature_map: dict[str, dict[str, Any]],
    parent_id: str,
    sub_features: list[dict[str, Any]],
) -> None:
    """Record ``parent_id`` on sub-features; existing entries keep their other fields."""
    for sub_feature in sub_features:
        feature_id = sub_feature.get("id")
        if not feature_id or feature_id == parent_id:
            continue
        entry = feature_map.get(feature_id)
        if entry is None:
            feature_map[feature_id] = {**sub_feature, "parent_id": parent_id}
        else:
            entry["parent_id"] = parent_id


class EntityCollector:
    """Fetch and de-duplicate hierarchy entities for one sync run."""

    def __init__(self, source: HierarchySource, *, concurrency: int | None = None):
        self.source = source
        self.concurrency = max(1, concurrency or config.COLLECT_CONCURRENCY)

    async def collect(self, filters: CollectionFilters | None = None) -> CollectedEntities:
        filters = filters or CollectionFilters()
        collected = CollectedEntities()
        counts = collected.counts

        logger.info("Fetching products...")
        collected.products = self._items(await self.source.get_products(filters.product_id, required=True))
        counts.products = len(collected.products)
        logger.info("Fetched %s products", counts.products)

        if filters.include_initiatives:
            logger.info("Fetching initiatives...")
            collected.initiatives = self._items(
                await self.source.get_initiatives(filters.initiative_id, required=True)
            )
            counts.initiatives = len(collected.initiatives)
            logger.info("Fetched %s initiatives", counts.initiatives)

        if filters.include_components:
            logger.info("Fetching components...")
            collected.components = self._optional_items(
                await self.source.get_components(required=False),
                collected,
                entity_type="workspace",
                entity_id="*",
                relation="components",
            )
            counts.components = len(collected.components)
            logger.info("Fetched %s components", counts.components)

        if filters.include_features:
            feature_map: dict[str, dict[str, Any]] = {}

            if filters.include_initiatives:
                counts.initiative_features = await self._collect_relation(
                    collected,
                    entity_type="initiative",
                    entity_ids=_ids(collected.initiatives),
                    relation="features",
                    fetch=self.source.get_initiative_features,
                    merge=lambda entity_id, items: merge_initiative_features(feature_map, entity_id, items),
                )
                logger.info("Collected %s features from initiatives", counts.initiative_features)

            if filters.include_components:
                counts.component_features = await self._collect_relation(
                    collected,
                    entity_type="component",
                    entity_ids=_ids(collected.components),
                    relation="features",
                    fetch=self.source.get_component_features,
                    merge=lambda entity_id, items: merge_component_features(feature_map, entity_id, items),
                )
                logger.info("Collected %s features from components", counts.component_features)

            logger.info("Collecting sub-features...")
            counts.sub_features = await self._collect_relation(
                collected,
                entity_type="feature",
                entity_ids=list(feature_map.keys()),
                relation="sub_features",
                fetch=self.source.get_sub_features,
                merge=lambda entity_id, items: merge_sub_features(feature_map, entity_id, items),
            )
            logger.info("Collected %s sub-features", counts.sub_features)

            collected.features = list(feature_map.values())
            counts.features = len(collected.features)
            logger.info("Total unique features collected: %s", counts.features)

        if collected.partial_failures:
            logger.warning(
                "Collection finished with %s relation fetch failure(s)",
                len(collected.partial_failures),
            )
        return collected

    async def _collect_relation(
        self,
        collected: CollectedEntities,
        *,
        entity_type: str,
        entity_ids: list[str],
        relation: str,
        fetch: Callable[[str], Awaitable[FetchResult]],
        merge: Callable[[str, list[dict[str, Any]]], None],
    ) -> int:
        """Fetch one relation for many entities concurrently, then merge in input order."""
        if not entity_ids:
            return 0
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _fetch_one(entity_id: str) -> FetchResult:
            async with semaphore:
                try:
                    return await fetch(entity_id)
                except Exception as exc:  # noqa: BLE001
                    logger.exception("Unexpected error fetching %s for %s %s", relation, entity_type, entity_id)
                    return FetchError(f"{type(exc).__name__}: {exc}")

        results = await asyncio.gather(*(_fetch_one(entity_id) for entity_id in entity_ids))

        total = 0
        for entity_id, result in zip(entity_ids, results):
            items = self._optional_items(
                result,
                collected,
                entity_type=entity_type,
                entity_id=entity_id,
                relation=relation,
            )
            total += len(items)
            merge(entity_id, items)
        return total

    @staticmethod
    def _items(result: FetchResult) -> list[dict[str, Any]]:
        # Required fetches raise before returning anything but Found.
        return list(result.items) if isinstance(result, Found) else []

    @staticmethod
    def _optional_items(
        result: FetchResult,
        collected: CollectedEntities,
        *,
        entity_type: str,
        entity_id: str,
        relation: str,
    ) -> list[dict[str, Any]]:
        if isinstance(result, Found):
            return list(result.items)
        if isinstance(result, NotFound):
            logger.info("No %s found for %s %s, continuing", relation, entity_type, entity_id)
            return []
        error = result.error if isinstance(result, FetchError) else repr(result)
        logger.warning("Error fetching %s for %s %s: %s", relation, entity_type, entity_id, error)
        collected.partial_failures.append(
            PartialFailure(entity_type=entity_type, entity_id=entity_id, relation=relation, error=error)
        )
        return []
