"""Derive relationship maps from collected hierarchy entities.

Direct edges are read off feature fields; product→component and
initiative→component are composed through features, exactly one hop.
Every map is ``source external id -> set of target external ids`` and
never references an id missing from the supplied collections.
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, Iterable

RelationshipMap = dict[str, set[str]]


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


@dataclass
class RelationshipMaps:
    product_features: RelationshipMap = field(default_factory=dict)
    product_components: RelationshipMap = field(default_factory=dict)
    initiative_features: RelationshipMap = field(default_factory=dict)
    initiative_components: RelationshipMap = field(default_factory=dict)
    feature_components: RelationshipMap = field(default_factory=dict)
    component_features: RelationshipMap = field(default_factory=dict)
    feature_sub_features: RelationshipMap = field(default_factory=dict)
    feature_parents: RelationshipMap = field(default_factory=dict)

    def counts(self) -> dict[str, int]:
        """Edge count per map, keyed ``productFeatures``, ``initiativeComponents``, ..."""
        return {
            _camel(f.name): sum(len(targets) for targets in getattr(self, f.name).values())
            for f in fields(self)
        }

    def total(self) -> int:
        return sum(self.counts().values())


def add_edge(relationship_map: RelationshipMap, source_id: str, target_id: str) -> None:
    relationship_map.setdefault(source_id, set()).add(target_id)


def _id_set(entities: Iterable[dict[str, Any]]) -> set[str]:
    return {str(entity["id"]) for entity in entities if entity.get("id")}


def feature_product_id(feature: dict[str, Any]) -> str | None:
    product = feature.get("product")
    if isinstance(product, dict) and product.get("id"):
        return str(product["id"])
    if feature.get("product_id"):
        return str(feature["product_id"])
    return None


def _compose(
    out: RelationshipMap,
    source_to_features: RelationshipMap,
    feature_to_components: RelationshipMap,
) -> None:
    for source_id, feature_ids in source_to_features.items():
        for feature_id in feature_ids:
            for component_id in feature_to_components.get(feature_id, ()):
                add_edge(out, source_id, component_id)


def build_relationships(
    products: list[dict[str, Any]],
    initiatives: list[dict[str, Any]],
    components: list[dict[str, Any]],
    features: list[dict[str, Any]],
) -> RelationshipMaps:
    product_ids = _id_set(products)
    initiative_ids = _id_set(initiatives)
    component_ids = _id_set(components)
    feature_ids = _id_set(features)

    maps = RelationshipMaps()
    for feature in features:
        feature_id = feature.get("id")
        if not feature_id:
            continue
        feature_id = str(feature_id)

        product_id = feature_product_id(feature)
        if product_id in product_ids:
            add_edge(maps.product_features, product_id, feature_id)

        for initiative_id in feature.get("initiative_ids") or ():
            if initiative_id in initiative_ids:
                add_edge(maps.initiative_features, initiative_id, feature_id)

        component_id = feature.get("component_id")
        if component_id in component_ids:
            add_edge(maps.feature_components, feature_id, component_id)
            add_edge(maps.component_features, component_id, feature_id)

        parent_id = feature.get("parent_id")
        if parent_id in feature_ids and parent_id != feature_id:
            add_edge(maps.feature_sub_features, parent_id, feature_id)
            add_edge(maps.feature_parents, feature_id, parent_id)

    _compose(maps.product_components, maps.product_features, maps.feature_components)
    _compose(maps.initiative_components, maps.initiative_features, maps.feature_components)
    return maps
