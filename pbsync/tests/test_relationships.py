import itertools
import unittest

from pbsync.relationships import RelationshipMaps, build_relationships


def _catalog():
    products = [{"id": "P1"}, {"id": "P2"}]
    initiatives = [{"id": "I1"}, {"id": "I2"}]
    components = [{"id": "C1"}, {"id": "C2"}]
    features = [
        {"id": "F1", "product": {"id": "P1"}, "initiative_ids": ["I1"], "component_id": "C1"},
        {"id": "F2", "product_id": "P2", "initiative_ids": ["I1", "I2"], "component_id": "C2"},
        {"id": "F3", "parent_id": "F1", "component_id": "C1"},
    ]
    return products, initiatives, components, features


class BuildRelationshipsTests(unittest.TestCase):
    def test_direct_and_composed_edges(self) -> None:
        maps = build_relationships(*_catalog())

        self.assertEqual(maps.product_features, {"P1": {"F1"}, "P2": {"F2"}})
        self.assertEqual(maps.initiative_features, {"I1": {"F1", "F2"}, "I2": {"F2"}})
        self.assertEqual(maps.feature_components, {"F1": {"C1"}, "F2": {"C2"}, "F3": {"C1"}})
        self.assertEqual(maps.component_features, {"C1": {"F1", "F3"}, "C2": {"F2"}})
        self.assertEqual(maps.feature_sub_features, {"F1": {"F3"}})
        self.assertEqual(maps.feature_parents, {"F3": {"F1"}})
        self.assertEqual(maps.product_components, {"P1": {"C1"}, "P2": {"C2"}})
        self.assertEqual(maps.initiative_components, {"I1": {"C1", "C2"}, "I2": {"C2"}})

    def test_initiative_and_component_on_same_feature_are_cross_linked(self) -> None:
        maps = build_relationships(
            [],
            [{"id": "I1"}],
            [{"id": "C1"}],
            [{"id": "F1", "initiative_ids": ["I1"], "component_id": "C1"}],
        )
        self.assertIn("F1", maps.initiative_features["I1"])
        self.assertIn("F1", maps.component_features["C1"])
        self.assertEqual(maps.initiative_components["I1"], {"C1"})

    def test_unknown_endpoints_are_dropped(self) -> None:
        maps = build_relationships(
            [{"id": "P1"}],
            [],
            [],
            [
                {"id": "F1", "product": {"id": "P9"}, "initiative_ids": ["I9"], "component_id": "C9"},
                {"id": "F2", "parent_id": "F404"},
                {"id": "F3", "parent_id": "F3"},
            ],
        )
        self.assertEqual(maps.total(), 0)

    def test_composition_is_one_hop_only(self) -> None:
        # F2 is a sub-feature of F1; I1 only links F1, so C2 is not reachable from I1.
        maps = build_relationships(
            [],
            [{"id": "I1"}],
            [{"id": "C1"}, {"id": "C2"}],
            [
                {"id": "F1", "initiative_ids": ["I1"], "component_id": "C1"},
                {"id": "F2", "parent_id": "F1", "component_id": "C2"},
            ],
        )
        self.assertEqual(maps.initiative_components, {"I1": {"C1"}})

    def test_input_order_does_not_matter(self) -> None:
        products, initiatives, components, features = _catalog()
        expected = build_relationships(products, initiatives, components, features)
        for permutation in itertools.permutations(features):
            self.assertEqual(
                build_relationships(products[::-1], initiatives[::-1], components, list(permutation)),
                expected,
            )

    def test_counts_use_camel_case_keys(self) -> None:
        maps = build_relationships(*_catalog())
        counts = maps.counts()
        self.assertEqual(
            set(counts),
            {
                "productFeatures", "productComponents", "initiativeFeatures", "initiativeComponents",
                "featureComponents", "componentFeatures", "featureSubFeatures", "featureParents",
            },
        )
        self.assertEqual(counts["initiativeFeatures"], 3)
        self.assertEqual(maps.total(), sum(counts.values()))
        self.assertEqual(RelationshipMaps().total(), 0)


if __name__ == "__main__":
    unittest.main()
