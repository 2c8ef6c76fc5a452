import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from hierarchy import (
    ExpandSignal,
    ancestor_ids,
    build_tree,
    collect_descendants,
    count_nodes,
    descendants_in_order,
    filter_tree,
    parent_id_of,
)


def _chain() -> list:
    return [
        {"id": "A", "name": "Root"},
        {"id": "B", "name": "Child", "parent": "A"},
        {"id": "C", "name": "Grandchild", "parent": [{"id": "B", "label": "Child"}]},
    ]


class TestBuildTree(unittest.TestCase):
    def test_every_entity_appears_once(self) -> None:
        entities = _chain() + [{"id": "D", "parent": "A"}, {"id": "E"}]
        tree = build_tree(entities)
        self.assertEqual(len(tree.node_map), 5)
        self.assertEqual(count_nodes(tree.roots), 5)
        self.assertEqual([r.id for r in tree.roots], ["A", "E"])
        self.assertEqual([c.id for c in tree.node_map["A"].children], ["B", "D"])
        self.assertEqual(tree.node_map["C"].parent_id, "B")

    def test_unresolved_parent_becomes_root(self) -> None:
        tree = build_tree([{"id": "X", "parent": "missing"}])
        self.assertEqual([r.id for r in tree.roots], ["X"])
        self.assertEqual(tree.unresolved_parent_ids, {"X": "missing"})

    def test_self_parent_is_root(self) -> None:
        tree = build_tree([{"id": "S", "parent": "S"}])
        self.assertEqual([r.id for r in tree.roots], ["S"])

    def test_cycle_is_broken_and_all_nodes_reachable(self) -> None:
        entities = [{"id": "P", "parent": "Q"}, {"id": "Q", "parent": "P"}]
        with self.assertLogs("metaview.hierarchy", level="WARNING"):
            tree = build_tree(entities)
        self.assertEqual(count_nodes(tree.roots), 2)
        self.assertEqual(len(tree.broken_cycle_ids), 1)
        self.assertEqual(len(tree.roots), 1)

    def test_entities_without_id_skipped(self) -> None:
        tree = build_tree([{"name": "no id"}, "junk", {"id": "ok"}])
        self.assertEqual(list(tree.node_map), ["ok"])

    def test_parent_id_of_option_shapes(self) -> None:
        self.assertEqual(parent_id_of({"parent": {"id": 3}}), "3")
        self.assertIsNone(parent_id_of({"parent": None}))


class TestTraversal(unittest.TestCase):
    def test_cascade_scope(self) -> None:
        tree = build_tree(_chain())
        self.assertEqual(collect_descendants(tree.node_map, "A"), {"A", "B", "C"})
        self.assertEqual(collect_descendants(tree.node_map, "B"), {"B", "C"})
        self.assertEqual(descendants_in_order(tree.node_map, "A"), ["A", "B", "C"])

    def test_unknown_root_is_empty(self) -> None:
        tree = build_tree(_chain())
        self.assertEqual(collect_descendants(tree.node_map, "Z"), set())
        self.assertEqual(descendants_in_order(tree.node_map, "Z"), [])

    def test_ancestor_ids_closest_first(self) -> None:
        tree = build_tree(_chain())
        self.assertEqual(ancestor_ids(tree.node_map, "C"), ["B", "A"])
        self.assertEqual(ancestor_ids(tree.node_map, "A"), [])

    def test_filter_tree_keeps_ancestors_of_matches(self) -> None:
        entities = _chain() + [{"id": "D", "parent": "A"}]
        tree = build_tree(entities)
        filtered = filter_tree(tree.roots, {"C"})
        self.assertEqual([r.id for r in filtered], ["A"])
        self.assertEqual([c.id for c in filtered[0].children], ["B"])
        self.assertEqual(count_nodes(filtered), 3)
        # Source tree untouched.
        self.assertEqual(len(tree.node_map["A"].children), 2)


class TestExpandSignal(unittest.TestCase):
    def test_tokens_increase(self) -> None:
        signal = ExpandSignal()
        self.assertEqual(signal.expand_all(), 1)
        self.assertEqual(signal.expand_all(), 2)
        self.assertEqual(signal.collapse_all(), 1)
        self.assertEqual(signal.as_dict(), {"expand_token": 2, "collapse_token": 1})


if __name__ == "__main__":
    unittest.main()
