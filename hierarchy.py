"""Parent/child trees built from flat entity lists."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List

from option_normalizer import first_option_id


logger = logging.getLogger("metaview.hierarchy")


@dataclass
class HierarchyNode:
    id: str
    entity: dict
    parent_id: str | None = None
    children: List["HierarchyNode"] = field(default_factory=list)


@dataclass
class HierarchyTree:
    roots: List[HierarchyNode]
    node_map: Dict[str, HierarchyNode]
    unresolved_parent_ids: Dict[str, str] = field(default_factory=dict)
    broken_cycle_ids: List[str] = field(default_factory=list)


def parent_id_of(entity: Any) -> str | None:
    if not isinstance(entity, dict):
        return None
    return first_option_id(entity.get("parent"))


def _break_cycles(node_map: Dict[str, HierarchyNode]) -> List[str]:
    # Iterative DFS; a child already on the stack closes a cycle and is
    # detached from its parent. Input order makes the outcome deterministic.
    visited: set[str] = set()
    broken: List[str] = []
    for start in node_map.values():
        if start.id in visited:
            continue
        on_stack = {start.id}
        visited.add(start.id)
        stack = [(start, iter(list(start.children)))]
        while stack:
            node, children = stack[-1]
            child = next(children, None)
            if child is None:
                on_stack.discard(node.id)
                stack.pop()
                continue
            if child.id in on_stack:
                node.children = [c for c in node.children if c.id != child.id]
                child.parent_id = None
                broken.append(child.id)
                continue
            if child.id in visited:
                continue
            visited.add(child.id)
            on_stack.add(child.id)
            stack.append((child, iter(list(child.children))))
    return broken


def build_tree(entities: Iterable[Any]) -> HierarchyTree:
    """Index entities by id and attach each one under its parent.

    Entities without an id are skipped. A missing, self-referencing or
    unknown parent makes the entity a root.
    """
    node_map: Dict[str, HierarchyNode] = {}
    for entity in entities or []:
        if not isinstance(entity, dict) or entity.get("id") in (None, ""):
            continue
        node_id = str(entity["id"])
        existing = node_map.get(node_id)
        if existing is None:
            node_map[node_id] = HierarchyNode(id=node_id, entity=entity)
        else:
            existing.entity = entity

    unresolved: Dict[str, str] = {}
    for node in node_map.values():
        parent_id = parent_id_of(node.entity)
        if not parent_id or parent_id == node.id:
            continue
        parent = node_map.get(parent_id)
        if parent is None:
            unresolved[node.id] = parent_id
            continue
        node.parent_id = parent_id
        parent.children.append(node)

    broken = _break_cycles(node_map)
    if broken:
        logger.warning("hierarchy_cycle_broken node_ids=%s", ",".join(broken))
    if unresolved:
        logger.info("hierarchy_unresolved_parents count=%s", len(unresolved))

    roots = [node for node in node_map.values() if node.parent_id is None]
    return HierarchyTree(roots=roots, node_map=node_map, unresolved_parent_ids=unresolved, broken_cycle_ids=broken)


def collect_descendants(node_map: Dict[str, HierarchyNode], root_id: str) -> set[str]:
    """Return ``root_id`` and every id reachable below it."""
    collected: set[str] = set()
    if root_id not in node_map:
        return collected
    pending = [root_id]
    while pending:
        current = pending.pop()
        if current in collected:
            continue
        collected.add(current)
        node = node_map.get(current)
        if node is None:
            continue
        pending.extend(child.id for child in node.children)
    return collected


def descendants_in_order(node_map: Dict[str, HierarchyNode], root_id: str) -> List[str]:
    """Depth-first preorder of ``collect_descendants`` (parents before children)."""
    ordered: List[str] = []
    seen: set[str] = set()
    if root_id not in node_map:
        return ordered
    pending = [root_id]
    while pending:
        current = pending.pop()
        if current in seen:
            continue
        seen.add(current)
        ordered.append(current)
        node = node_map.get(current)
        if node is not None:
            pending.extend(reversed([child.id for child in node.children]))
    return ordered


def ancestor_ids(node_map: Dict[str, HierarchyNode], node_id: str) -> List[str]:
    ancestors: List[str] = []
    seen: set[str] = set()
    current = node_id
    while current and current not in seen:
        seen.add(current)
        node = node_map.get(current)
        if node is None or not node.parent_id:
            break
        ancestors.append(node.parent_id)
        current = node.parent_id
    return ancestors


def _has_match(node: HierarchyNode, matched_ids: set[str], seen: set[str]) -> bool:
    if node.id in seen:
        return False
    seen.add(node.id)
    if node.id in matched_ids:
        return True
    return any(_has_match(child, matched_ids, seen) for child in node.children)


def filter_tree(roots: List[HierarchyNode], matched_ids: set[str]) -> List[HierarchyNode]:
    """Keep nodes that match or have a matching descendant; returns new nodes."""
    if not matched_ids:
        return roots

    def _filter(node: HierarchyNode) -> HierarchyNode | None:
        if not _has_match(node, matched_ids, set()):
            return None
        kept = [c for c in (_filter(child) for child in node.children) if c is not None]
        return HierarchyNode(id=node.id, entity=node.entity, parent_id=node.parent_id, children=kept)

    return [n for n in (_filter(root) for root in roots) if n is not None]


def count_nodes(roots: List[HierarchyNode]) -> int:
    total = 0
    pending = list(roots)
    while pending:
        node = pending.pop()
        total += 1
        pending.extend(node.children)
    return total


@dataclass
class ExpandSignal:
    """Expand/collapse-all requests for tree renderers.

    Renderers compare tokens against the last value they handled; a bumped
    token means "apply once".
    """

    expand_token: int = 0
    collapse_token: int = 0

    def expand_all(self) -> int:
        self.expand_token += 1
        return self.expand_token

    def collapse_all(self) -> int:
        self.collapse_token += 1
        return self.collapse_token

    def as_dict(self) -> dict:
        return {"expand_token": self.expand_token, "collapse_token": self.collapse_token}
