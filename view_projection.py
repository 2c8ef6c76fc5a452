"""Grid, list, table and hierarchy projections of one listing result."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Dict, List

from grouping import group_by_tenant, group_keys
from hierarchy import ExpandSignal, HierarchyNode, ancestor_ids, build_tree, count_nodes, filter_tree
from option_normalizer import normalize_options
from query_coordinator import DEFAULT_PAGE_SIZE, HIERARCHY_PAGE_SIZE, PAGE_SIZE_ALL
from role_resolver import (
    display_string,
    field_value,
    resolve_array_by_role,
    resolve_by_role,
    resolve_single_by_role,
)
from schema_model import FieldRole, Schema
from scope import Scope, can_create_records


VIEW_MODES = ("grid", "list", "table", "hierarchy")

SEARCHABLE_ATTRIBUTES = (
    "name",
    "title",
    "email",
    "phone",
    "description",
    "productName",
    "requestId",
    "batchNumber",
    "productSku",
    "companyName",
    "tenderTitle",
    "projectName",
    "code",
)


def effective_view_mode(schema: Schema, requested: str | None) -> str:
    if requested not in VIEW_MODES:
        return "table"
    if requested == "hierarchy" and not schema.allow_hierarchical_parent:
        return "table"
    return requested


def default_view_mode(schema: Schema) -> str:
    return "hierarchy" if schema.allow_hierarchical_parent else "table"


def default_page_size(
    view_mode: str, *, default_size: int = DEFAULT_PAGE_SIZE, hierarchy_size: int = HIERARCHY_PAGE_SIZE
) -> int:
    return hierarchy_size if view_mode == "hierarchy" else default_size


def page_size_for_view_change(
    previous: str,
    current: str,
    page_size: int | str,
    *,
    default_size: int = DEFAULT_PAGE_SIZE,
    hierarchy_size: int = HIERARCHY_PAGE_SIZE,
) -> int | str:
    if previous == current:
        return page_size
    sizes = {"default_size": default_size, "hierarchy_size": hierarchy_size}
    if current == "hierarchy":
        return page_size if page_size == PAGE_SIZE_ALL else default_page_size(current, **sizes)
    if previous == "hierarchy" and page_size == hierarchy_size:
        return default_page_size(current, **sizes)
    return page_size


# -- people and timestamps ------------------------------------------------


def actor_name(user: Any) -> str | None:
    if not user:
        return None
    if isinstance(user, str):
        return user
    if isinstance(user, dict):
        first = user.get("firstName") or ""
        last = user.get("lastName") or ""
        if first or last:
            return f"{first} {last}".strip()
        for key in ("username", "email", "label", "name"):
            if user.get(key):
                return str(user[key])
    return None


def initials(text: str | None) -> str:
    if not text:
        return "?"
    parts = [p for p in str(text).replace("@", " ").split() if p]
    if not parts:
        return "?"
    if len(parts) == 1:
        return parts[0][:2].upper()
    return (parts[0][0] + parts[-1][0]).upper()


def _parse_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip().replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        try:
            parsed = datetime.combine(date.fromisoformat(text[:10]), datetime.min.time())
        except ValueError:
            return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _timestamp_cell(value: Any, actor: Any) -> Dict[str, Any] | None:
    parsed = _parse_datetime(value)
    if parsed is None:
        return None
    name = actor_name(actor)
    tooltip = parsed.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
    if name:
        tooltip = f"{tooltip} by {name}"
    return {
        "text": parsed.strftime("%Y-%m-%d"),
        "tooltip": tooltip,
        "actor": name,
        "actor_initials": initials(name) if name else None,
        "actor_avatar_url": actor.get("avatarUrl") if isinstance(actor, dict) else None,
    }


# -- table ----------------------------------------------------------------


def build_table_columns(schema: Schema, show_metadata: bool = False) -> List[Dict[str, Any]]:
    """Column set shared by every table render of ``schema``."""
    columns: List[Dict[str, Any]] = [
        {"id": "actions", "label": "Actions", "kind": "actions", "sortable": False, "align": "center"}
    ]
    repeating_ids = schema.repeating_field_ids()
    for f in schema.ordered_fields():
        if f.hidden or f.id in repeating_ids:
            continue
        columns.append(
            {
                "id": f.id,
                "label": f.label,
                "kind": "field",
                "field_id": f.id,
                "sortable": f.is_scalar,
                "align": "left",
            }
        )
    for section in schema.repeating_sections():
        columns.append(
            {
                "id": f"repeating-section-{section.id}",
                "label": section.title or section.id,
                "kind": "repeating-section",
                "section_id": section.id,
                "relation_based": section.is_relation_based,
                "sortable": not section.is_relation_based,
                "align": "center",
            }
        )
    if show_metadata:
        columns.append({"id": "createdAt", "label": "Created", "kind": "metadata", "sortable": True, "align": "left"})
        columns.append({"id": "updatedAt", "label": "Updated", "kind": "metadata", "sortable": True, "align": "left"})
    return columns


def row_actions(schema: Schema, entity: dict) -> List[Dict[str, Any]]:
    entity_id = entity.get("id")
    href = f"/page/{schema.id}/{entity_id}" if entity_id else None
    return [
        {"type": "view", "href": href},
        {"type": "edit"},
        {"type": "delete"},
    ]


def cell_value(schema: Schema, column: Dict[str, Any], entity: dict) -> Any:
    kind = column["kind"]
    if kind == "actions":
        return row_actions(schema, entity)
    if kind == "field":
        f = schema.field(column["field_id"])
        raw = field_value(entity, f) if f else None
        return {"value": raw, "text": display_string(raw)}
    if kind == "repeating-section":
        if column.get("relation_based"):
            return None
        items = entity.get(column["section_id"])
        return len(items) if isinstance(items, list) else 0
    if column["id"] == "createdAt":
        return _timestamp_cell(entity.get("createdAt"), entity.get("createdBy"))
    if column["id"] == "updatedAt":
        return _timestamp_cell(entity.get("updatedAt"), entity.get("updatedBy") or entity.get("createdBy"))
    return None


def table_rows(schema: Schema, columns: List[Dict[str, Any]], entities: List[dict]) -> List[Dict[str, Any]]:
    return [
        {"id": entity.get("id"), "cells": {col["id"]: cell_value(schema, col, entity) for col in columns}}
        for entity in entities
    ]


# -- cards ----------------------------------------------------------------


def _status_options(schema: Schema, entity: dict) -> List[dict]:
    if schema.has_role(FieldRole.STATUS):
        return resolve_array_by_role(schema, entity, FieldRole.STATUS)
    current = normalize_options(entity.get("status"))
    if not current:
        return []
    group = {opt["id"]: opt for opt in normalize_options(list(schema.status_group))}
    return [group.get(opt["id"], opt) for opt in current]


def _due_date_block(value: Any, now: datetime | None) -> Dict[str, Any] | None:
    parsed = _parse_datetime(value)
    if parsed is None:
        return None
    today = (now or datetime.now(timezone.utc)).astimezone(timezone.utc).date()
    days_left = (parsed.astimezone(timezone.utc).date() - today).days
    return {"value": parsed.strftime("%Y-%m-%d"), "days_left": days_left, "overdue": days_left < 0}


def build_card(schema: Schema, entity: dict, now: datetime | None = None) -> Dict[str, Any]:
    """Card model for grid and list views.

    A role-driven block is present only when the schema declares the role.
    """
    if schema.has_role(FieldRole.TITLE):
        title = resolve_by_role(schema, entity, FieldRole.TITLE)
        title = display_string(title) or entity.get("name") or "Unknown"
    else:
        title = entity.get("name") or "Unknown"

    card: Dict[str, Any] = {"id": entity.get("id"), "title": str(title)}

    if schema.has_role(FieldRole.SUBTITLE):
        subtitle = resolve_by_role(schema, entity, FieldRole.SUBTITLE)
        card["subtitle"] = display_string(subtitle) or None
    if schema.has_role(FieldRole.DESCRIPTION):
        card["description"] = display_string(resolve_by_role(schema, entity, FieldRole.DESCRIPTION)) or None
    if schema.has_role(FieldRole.CODE):
        card["code"] = resolve_single_by_role(schema, entity, FieldRole.CODE)
    if schema.has_role(FieldRole.AVATAR):
        avatar = resolve_single_by_role(schema, entity, FieldRole.AVATAR, entity.get("name"))
        card["avatar"] = {"value": avatar, "initials": initials(card["title"])}
    if schema.has_role(FieldRole.ICON):
        card["icon"] = resolve_single_by_role(schema, entity, FieldRole.ICON)
    if schema.has_role(FieldRole.COLOR):
        card["color"] = resolve_single_by_role(schema, entity, FieldRole.COLOR)
    if schema.has_role(FieldRole.STATUS) or schema.status_group:
        card["status"] = _status_options(schema, entity)
    if schema.has_role(FieldRole.BADGE):
        card["badges"] = resolve_array_by_role(schema, entity, FieldRole.BADGE)
    if schema.has_role(FieldRole.RATING):
        rating = resolve_single_by_role(schema, entity, FieldRole.RATING, 0)
        try:
            card["rating"] = max(0.0, min(5.0, float(rating)))
        except (TypeError, ValueError):
            card["rating"] = 0.0
    if schema.has_role(FieldRole.DUEDATE):
        label = schema.fields_by_role(FieldRole.DUEDATE)[0].label or "Due Date"
        block = _due_date_block(resolve_single_by_role(schema, entity, FieldRole.DUEDATE), now)
        card["due_date"] = {"label": label, **block} if block else None
    if schema.has_role(FieldRole.PERSON):
        people = resolve_array_by_role(schema, entity, FieldRole.PERSON)
        card["person"] = people[0] if people else None
    if schema.custom_buttons:
        card["buttons"] = [
            {"id": b.id, "label": b.label, "action": b.action, "target": b.target, "icon": b.icon}
            for b in schema.custom_buttons
        ]
    card["actions"] = row_actions(schema, entity)
    return card


# -- search ---------------------------------------------------------------


def entity_matches(schema: Schema, entity: dict, needle: str) -> bool:
    for key in SEARCHABLE_ATTRIBUTES:
        value = entity.get(key)
        if isinstance(value, str) and needle in value.lower():
            return True
    for role in (FieldRole.TITLE, FieldRole.SUBTITLE):
        if schema.has_role(role):
            text = display_string(resolve_by_role(schema, entity, role))
            if needle in text.lower():
                return True
    return False


def search_filter(schema: Schema, entities: List[dict], text: str | None) -> List[dict]:
    needle = (text or "").strip().lower()
    if not needle:
        return list(entities)
    return [e for e in entities if entity_matches(schema, e, needle)]


# -- hierarchy ------------------------------------------------------------


def _node_view(schema: Schema, node: HierarchyNode, now: datetime | None) -> Dict[str, Any]:
    card = build_card(schema, node.entity, now)
    return {
        "id": node.id,
        "parent_id": node.parent_id,
        "title": card["title"],
        "subtitle": card.get("subtitle"),
        "card": card,
        "actions": [{"type": "add_child"}, {"type": "change_parent"}, {"type": "delete", "cascade": True}],
        "children": [_node_view(schema, child, now) for child in node.children],
    }


def hierarchy_projection(
    schema: Schema,
    entities: List[dict],
    search_text: str | None = None,
    signal: ExpandSignal | None = None,
    now: datetime | None = None,
) -> Dict[str, Any]:
    tree = build_tree(entities)
    roots = tree.roots
    needle = (search_text or "").strip().lower()
    matched: set[str] = set()
    expanded: set[str] = set()
    if needle:
        matched = {node_id for node_id, node in tree.node_map.items() if entity_matches(schema, node.entity, needle)}
        roots = filter_tree(roots, matched) if matched else []
        for node_id in matched:
            expanded.update(ancestor_ids(tree.node_map, node_id))
    signal = signal or ExpandSignal()
    return {
        "roots": [_node_view(schema, root, now) for root in roots],
        "total_nodes": count_nodes(roots),
        "matched_ids": sorted(matched),
        "unresolved_parent_ids": dict(tree.unresolved_parent_ids),
        "expand_token": signal.expand_token,
        # Ancestors of search matches open so every match is visible.
        "expanded_ids": sorted(expanded),
        "collapse_token": signal.collapse_token,
    }


# -- entry point ----------------------------------------------------------


def _render_items(schema: Schema, mode: str, columns: List[dict], entities: List[dict], now: datetime | None) -> list:
    if mode == "table":
        return table_rows(schema, columns, entities)
    return [build_card(schema, e, now) for e in entities]


def project(
    schema: Schema,
    requested_view_mode: str | None,
    entities: List[dict],
    scope: Scope,
    pagination: Dict[str, Any],
    *,
    search_text: str | None = None,
    show_metadata: bool = False,
    signal: ExpandSignal | None = None,
    now: datetime | None = None,
) -> Dict[str, Any]:
    """Project one result set in the requested view mode.

    Every mode works from the same entities, columns and grouping, so
    switching modes changes only the layout.
    """
    mode = effective_view_mode(schema, requested_view_mode)
    result: Dict[str, Any] = {
        "schema_id": schema.id,
        "title": schema.plural_name,
        "singular_name": schema.singular_name,
        "requested_view_mode": requested_view_mode,
        "view_mode": mode,
        "pagination": dict(pagination),
        "can_create": can_create_records(schema, scope),
        "columns": build_table_columns(schema, show_metadata) if mode == "table" else [],
        "items": [],
        "groups": None,
        "ungrouped": [],
        "tree": None,
    }

    if mode == "hierarchy":
        result["tree"] = hierarchy_projection(schema, entities, search_text, signal, now)
        result["empty"] = result["tree"]["total_nodes"] == 0
        return result

    visible = search_filter(schema, entities, search_text)
    groups = group_by_tenant(schema, visible, scope)
    if groups is None:
        result["items"] = _render_items(schema, mode, result["columns"], visible, now)
    else:
        result["groups"] = [
            {"key": tenant, "items": _render_items(schema, mode, result["columns"], items, now)}
            for tenant, items in groups["grouped"].items()
        ]
        result["ungrouped"] = _render_items(schema, mode, result["columns"], groups["ungrouped"], now)
        result["group_keys"] = group_keys(groups)
    result["empty"] = not visible
    return result
