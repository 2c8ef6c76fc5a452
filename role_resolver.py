"""Resolve schema roles (title, status, person, ...) to entity values."""

from __future__ import annotations

from typing import Any, List

from option_normalizer import Option, normalize_options
from schema_model import Field, FieldRole, Schema, parse_role


ROLE_SEPARATOR = " | "

# Roles whose single value is an identifier rather than a display label.
_ID_VALUED_ROLES = {FieldRole.AVATAR, FieldRole.ICON, FieldRole.COLOR, FieldRole.IMAGE}


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


def field_value(entity: Any, field: Field) -> Any:
    if not isinstance(entity, dict):
        return None
    if field.name in entity:
        return entity.get(field.name)
    return entity.get(field.id)


def _person_display(item: dict) -> str:
    first = str(item.get("firstName") or "").strip()
    last = str(item.get("lastName") or "").strip()
    if first or last:
        return " ".join(p for p in (first, last) if p)
    for key in ("label", "name", "title", "username", "email"):
        value = item.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    raw_id = item.get("id") if item.get("id") not in (None, "") else item.get("value")
    return "" if raw_id is None else str(raw_id)


def display_string(value: Any) -> str:
    """Human-readable form of a stored value."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, dict):
        return _person_display(value)
    if isinstance(value, (list, tuple)):
        parts = [display_string(item) for item in value]
        return ", ".join(p for p in parts if p)
    return str(value)


def resolve_by_role(schema: Schema, entity: Any, role: FieldRole | str) -> Any:
    fields = schema.fields_by_role(role)
    if not fields:
        return None
    if len(fields) == 1:
        return field_value(entity, fields[0])
    parts: List[str] = []
    for f in fields:
        value = field_value(entity, f)
        if _is_empty(value):
            continue
        text = display_string(value)
        if text:
            parts.append(text)
    return ROLE_SEPARATOR.join(parts) if parts else None


def resolve_single_by_role(schema: Schema, entity: Any, role: FieldRole | str, default: Any = None) -> Any:
    wanted = parse_role(role)
    for f in schema.fields_by_role(role):
        value = field_value(entity, f)
        if _is_empty(value):
            continue
        if isinstance(value, (list, tuple, dict)):
            options = normalize_options(value)
            if not options:
                continue
            key = "id" if wanted in _ID_VALUED_ROLES else "label"
            return options[0][key]
        return value
    return default


def resolve_array_by_role(schema: Schema, entity: Any, role: FieldRole | str) -> List[Option]:
    out: List[Option] = []
    for f in schema.fields_by_role(role):
        value = field_value(entity, f)
        if _is_empty(value):
            continue
        out.extend(normalize_options(value))
    return out
