"""Canonical option shape for picker, badge and person values."""

from __future__ import annotations

import json
from typing import Any, Dict, List


Option = Dict[str, Any]


def _label_of(item: dict) -> Any:
    for key in ("label", "name", "title"):
        value = item.get(key)
        if value not in (None, ""):
            return value
    first = item.get("firstName") or ""
    last = item.get("lastName") or ""
    if first or last:
        return f"{first} {last}".strip()
    return None


def _normalize_one(item: Any) -> Option | None:
    if item is None or item == "":
        return None
    if isinstance(item, dict):
        raw_id = item.get("id")
        if raw_id in (None, ""):
            raw_id = item.get("value")
        label = _label_of(item)
        if raw_id in (None, "") and label in (None, ""):
            return None
        option: Option = {
            "id": str(raw_id) if raw_id not in (None, "") else str(label),
            "label": str(label) if label not in (None, "") else str(raw_id),
        }
        if item.get("icon"):
            option["icon"] = item["icon"]
        if item.get("color"):
            option["color"] = item["color"]
        return option
    if isinstance(item, bool):
        text = "true" if item else "false"
        return {"id": text, "label": text}
    return {"id": str(item), "label": str(item)}


def _maybe_json_array(value: str) -> Any:
    text = value.strip()
    if not (text.startswith("[") and text.endswith("]")):
        return value
    try:
        parsed = json.loads(text)
    except ValueError:
        return value
    return parsed if isinstance(parsed, list) else value


def normalize_options(value: Any) -> List[Option]:
    """Return ``[{id, label, icon?, color?}]`` for any accepted value shape.

    Order is preserved and duplicates are kept.
    """
    if isinstance(value, str):
        value = _maybe_json_array(value)
    if isinstance(value, (list, tuple)):
        items = value
    else:
        items = [value]
    out: List[Option] = []
    for item in items:
        option = _normalize_one(item)
        if option is not None:
            out.append(option)
    return out


def first_option_id(value: Any) -> str | None:
    options = normalize_options(value)
    return options[0]["id"] if options else None
