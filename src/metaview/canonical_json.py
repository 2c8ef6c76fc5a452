"""Deterministic JSON for query fingerprints and sort/filter comparison."""

from __future__ import annotations

import json
import math
from typing import Any


class CanonicalJsonTypeError(TypeError):
    """Raised when a query value cannot be serialized canonically."""


def _normalize(obj: Any, path: str = "$") -> Any:
    if obj is None or isinstance(obj, (str, bool, int)):
        return obj
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise ValueError(f"Non-finite float at {path}: {obj!r}")
        return obj
    if isinstance(obj, dict):
        out = {}
        for key, value in obj.items():
            if not isinstance(key, str):
                raise CanonicalJsonTypeError(
                    f"Unsupported key type at {path}: {type(key).__name__}"
                )
            out[key] = _normalize(value, f"{path}.{key}")
        return out
    if isinstance(obj, (list, tuple)):
        return [_normalize(item, f"{path}[{idx}]") for idx, item in enumerate(obj)]
    if isinstance(obj, (set, frozenset)):
        items = [_normalize(item, f"{path}[*]") for item in obj]
        return sorted(items, key=lambda item: json.dumps(item, sort_keys=True))
    raise CanonicalJsonTypeError(
        f"Unsupported type at {path}: {type(obj).__name__}"
    )


def canonical_dumps(obj: Any) -> str:
    """Serialize query state to deterministic JSON.

    Rules:
    - Dict keys sorted recursively.
    - Lists and tuples keep their order (sort priority matters).
    - Sets are emitted sorted, so filter id-sets compare by value.
    - No whitespace, non-ASCII preserved.
    """
    normalized = _normalize(obj)
    return json.dumps(
        normalized,
        sort_keys=True,
        ensure_ascii=False,
        separators=(",", ":"),
        allow_nan=False,
    )
