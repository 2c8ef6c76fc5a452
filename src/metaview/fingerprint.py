"""Effective-query fingerprints."""

from __future__ import annotations

import hashlib
from typing import Any

from .canonical_json import canonical_dumps


def query_fingerprint(query: dict, page: int, page_size: int | str, sort: Any) -> str:
    """Return the value identity of a fetch: query, pagination and sort."""
    payload = {
        "query": query,
        "page": page,
        "page_size": page_size,
        "sort": sort,
    }
    digest = hashlib.sha256(canonical_dumps(payload).encode("utf-8")).hexdigest()
    return f"sha256:{digest}"


def same_fingerprint(left: str | None, right: str | None) -> bool:
    return left is not None and left == right
