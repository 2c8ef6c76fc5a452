"""Per-tenant partition of a listing for the all-companies view."""

from __future__ import annotations

from typing import Any, Dict, List

from schema_model import Schema
from scope import Scope


UNGROUPED_KEY = "ungrouped"


def tenant_id_of(entity: Any) -> str | None:
    if not isinstance(entity, dict):
        return None
    value = entity.get("companyId")
    if value in (None, ""):
        return None
    return str(value)


def group_by_tenant(schema: Schema, entities: List[dict], scope: Scope) -> Dict[str, Any] | None:
    """Return ``{"grouped": {tenant: [...]}, "ungrouped": [...]}`` or None.

    Grouping only applies to company-based schemas viewed under the
    all-companies scope, and only when some entity carries a tenant id.
    Relative order inside each bucket is the input order.
    """
    if not schema.is_company_based or not scope.is_all_companies:
        return None
    if not entities or not any(tenant_id_of(e) for e in entities):
        return None
    grouped: Dict[str, List[dict]] = {}
    ungrouped: List[dict] = []
    for entity in entities:
        tenant = tenant_id_of(entity)
        if tenant is None:
            ungrouped.append(entity)
        else:
            grouped.setdefault(tenant, []).append(entity)
    return {"grouped": grouped, "ungrouped": ungrouped}


def group_keys(groups: Dict[str, Any] | None) -> List[str]:
    if not groups:
        return []
    keys = list(groups["grouped"].keys())
    if groups["ungrouped"]:
        keys.append(UNGROUPED_KEY)
    return keys
