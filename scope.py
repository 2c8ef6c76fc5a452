"""Tenant and assignment scope passed explicitly into the query coordinator."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Dict, Tuple

from schema_model import Schema


ALL_COMPANIES = "-1"
ASSIGNMENT_VIEWS = ("assignedTo", "initiatedBy")


@dataclass(frozen=True)
class ScopeUnresolved:
    """Sentinel: scope cannot be resolved yet, so no fetch may be issued."""

    reason: str

    def __bool__(self) -> bool:
        return False


@dataclass(frozen=True)
class Scope:
    company_id: str | None = None
    available_company_ids: Tuple[str, ...] = ()
    assignment_enabled: bool = False
    assignment_user_id: str | None = None
    assignment_view: str = "assignedTo"

    @classmethod
    def from_dict(cls, raw: Dict[str, Any] | None) -> "Scope":
        raw = raw or {}
        company = raw.get("company_id", raw.get("companyId"))
        available = raw.get("available_company_ids", raw.get("availableCompanyIds")) or ()
        view = raw.get("assignment_view", raw.get("assignmentView")) or "assignedTo"
        if view not in ASSIGNMENT_VIEWS:
            raise ValueError(f"assignment_view must be one of {ASSIGNMENT_VIEWS}")
        user = raw.get("assignment_user_id", raw.get("assignmentUserId"))
        return cls(
            company_id=str(company) if company not in (None, "") else None,
            available_company_ids=tuple(str(c) for c in available if c not in (None, "", ALL_COMPANIES)),
            assignment_enabled=bool(raw.get("assignment_enabled", raw.get("assignmentEnabled", False))),
            assignment_user_id=str(user) if user not in (None, "") else None,
            assignment_view=view,
        )

    @property
    def is_all_companies(self) -> bool:
        return self.company_id == ALL_COMPANIES

    def with_company(self, company_id: str | None) -> "Scope":
        return replace(self, company_id=str(company_id) if company_id is not None else None)

    def with_available_companies(self, company_ids) -> "Scope":
        ids = tuple(str(c) for c in company_ids if c not in (None, "", ALL_COMPANIES))
        return replace(self, available_company_ids=ids)

    def with_assignment(self, user_id: str | None, view: str | None = None) -> "Scope":
        view = view or self.assignment_view
        if view not in ASSIGNMENT_VIEWS:
            raise ValueError(f"assignment_view must be one of {ASSIGNMENT_VIEWS}")
        return replace(self, assignment_user_id=user_id, assignment_view=view)

    def as_dict(self) -> dict:
        return {
            "company_id": self.company_id,
            "available_company_ids": list(self.available_company_ids),
            "assignment_enabled": self.assignment_enabled,
            "assignment_user_id": self.assignment_user_id,
            "assignment_view": self.assignment_view,
        }


def company_ids_for(schema: Schema, scope: Scope) -> list[str]:
    if not schema.is_company_based:
        return []
    if scope.company_id and not scope.is_all_companies:
        return [scope.company_id]
    return list(scope.available_company_ids)


def resolve_scope_params(schema: Schema, scope: Scope) -> Dict[str, Any] | ScopeUnresolved:
    """Translate scope into backend filter params, or report why it cannot."""
    params: Dict[str, Any] = {}
    assignment_on = scope.assignment_enabled and schema.allows_assignment
    if assignment_on:
        if not scope.assignment_user_id:
            return ScopeUnresolved("assignment_user_missing")
        if scope.assignment_view == "assignedTo":
            params["assignedToIds"] = scope.assignment_user_id
        else:
            params["createdByIds"] = scope.assignment_user_id

    if schema.is_company_based:
        company_ids = company_ids_for(schema, scope)
        if not company_ids:
            return ScopeUnresolved("company_context_missing")
        params["companyIds"] = company_ids
    return params


def can_create_records(schema: Schema, scope: Scope) -> bool:
    if not schema.is_company_based:
        return True
    return bool(scope.company_id) and not scope.is_all_companies
