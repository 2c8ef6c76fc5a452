"""One listing page: query coordinator, backend calls and projection together."""

from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List

from hierarchy import ExpandSignal, build_tree, descendants_in_order
from page_events import PageEventBus, make_event
from query_coordinator import (
    DEFAULT_DEBOUNCE_MS,
    DEFAULT_PAGE_SIZE,
    HIERARCHY_PAGE_SIZE,
    FetchRequest,
    QueryCoordinator,
)
from schema_model import Schema
from scope import Scope, ScopeUnresolved, can_create_records, company_ids_for
from view_projection import default_view_mode, effective_view_mode, page_size_for_view_change, project

from app.backend_client import BackendClient


logger = logging.getLogger("metaview.session")

Result = Dict[str, Any]


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> dict:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _entity_id(entity: Any) -> str | None:
    if isinstance(entity, dict):
        value = entity.get("id")
    else:
        value = entity
    if value in (None, ""):
        return None
    return str(value)


class PageSession:
    def __init__(
        self,
        schema: Schema,
        client: BackendClient,
        scope: Scope | None = None,
        *,
        session_id: str | None = None,
        view_mode: str | None = None,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
        default_page_size: int = DEFAULT_PAGE_SIZE,
        hierarchy_page_size: int = HIERARCHY_PAGE_SIZE,
        clock: Callable[[], float] = time.monotonic,
        bus: PageEventBus | None = None,
    ) -> None:
        self.session_id = session_id or uuid.uuid4().hex
        self._schema = schema
        self._client = client
        self._default_page_size = default_page_size
        self._hierarchy_page_size = hierarchy_page_size
        self._view_mode = effective_view_mode(schema, view_mode or default_view_mode(schema))
        page_size = hierarchy_page_size if self._view_mode == "hierarchy" else default_page_size
        self.coordinator = QueryCoordinator(
            schema, scope, page_size=page_size, debounce_ms=debounce_ms, clock=clock
        )
        self.signal = ExpandSignal()
        self.bus = bus or PageEventBus()
        self._show_metadata = False

    # -- state -----------------------------------------------------------

    @property
    def schema(self) -> Schema:
        return self._schema

    @property
    def scope(self) -> Scope:
        return self.coordinator.scope

    @property
    def view_mode(self) -> str:
        return self._view_mode

    @property
    def show_metadata(self) -> bool:
        return self._show_metadata

    def _publish(self, name: str, payload: dict) -> None:
        self.bus.publish(make_event(name, payload, self._schema.id, self.session_id))

    # -- query setters ---------------------------------------------------

    def set_search_text(self, text: str | None, now: float | None = None) -> None:
        had_search = bool(self.coordinator.search_text.strip())
        self.coordinator.set_search_text(text, now)
        if self._view_mode == "hierarchy" and had_search and not (text or "").strip():
            self.collapse_all()

    def set_filters(self, filters: Dict[str, Any] | None) -> None:
        self.coordinator.set_filters(filters)

    def set_filter(self, key: str, value: Any) -> None:
        self.coordinator.set_filter(key, value)

    def set_sort(self, sort: Any) -> None:
        self.coordinator.set_sort(sort)

    def set_page(self, page: Any) -> None:
        self.coordinator.set_page(page)

    def set_page_size(self, page_size: Any) -> None:
        self.coordinator.set_page_size(page_size)

    def set_scope(self, scope: Scope) -> None:
        self.coordinator.set_scope(scope)

    def set_view_mode(self, requested: str | None) -> str:
        mode = effective_view_mode(self._schema, requested)
        new_size = page_size_for_view_change(
            self._view_mode,
            mode,
            self.coordinator.page_size,
            default_size=self._default_page_size,
            hierarchy_size=self._hierarchy_page_size,
        )
        if new_size != self.coordinator.page_size:
            self.coordinator.set_page_size(new_size)
        if mode != self._view_mode:
            logger.info("session_view_mode session=%s from=%s to=%s", self.session_id, self._view_mode, mode)
        self._view_mode = mode
        return mode

    def set_show_metadata(self, enabled: bool) -> None:
        self._show_metadata = bool(enabled)

    # -- fetching --------------------------------------------------------

    def _perform(self, request: FetchRequest) -> Result:
        res = self._client.list_entities(request)
        committed = self.coordinator.receive(request.request_id, res)
        if not committed:
            self._publish("query.stale_dropped", {"request_id": request.request_id})
        elif res.get("ok"):
            self._publish(
                "query.fetched",
                {"request_id": request.request_id, "count": len(res.get("data") or []), "page": request.page},
            )
        else:
            self._publish("query.failed", {"request_id": request.request_id, "error": self.coordinator.error})
        return {
            "ok": bool(res.get("ok")),
            "fetched": True,
            "committed": committed,
            "request_id": request.request_id,
            "errors": list(res.get("errors") or []),
        }

    def _not_fetched(self, unresolved: ScopeUnresolved | None = None) -> Result:
        return {
            "ok": True,
            "fetched": False,
            "unresolved_reason": unresolved.reason if unresolved else None,
            "errors": [],
        }

    def sync(self, now: float | None = None) -> Result:
        """Advance the coordinator and perform any fetch it asks for."""
        request = self.coordinator.step(now)
        if request is None:
            return self._not_fetched(self.coordinator.unresolved)
        return self._perform(request)

    def refresh(self) -> Result:
        request = self.coordinator.refresh()
        if isinstance(request, ScopeUnresolved):
            return self._not_fetched(request)
        return self._perform(request)

    def retry(self) -> Result:
        request = self.coordinator.retry()
        if request is None:
            return self._not_fetched()
        return self._perform(request)

    def dismiss_error(self) -> None:
        self.coordinator.dismiss_error()

    # -- mutations -------------------------------------------------------

    def _after_mutation(self, name: str, payload: dict, res: Result, warnings: List[dict] | None = None) -> Result:
        self._publish(name, payload)
        refreshed = self.refresh()
        return {"ok": True, "data": res.get("data"), "refresh": refreshed, "errors": [], "warnings": warnings or []}

    def _sync_parent_relation(self, child_id: str | None, parent_id: str | None) -> List[dict]:
        if not (self._schema.allow_hierarchical_parent and child_id):
            return []
        res = self._client.sync_parent_relation(self._schema.id, child_id, parent_id)
        if res["ok"]:
            return []
        logger.warning(
            "session_parent_relation_failed session=%s entity=%s parent=%s", self.session_id, child_id, parent_id
        )
        return list(res.get("errors") or [])

    def create(self, values: dict, parent_id: str | None = None) -> Result:
        if not can_create_records(self._schema, self.scope):
            return {
                "ok": False,
                "values": values,
                "errors": [_issue("CREATE_NOT_ALLOWED", "select a single company before creating records", "scope")],
            }
        payload = dict(values or {})
        if parent_id:
            payload["parent"] = parent_id
        if self._schema.is_company_based and not payload.get("companyId"):
            payload["companyId"] = self.scope.company_id
        res = self._client.create(self._schema.id, payload)
        if not res["ok"]:
            logger.warning("session_create_failed session=%s schema=%s", self.session_id, self._schema.id)
            return {"ok": False, "values": values, "errors": res["errors"]}
        created = res.get("data") if isinstance(res.get("data"), dict) else {}
        created_id = _entity_id((created.get("data") if isinstance(created.get("data"), dict) else created))
        warnings = self._sync_parent_relation(created_id, parent_id) if parent_id else []
        return self._after_mutation(
            "entity.created", {"entity_id": created_id, "parent_id": parent_id}, res, warnings
        )

    def update(self, entity_id: str, values: dict) -> Result:
        res = self._client.update(self._schema.id, entity_id, dict(values or {}))
        if not res["ok"]:
            logger.warning("session_update_failed session=%s entity=%s", self.session_id, entity_id)
            return {"ok": False, "values": values, "errors": res["errors"]}
        return self._after_mutation("entity.updated", {"entity_id": str(entity_id)}, res)

    def _delete_targets(self, root_id: str) -> List[str]:
        if self._view_mode != "hierarchy":
            return [root_id]
        tree = build_tree(self.coordinator.entities)
        if root_id not in tree.node_map:
            logger.info("session_cascade_fallback session=%s entity=%s", self.session_id, root_id)
            return [root_id]
        return descendants_in_order(tree.node_map, root_id)

    def delete(self, entity: Any) -> Result:
        """Delete an entity; in hierarchy view its descendants go with it.

        Deletes run one at a time, parent first, and stop at the first
        failure. Already-deleted records stay deleted.
        """
        root_id = _entity_id(entity)
        if root_id is None:
            return {"ok": False, "errors": [_issue("ENTITY_ID_MISSING", "entity id is required", "id")]}
        targets = self._delete_targets(root_id)
        deleted: List[str] = []
        for target in targets:
            res = self._client.delete(self._schema.id, target)
            if res["ok"]:
                deleted.append(target)
                continue
            refreshed = self.refresh()
            if len(targets) == 1:
                logger.warning("session_delete_failed session=%s entity=%s", self.session_id, target)
                return {"ok": False, "deleted": [], "refresh": refreshed, "errors": res["errors"]}
            message = f"{len(deleted)} of {len(targets)} items deleted; resolve and retry"
            detail = {"deleted": deleted, "failed_id": target, "total": len(targets), "cause": res["errors"]}
            logger.warning(
                "session_cascade_partial session=%s root=%s deleted=%s total=%s failed_id=%s",
                self.session_id,
                root_id,
                len(deleted),
                len(targets),
                target,
            )
            self._publish("cascade.partial_failure", {"root_id": root_id, **detail})
            return {
                "ok": False,
                "deleted": deleted,
                "refresh": refreshed,
                "errors": [_issue("CASCADE_PARTIAL_FAILURE", message, "id", detail)],
            }
        return {
            **self._after_mutation("entity.deleted", {"entity_id": root_id, "deleted": deleted}, {}),
            "deleted": deleted,
        }

    def change_parent(self, entity: Any, new_parent_id: str | None) -> Result:
        entity_id = _entity_id(entity)
        if entity_id is None:
            return {"ok": False, "errors": [_issue("ENTITY_ID_MISSING", "entity id is required", "id")]}
        new_parent_id = str(new_parent_id) if new_parent_id not in (None, "") else None
        tree = build_tree(self.coordinator.entities)
        if new_parent_id is not None and (
            new_parent_id == entity_id or new_parent_id in descendants_in_order(tree.node_map, entity_id)
        ):
            return {
                "ok": False,
                "errors": [_issue("PARENT_INVALID", "a record cannot be moved under itself or its descendants", "parent")],
            }
        node = tree.node_map.get(entity_id)
        if isinstance(entity, dict) and set(entity) - {"id"}:
            current = entity
        elif node is not None:
            current = dict(node.entity)
        else:
            # PUT replaces the record; a bare id is never sent.
            return {
                "ok": False,
                "errors": [_issue("ENTITY_NOT_FOUND", f"record {entity_id} is not loaded on this page", "id")],
            }
        payload = {**current, "parent": new_parent_id}
        res = self._client.update(self._schema.id, entity_id, payload)
        if not res["ok"]:
            logger.warning("session_change_parent_failed session=%s entity=%s", self.session_id, entity_id)
            return {"ok": False, "errors": res["errors"]}
        warnings = self._sync_parent_relation(entity_id, new_parent_id)
        return self._after_mutation(
            "entity.parent_changed", {"entity_id": entity_id, "parent_id": new_parent_id}, res, warnings
        )

    # -- misc ------------------------------------------------------------

    def assignment_counts(self) -> Result:
        scope = self.scope
        if not (scope.assignment_enabled and self._schema.allows_assignment and scope.assignment_user_id):
            return {"ok": True, "data": None, "errors": []}
        return self._client.count(
            self._schema.id, scope.assignment_user_id, company_ids_for(self._schema, scope)
        )

    def expand_all(self) -> int:
        token = self.signal.expand_all()
        self._publish("hierarchy.expand_all", {"token": token})
        return token

    def collapse_all(self) -> int:
        token = self.signal.collapse_all()
        self._publish("hierarchy.collapse_all", {"token": token})
        return token

    def projection(self, now: datetime | None = None) -> Dict[str, Any]:
        view = project(
            self._schema,
            self._view_mode,
            self.coordinator.entities,
            self.scope,
            self.coordinator.pagination_meta(),
            search_text=self.coordinator.debounced_search,
            show_metadata=self._show_metadata,
            signal=self.signal,
            now=now,
        )
        view["state"] = self.coordinator.state
        view["error"] = self.coordinator.error
        view["unresolved_reason"] = self.coordinator.unresolved.reason if self.coordinator.unresolved else None
        return view

    def snapshot(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "schema_id": self._schema.id,
            "view_mode": self._view_mode,
            "show_metadata": self._show_metadata,
            "query": self.coordinator.snapshot(),
            "signal": self.signal.as_dict(),
        }
