"""Query coordinator: one effective query from independent listing facets.

The coordinator is a small state machine (idle, resolving, fetching, error)
driven through ``step``. It never performs I/O itself; ``step``, ``refresh``
and ``retry`` hand back a ``FetchRequest`` and the caller reports the outcome
through ``receive``.
"""

from __future__ import annotations

import copy
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List

from metaview import canonical_dumps, query_fingerprint, same_fingerprint
from schema_model import Schema
from scope import Scope, ScopeUnresolved, resolve_scope_params


logger = logging.getLogger("metaview.query")

IDLE = "idle"
RESOLVING = "resolving"
FETCHING = "fetching"
ERROR = "error"

PAGE_SIZE_ALL = "all"
PAGE_SIZE_OPTIONS = (10, 25, 50, 100, 500, PAGE_SIZE_ALL)
DEFAULT_PAGE_SIZE = 50
HIERARCHY_PAGE_SIZE = 500
DEFAULT_DEBOUNCE_MS = 600


Issue = Dict[str, Any]


@dataclass
class QueryStateError(Exception):
    code: str
    message: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


@dataclass
class FetchRequest:
    request_id: int
    schema_id: str
    query: Dict[str, Any]
    page: int
    page_size: int | str
    sort: List[dict]
    fingerprint: str
    disable_cache: bool = False


def to_query_params(request: FetchRequest) -> Dict[str, str]:
    """Encode a fetch request as backend query parameters."""
    params: Dict[str, str] = {}
    for key, value in request.query.items():
        if value is None or value == "" or value == []:
            continue
        if isinstance(value, (list, tuple)):
            params[key] = ",".join(str(v) for v in value)
        elif isinstance(value, bool):
            params[key] = "true" if value else "false"
        else:
            params[key] = str(value)
    params["page"] = str(request.page)
    params["limit"] = str(request.page_size)
    if request.sort:
        params["sortArray"] = canonical_dumps(
            [{"column": s["column"], "isAscending": s["ascending"]} for s in request.sort]
        )
    if request.disable_cache:
        params["disableCache"] = "true"
    return params


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def normalize_sort(sort: Any) -> List[dict]:
    if sort is None:
        return []
    if not isinstance(sort, (list, tuple)):
        raise QueryStateError("SORT_INVALID", "sort must be a list", "sort")
    out: List[dict] = []
    for idx, item in enumerate(sort):
        if not isinstance(item, dict):
            raise QueryStateError("SORT_INVALID", "sort entry must be an object", f"sort[{idx}]")
        column = item.get("column")
        if not isinstance(column, str) or not column:
            raise QueryStateError("SORT_INVALID", "sort column is required", f"sort[{idx}].column")
        ascending = item.get("ascending", item.get("isAscending", True))
        if not isinstance(ascending, bool):
            raise QueryStateError("SORT_INVALID", "ascending must be a boolean", f"sort[{idx}].ascending")
        out.append({"column": column, "ascending": ascending})
    return out


def validate_page_size(page_size: Any) -> int | str:
    if page_size == PAGE_SIZE_ALL:
        return page_size
    if isinstance(page_size, int) and not isinstance(page_size, bool) and page_size in PAGE_SIZE_OPTIONS:
        return page_size
    if isinstance(page_size, str) and page_size.isdigit() and int(page_size) in PAGE_SIZE_OPTIONS:
        return int(page_size)
    raise QueryStateError("PAGE_SIZE_INVALID", f"page_size must be one of {list(PAGE_SIZE_OPTIONS)}", "page_size")


def total_pages_for(total_items: int, page_size: int | str) -> int:
    if total_items <= 0:
        return 0
    if page_size == PAGE_SIZE_ALL:
        return 1
    return int(math.ceil(total_items / int(page_size)))


class QueryCoordinator:
    def __init__(
        self,
        schema: Schema,
        scope: Scope | None = None,
        *,
        page_size: int | str | None = None,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._schema = schema
        self._scope = scope or Scope()
        self._clock = clock
        self._debounce_s = max(0, debounce_ms) / 1000.0

        if page_size is None:
            page_size = HIERARCHY_PAGE_SIZE if schema.allow_hierarchical_parent else DEFAULT_PAGE_SIZE
        self._page_size = validate_page_size(page_size)
        self._page = 1
        self._filters: Dict[str, Any] = {}
        self._sort: List[dict] = []
        self._search_text = ""
        self._search_changed_at: float | None = None
        self._debounced_search = ""

        self._state = IDLE
        self._prev_filters_key = canonical_dumps({"search": "", "filters": {}})
        self._prev_sort_key = canonical_dumps([])
        self._last_fingerprint: str | None = None
        self._last_request: FetchRequest | None = None
        self._latest_request_id = 0
        self._unresolved: ScopeUnresolved | None = None

        self._entities: List[dict] = []
        self._total_items: int | None = None
        self._total_pages: int | None = None
        self._error: Issue | None = None
        self._fetch_count = 0

    # -- read side -------------------------------------------------------

    @property
    def schema(self) -> Schema:
        return self._schema

    @property
    def state(self) -> str:
        return self._state

    @property
    def scope(self) -> Scope:
        return self._scope

    @property
    def page(self) -> int:
        return self._page

    @property
    def page_size(self) -> int | str:
        return self._page_size

    @property
    def filters(self) -> Dict[str, Any]:
        return copy.deepcopy(self._filters)

    @property
    def sort(self) -> List[dict]:
        return copy.deepcopy(self._sort)

    @property
    def search_text(self) -> str:
        return self._search_text

    @property
    def debounced_search(self) -> str:
        return self._debounced_search

    @property
    def entities(self) -> List[dict]:
        return list(self._entities)

    @property
    def error(self) -> Issue | None:
        return copy.deepcopy(self._error)

    @property
    def unresolved(self) -> ScopeUnresolved | None:
        return self._unresolved

    @property
    def fetch_count(self) -> int:
        return self._fetch_count

    @property
    def last_request(self) -> FetchRequest | None:
        return self._last_request

    # -- setters ---------------------------------------------------------

    def set_search_text(self, text: str | None, now: float | None = None) -> None:
        self._search_text = text or ""
        self._search_changed_at = self._clock() if now is None else now

    def flush_search(self) -> None:
        """Promote the pending search text without waiting for the quiet period."""
        self._debounced_search = self._search_text
        self._search_changed_at = None

    def set_filters(self, filters: Dict[str, Any] | None) -> None:
        if filters is not None and not isinstance(filters, dict):
            raise QueryStateError("FILTERS_INVALID", "filters must be an object", "filters")
        cleaned = {}
        for key, value in (filters or {}).items():
            if not isinstance(key, str) or not key:
                raise QueryStateError("FILTERS_INVALID", "filter keys must be strings", "filters")
            if value is None:
                continue
            cleaned[key] = copy.deepcopy(value)
        try:
            canonical_dumps(cleaned)
        except (TypeError, ValueError) as exc:
            raise QueryStateError("FILTERS_INVALID", str(exc), "filters") from exc
        self._filters = cleaned

    def set_filter(self, key: str, value: Any) -> None:
        updated = dict(self._filters)
        if value is None:
            updated.pop(key, None)
        else:
            updated[key] = value
        self.set_filters(updated)

    def set_sort(self, sort: Any) -> None:
        self._sort = normalize_sort(sort)

    def set_page(self, page: Any) -> None:
        if not isinstance(page, int) or isinstance(page, bool) or page < 1:
            raise QueryStateError("PAGE_INVALID", "page must be an integer >= 1", "page")
        self._page = page

    def set_page_size(self, page_size: Any) -> None:
        self._page_size = validate_page_size(page_size)
        self._page = 1

    def set_scope(self, scope: Scope) -> None:
        self._scope = scope

    # -- transitions -----------------------------------------------------

    def tick(self, now: float | None = None) -> bool:
        """Promote the search text once it has been quiet long enough."""
        if self._search_changed_at is None or self._search_text == self._debounced_search:
            return False
        now = self._clock() if now is None else now
        if now - self._search_changed_at < self._debounce_s:
            return False
        self._debounced_search = self._search_text
        self._search_changed_at = None
        return True

    def build_effective_query(self) -> Dict[str, Any] | ScopeUnresolved:
        scope_params = resolve_scope_params(self._schema, self._scope)
        if isinstance(scope_params, ScopeUnresolved):
            return scope_params
        query: Dict[str, Any] = {"search": self._debounced_search.strip()}
        query.update(self._filters)
        query.update(scope_params)
        return query

    def _apply_page_reset(self) -> None:
        filters_key = canonical_dumps({"search": self._debounced_search.strip(), "filters": self._filters})
        sort_key = canonical_dumps(self._sort)
        changed = filters_key != self._prev_filters_key or sort_key != self._prev_sort_key
        if changed and self._page != 1:
            logger.info("query_page_reset schema=%s from_page=%s", self._schema.id, self._page)
            self._page = 1
        self._prev_filters_key = filters_key
        self._prev_sort_key = sort_key

    def _issue_request(self, query: Dict[str, Any], fingerprint: str, disable_cache: bool) -> FetchRequest:
        self._latest_request_id += 1
        request = FetchRequest(
            request_id=self._latest_request_id,
            schema_id=self._schema.id,
            query=copy.deepcopy(query),
            page=self._page,
            page_size=self._page_size,
            sort=copy.deepcopy(self._sort),
            fingerprint=fingerprint,
            disable_cache=disable_cache,
        )
        self._last_fingerprint = fingerprint
        self._last_request = request
        self._state = FETCHING
        self._fetch_count += 1
        logger.info(
            "query_fetch_issued schema=%s request_id=%s page=%s limit=%s forced=%s",
            self._schema.id,
            request.request_id,
            request.page,
            request.page_size,
            disable_cache,
        )
        return request

    def step(self, now: float | None = None) -> FetchRequest | None:
        """Single transition: returns a request iff the effective query changed."""
        self.tick(now)
        self._apply_page_reset()
        query = self.build_effective_query()
        if isinstance(query, ScopeUnresolved):
            if self._unresolved != query:
                logger.info("query_scope_unresolved schema=%s reason=%s", self._schema.id, query.reason)
            self._unresolved = query
            if self._state != FETCHING:
                self._state = RESOLVING
            return None
        self._unresolved = None
        if self._state == RESOLVING:
            self._state = IDLE
        fingerprint = query_fingerprint(query, self._page, self._page_size, self._sort)
        if same_fingerprint(fingerprint, self._last_fingerprint):
            return None
        return self._issue_request(query, fingerprint, disable_cache=False)

    def refresh(self) -> FetchRequest | ScopeUnresolved:
        """Unconditional cold read of the current effective query."""
        self._apply_page_reset()
        query = self.build_effective_query()
        if isinstance(query, ScopeUnresolved):
            self._unresolved = query
            return query
        self._unresolved = None
        fingerprint = query_fingerprint(query, self._page, self._page_size, self._sort)
        return self._issue_request(query, fingerprint, disable_cache=True)

    def retry(self) -> FetchRequest | None:
        if self._last_request is None:
            return None
        last = self._last_request
        self._error = None
        return self._issue_request(last.query, last.fingerprint, disable_cache=True)

    def receive(self, request_id: int, result: Dict[str, Any]) -> bool:
        """Commit a fetch outcome; only the latest issued request may commit."""
        if request_id != self._latest_request_id:
            logger.info(
                "query_stale_response_dropped schema=%s request_id=%s latest=%s",
                self._schema.id,
                request_id,
                self._latest_request_id,
            )
            return False
        if not isinstance(result, dict) or not result.get("ok"):
            errors = result.get("errors") if isinstance(result, dict) else None
            first = errors[0] if errors else {}
            self._error = _issue(
                "FETCH_FAILED",
                first.get("message") or "Failed to load data",
                first.get("path"),
                {"retryable": True, "request_id": request_id, "cause": first.get("code")},
            )
            self._state = ERROR
            logger.warning(
                "query_fetch_failed schema=%s request_id=%s message=%s",
                self._schema.id,
                request_id,
                self._error["message"],
            )
            return True

        data = result.get("data")
        self._entities = [item for item in data if isinstance(item, dict)] if isinstance(data, list) else []
        pagination = result.get("pagination") if isinstance(result.get("pagination"), dict) else {}
        total_items = pagination.get("totalItems")
        total_pages = pagination.get("totalPages")
        self._total_items = total_items if isinstance(total_items, int) and total_items >= 0 else None
        self._total_pages = total_pages if isinstance(total_pages, int) and total_pages >= 0 else None
        self._error = None
        self._state = IDLE
        return True

    def dismiss_error(self) -> None:
        self._error = None
        if self._state == ERROR:
            self._state = IDLE

    def pagination_meta(self) -> Dict[str, Any]:
        total_items = self._total_items if self._total_items is not None else len(self._entities)
        total_pages = total_pages_for(total_items, self._page_size)
        if self._total_pages is not None and self._page_size != PAGE_SIZE_ALL:
            total_pages = self._total_pages
        return {
            "page": self._page,
            "page_size": self._page_size,
            "total_items": total_items,
            "total_pages": total_pages,
        }

    def snapshot(self) -> Dict[str, Any]:
        return {
            "state": self._state,
            "search_text": self._search_text,
            "debounced_search": self._debounced_search,
            "filters": self.filters,
            "sort": self.sort,
            "page": self._page,
            "page_size": self._page_size,
            "scope": self._scope.as_dict(),
            "unresolved_reason": self._unresolved.reason if self._unresolved else None,
            "error": self.error,
            "pagination": self.pagination_meta(),
        }
