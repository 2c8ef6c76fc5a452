import json
import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from query_coordinator import (
    ERROR,
    FETCHING,
    IDLE,
    RESOLVING,
    QueryCoordinator,
    QueryStateError,
    to_query_params,
    total_pages_for,
    validate_page_size,
)
from schema_model import load_schema
from scope import ALL_COMPANIES, Scope


def _schema(**extra) -> object:
    return load_schema({"id": "products", "fields": [{"id": "name", "component": "text"}], **extra})


def _ok(data: list, total_items: int | None = None, total_pages: int | None = None) -> dict:
    pagination = {}
    if total_items is not None:
        pagination["totalItems"] = total_items
    if total_pages is not None:
        pagination["totalPages"] = total_pages
    return {"ok": True, "data": data, "pagination": pagination, "errors": []}


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestQueryCoordinator(unittest.TestCase):
    def _coordinator(self, **kwargs) -> QueryCoordinator:
        self.clock = FakeClock()
        scope = kwargs.pop("scope", Scope(company_id="1"))
        return QueryCoordinator(kwargs.pop("schema", _schema()), scope, clock=self.clock, **kwargs)

    def test_first_step_fetches_then_deduplicates(self) -> None:
        coord = self._coordinator()
        first = coord.step()
        self.assertIsNotNone(first)
        self.assertEqual(coord.state, FETCHING)
        coord.receive(first.request_id, _ok([{"id": "1"}]))
        self.assertEqual(coord.state, IDLE)
        self.assertIsNone(coord.step())
        self.assertEqual(coord.fetch_count, 1)

    def test_equal_filters_in_different_key_order_do_not_refetch(self) -> None:
        coord = self._coordinator()
        coord.set_filters({"status": "open", "type": "a"})
        req = coord.step()
        coord.receive(req.request_id, _ok([]))
        coord.set_filters({"type": "a", "status": "open"})
        self.assertIsNone(coord.step())
        self.assertEqual(coord.fetch_count, 1)

    def test_filter_change_resets_page(self) -> None:
        coord = self._coordinator()
        coord.receive(coord.step().request_id, _ok([]))
        coord.set_page(3)
        req = coord.step()
        self.assertEqual(req.page, 3)
        coord.receive(req.request_id, _ok([]))
        coord.set_filter("status", "closed")
        req = coord.step()
        self.assertEqual(req.page, 1)
        self.assertEqual(coord.page, 1)

    def test_sort_change_resets_page(self) -> None:
        coord = self._coordinator()
        coord.set_page(2)
        coord.set_sort([{"column": "name", "isAscending": False}])
        req = coord.step()
        self.assertEqual(req.page, 1)
        self.assertEqual(req.sort, [{"column": "name", "ascending": False}])

    def test_page_change_keeps_filters(self) -> None:
        coord = self._coordinator()
        coord.set_filters({"status": "open"})
        coord.receive(coord.step().request_id, _ok([]))
        coord.set_page(2)
        req = coord.step()
        self.assertEqual(req.page, 2)
        self.assertEqual(req.query["status"], "open")

    def test_page_size_change_resets_page(self) -> None:
        coord = self._coordinator()
        coord.set_page(4)
        coord.set_page_size(25)
        self.assertEqual(coord.page, 1)
        with self.assertRaises(QueryStateError):
            coord.set_page_size(7)
        with self.assertRaises(QueryStateError):
            coord.set_page(0)

    def test_search_is_debounced(self) -> None:
        coord = self._coordinator(debounce_ms=600)
        coord.receive(coord.step().request_id, _ok([]))
        coord.set_search_text("wid")
        self.clock.now = 0.3
        self.assertIsNone(coord.step())
        coord.set_search_text("widget", now=0.3)
        self.clock.now = 0.8
        self.assertIsNone(coord.step())
        self.clock.now = 1.0
        req = coord.step()
        self.assertEqual(req.query["search"], "widget")
        self.assertEqual(coord.fetch_count, 2)

    def test_unresolved_scope_issues_nothing(self) -> None:
        coord = self._coordinator(scope=Scope(company_id=ALL_COMPANIES))
        self.assertIsNone(coord.step())
        self.assertEqual(coord.state, RESOLVING)
        self.assertEqual(coord.unresolved.reason, "company_context_missing")
        coord.set_scope(Scope(company_id=ALL_COMPANIES, available_company_ids=("1", "2")))
        req = coord.step()
        self.assertEqual(req.query["companyIds"], ["1", "2"])
        self.assertIsNone(coord.unresolved)

    def test_refresh_bypasses_equality_gate(self) -> None:
        coord = self._coordinator()
        coord.receive(coord.step().request_id, _ok([]))
        forced = coord.refresh()
        self.assertTrue(forced.disable_cache)
        self.assertEqual(to_query_params(forced)["disableCache"], "true")
        self.assertEqual(coord.fetch_count, 2)

    def test_stale_response_is_dropped(self) -> None:
        coord = self._coordinator()
        first = coord.step()
        coord.set_filter("status", "open")
        second = coord.step()
        coord.receive(second.request_id, _ok([{"id": "new"}]))
        with self.assertLogs("metaview.query", level="INFO"):
            committed = coord.receive(first.request_id, _ok([{"id": "old"}]))
        self.assertFalse(committed)
        self.assertEqual(coord.entities, [{"id": "new"}])

    def test_failure_keeps_last_good_entities(self) -> None:
        coord = self._coordinator()
        coord.receive(coord.step().request_id, _ok([{"id": "1"}], total_items=1))
        req = coord.refresh()
        coord.receive(req.request_id, {"ok": False, "errors": [{"code": "FETCH_FAILED", "message": "boom"}]})
        self.assertEqual(coord.state, ERROR)
        self.assertEqual(coord.entities, [{"id": "1"}])
        self.assertEqual(coord.error["code"], "FETCH_FAILED")
        self.assertTrue(coord.error["detail"]["retryable"])
        retried = coord.retry()
        self.assertTrue(retried.disable_cache)
        self.assertIsNone(coord.error)
        coord.dismiss_error()
        self.assertEqual(coord.state, FETCHING)

    def test_dismiss_error(self) -> None:
        coord = self._coordinator()
        req = coord.step()
        coord.receive(req.request_id, {"ok": False, "errors": []})
        coord.dismiss_error()
        self.assertEqual(coord.state, IDLE)
        self.assertIsNone(coord.error)

    def test_all_page_size_with_empty_result(self) -> None:
        coord = self._coordinator(page_size="all")
        coord.receive(coord.step().request_id, _ok([]))
        meta = coord.pagination_meta()
        self.assertEqual(meta["total_items"], 0)
        self.assertEqual(meta["total_pages"], 0)

    def test_pagination_prefers_backend_totals(self) -> None:
        coord = self._coordinator()
        coord.receive(coord.step().request_id, _ok([{"id": "1"}], total_items=120, total_pages=3))
        self.assertEqual(coord.pagination_meta(), {"page": 1, "page_size": 50, "total_items": 120, "total_pages": 3})

    def test_hierarchy_schema_defaults_to_large_pages(self) -> None:
        coord = self._coordinator(schema=_schema(allowHierarchicalParent=True))
        self.assertEqual(coord.page_size, 500)

    def test_query_params_encoding(self) -> None:
        schema = _schema(allowAssignTo=True)
        scope = Scope(company_id=ALL_COMPANIES, available_company_ids=("1", "2"), assignment_enabled=True, assignment_user_id="u1")
        coord = self._coordinator(schema=schema, scope=scope)
        coord.set_sort([{"column": "name", "ascending": True}])
        params = to_query_params(coord.step())
        self.assertEqual(params["companyIds"], "1,2")
        self.assertEqual(params["assignedToIds"], "u1")
        self.assertEqual(params["limit"], "50")
        self.assertEqual(params["page"], "1")
        self.assertNotIn("search", params)
        self.assertEqual(json.loads(params["sortArray"]), [{"column": "name", "isAscending": True}])

    def test_page_size_must_be_integer_or_all(self) -> None:
        self.assertEqual(validate_page_size(25), 25)
        self.assertEqual(validate_page_size("100"), 100)
        self.assertEqual(validate_page_size("all"), "all")
        for bad in (10.0, True, "10.0", None):
            with self.assertRaises(QueryStateError):
                validate_page_size(bad)
        coord = self._coordinator()
        with self.assertRaises(QueryStateError):
            coord.set_page_size(50.0)
        self.assertEqual(to_query_params(coord.step())["limit"], "50")

    def test_total_pages_for(self) -> None:
        self.assertEqual(total_pages_for(0, 50), 0)
        self.assertEqual(total_pages_for(0, "all"), 0)
        self.assertEqual(total_pages_for(9, "all"), 1)
        self.assertEqual(total_pages_for(101, 50), 3)


if __name__ == "__main__":
    unittest.main()
