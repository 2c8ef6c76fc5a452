import json
import os
import sys
import unittest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

import httpx
from fastapi.testclient import TestClient

os.environ["METAVIEW_SEARCH_DEBOUNCE_MS"] = "0"
os.environ["METAVIEW_BACKEND_URL"] = "http://backend.test"

import app.main as main
from app.backend_client import BackendClient


SCHEMAS = {
    "tenders": {
        "id": "tenders",
        "pluralName": "Tenders",
        "singularName": "Tender",
        "allowHierarchicalParent": True,
        "allowAssignTo": True,
        "fields": [
            {"id": "title", "label": "Title", "component": "text", "role": "title"},
            {"id": "status", "label": "Status", "component": "select", "role": "status"},
        ],
    },
    "vendors": {
        "id": "vendors",
        "pluralName": "Vendors",
        "singularName": "Vendor",
        "fields": [{"id": "name", "label": "Name", "component": "text", "role": "title"}],
    },
}


class Backend:
    def __init__(self) -> None:
        self.records = {
            "tenders": [
                {"id": "A", "title": "Harbor <works>", "companyId": "c1"},
                {"id": "B", "title": "Pier", "parent": "A", "companyId": "c1"},
                {"id": "C", "title": "Crane", "parent": "B", "companyId": "c2"},
            ],
            "vendors": [
                {"id": "v1", "name": "Acme", "companyId": "c1"},
                {"id": "v2", "name": "Globex", "companyId": "c2"},
            ],
        }
        self.fail_delete: set = set()
        self.list_params: list = []
        self.relations: list = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        parts = request.url.path.strip("/").split("/")
        if parts[1] == "relations":
            if request.method == "POST":
                self.relations.append(json.loads(request.content))
            return httpx.Response(200, json={"success": True, "data": []})
        if parts[1] == "schemas":
            schema = SCHEMAS.get(parts[2])
            if schema is None:
                return httpx.Response(404, json={"success": False, "error": "unknown schema"})
            return httpx.Response(200, json={"success": True, "data": schema})
        schema_id = parts[2]
        if request.method == "GET" and len(parts) == 4:
            return httpx.Response(200, json={"success": True, "data": {"assignedToCount": 2, "initiatedByCount": 5}})
        if request.method == "GET":
            self.list_params.append(dict(request.url.params))
            return httpx.Response(200, json={"success": True, "data": self.records[schema_id]})
        if request.method == "POST":
            record = json.loads(request.content)
            record["id"] = "new"
            self.records[schema_id].append(record)
            return httpx.Response(200, json={"success": True, "data": record})
        if request.method == "DELETE":
            if parts[3] in self.fail_delete:
                return httpx.Response(500, json={"success": False, "error": "locked"})
            self.records[schema_id] = [r for r in self.records[schema_id] if r["id"] != parts[3]]
            return httpx.Response(200, json={"success": True})
        if request.method == "PUT":
            for record in self.records[schema_id]:
                if record["id"] == parts[3]:
                    record.update(json.loads(request.content))
                    return httpx.Response(200, json={"success": True, "data": record})
            return httpx.Response(404, json={"success": False, "error": "not found"})
        return httpx.Response(405)


class TestAppMain(unittest.TestCase):
    def setUp(self) -> None:
        self.backend = Backend()
        main._backend = BackendClient("http://backend.test", transport=httpx.MockTransport(self.backend))
        main._SESSIONS.clear()
        self.client = TestClient(main.app)

    def _open(self, schema_id: str = "tenders", **body) -> dict:
        body.setdefault("scope", {"companyId": "c1"})
        res = self.client.post(f"/pages/{schema_id}/sessions", json=body)
        self.assertEqual(res.status_code, 201, res.text)
        return res.json()

    def test_create_session_loads_schema_and_fetches(self) -> None:
        body = self._open()
        self.assertTrue(body["ok"])
        self.assertEqual(body["view"]["view_mode"], "hierarchy")
        self.assertEqual(body["view"]["tree"]["total_nodes"], 3)
        self.assertTrue(body["fetch"]["fetched"])
        self.assertEqual(self.backend.list_params[0]["companyIds"], "c1")
        self.assertEqual(self.backend.list_params[0]["limit"], "500")

    def test_inline_schema_and_view_fallback(self) -> None:
        body = self._open("vendors", schema=SCHEMAS["vendors"], view_mode="hierarchy")
        self.assertEqual(body["view"]["view_mode"], "table")
        self.assertEqual(body["view"]["columns"][0]["id"], "actions")

    def test_unknown_schema(self) -> None:
        res = self.client.post("/pages/ghosts/sessions", json={})
        self.assertEqual(res.status_code, 502)
        self.assertEqual(res.json()["errors"][0]["code"], "SCHEMA_LOAD_FAILED")

    def test_invalid_schema(self) -> None:
        bad = {"id": "bad", "fields": [{"id": "x", "component": "slider"}]}
        res = self.client.post("/pages/bad/sessions", json={"schema": bad})
        self.assertEqual(res.status_code, 422)
        body = res.json()
        self.assertEqual(body["errors"][0]["code"], "SCHEMA_INVALID")
        self.assertEqual(body["errors"][0]["detail"]["issues"][0]["code"], "FIELD_COMPONENT_UNKNOWN")

    def test_missing_session(self) -> None:
        res = self.client.get("/sessions/nope")
        self.assertEqual(res.status_code, 404)
        self.assertEqual(res.json()["errors"][0]["code"], "SESSION_NOT_FOUND")

    def test_query_update_fetches_and_resets_page(self) -> None:
        session_id = self._open("vendors")["session"]["session_id"]
        res = self.client.patch(f"/sessions/{session_id}/query", json={"page": 3})
        self.assertEqual(res.json()["session"]["query"]["page"], 3)
        res = self.client.patch(f"/sessions/{session_id}/query", json={"filters": {"status": "active"}, "search": "ac"})
        body = res.json()
        self.assertTrue(body["ok"])
        self.assertEqual(body["session"]["query"]["page"], 1)
        self.assertEqual(self.backend.list_params[-1]["status"], "active")
        self.assertEqual(self.backend.list_params[-1]["search"], "ac")

    def test_query_validation_error(self) -> None:
        session_id = self._open("vendors")["session"]["session_id"]
        res = self.client.patch(f"/sessions/{session_id}/query", json={"page_size": 7})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["code"], "PAGE_SIZE_INVALID")

    def test_scope_all_companies_groups(self) -> None:
        session_id = self._open("vendors")["session"]["session_id"]
        res = self.client.put(
            f"/sessions/{session_id}/scope", json={"companyId": "-1", "availableCompanyIds": ["c1", "c2"]}
        )
        view = res.json()["view"]
        self.assertEqual([g["key"] for g in view["groups"]], ["c1", "c2"])
        self.assertFalse(view["can_create"])
        self.assertEqual(self.backend.list_params[-1]["companyIds"], "c1,c2")

    def test_view_switch_changes_page_size(self) -> None:
        session_id = self._open()["session"]["session_id"]
        res = self.client.put(f"/sessions/{session_id}/view", json={"view_mode": "grid", "show_metadata": True})
        body = res.json()
        self.assertEqual(body["view"]["view_mode"], "grid")
        self.assertEqual(body["session"]["query"]["page_size"], 50)
        self.assertEqual(self.backend.list_params[-1]["limit"], "50")

    def test_refresh_forces_cold_read(self) -> None:
        session_id = self._open("vendors")["session"]["session_id"]
        self.client.post(f"/sessions/{session_id}/refresh", json={})
        self.assertEqual(self.backend.list_params[-1]["disableCache"], "true")
        self.assertEqual(len(self.backend.list_params), 2)

    def test_create_record(self) -> None:
        session_id = self._open("vendors")["session"]["session_id"]
        res = self.client.post(f"/sessions/{session_id}/records", json={"values": {"name": "Initech"}})
        self.assertEqual(res.status_code, 201)
        body = res.json()
        self.assertEqual(body["record"]["data"]["name"], "Initech")
        self.assertEqual(len(body["view"]["items"]), 3)

    def test_cascade_partial_failure_response(self) -> None:
        session_id = self._open()["session"]["session_id"]
        self.backend.fail_delete = {"C"}
        res = self.client.delete(f"/sessions/{session_id}/records/A")
        self.assertEqual(res.status_code, 409)
        error = res.json()["errors"][0]
        self.assertEqual(error["code"], "CASCADE_PARTIAL_FAILURE")
        self.assertEqual(error["message"], "2 of 3 items deleted; resolve and retry")
        self.assertEqual(error["detail"]["deleted"], ["A", "B"])

    def test_delete_record(self) -> None:
        session_id = self._open("vendors")["session"]["session_id"]
        res = self.client.delete(f"/sessions/{session_id}/records/v1")
        body = res.json()
        self.assertTrue(body["ok"])
        self.assertEqual(body["deleted"], ["v1"])

    def test_change_parent(self) -> None:
        session_id = self._open()["session"]["session_id"]
        res = self.client.put(f"/sessions/{session_id}/records/C/parent", json={"parent_id": "A"})
        self.assertTrue(res.json()["ok"])
        roots = res.json()["view"]["tree"]["roots"]
        self.assertEqual(sorted(c["id"] for c in roots[0]["children"]), ["B", "C"])
        self.assertEqual(res.json()["warnings"], [])
        self.assertEqual(self.backend.relations[0]["sourceId"], "A")
        self.assertEqual(self.backend.relations[0]["targetId"], "C")

    def test_change_parent_of_unknown_record(self) -> None:
        session_id = self._open()["session"]["session_id"]
        res = self.client.put(f"/sessions/{session_id}/records/ghost/parent", json={"parent_id": "A"})
        self.assertEqual(res.status_code, 404)
        self.assertEqual(res.json()["errors"][0]["code"], "ENTITY_NOT_FOUND")

    def test_assignment_counts(self) -> None:
        body = self._open(scope={"companyId": "c1", "assignmentEnabled": True, "assignmentUserId": "u1"})
        res = self.client.get(f"/sessions/{body['session']['session_id']}/assignment-counts")
        self.assertEqual(res.json()["counts"], {"assignedToCount": 2, "initiatedByCount": 5})

    def test_render_html_is_escaped(self) -> None:
        session_id = self._open()["session"]["session_id"]
        res = self.client.get(f"/sessions/{session_id}/render")
        self.assertEqual(res.status_code, 200)
        self.assertIn("text/html", res.headers["content-type"])
        self.assertIn("Harbor &lt;works&gt;", res.text)
        self.assertIn('data-action="add_child"', res.text)

    def test_render_search_opens_ancestors_of_matches(self) -> None:
        session_id = self._open()["session"]["session_id"]
        self.client.patch(f"/sessions/{session_id}/query", json={"search": "crane", "flush_search": True})
        html = self.client.get(f"/sessions/{session_id}/render").text
        self.assertIn('data-id="A" data-expanded="true"', html)
        self.assertIn('data-id="B" data-expanded="true"', html)
        self.assertIn('data-id="C">', html)

    def test_render_table_and_cards(self) -> None:
        session_id = self._open("vendors")["session"]["session_id"]
        table = self.client.get(f"/sessions/{session_id}/render").text
        self.assertIn('class="mv-table"', table)
        self.assertIn("Acme", table)
        self.client.put(f"/sessions/{session_id}/view", json={"view_mode": "grid"})
        grid = self.client.get(f"/sessions/{session_id}/render").text
        self.assertIn('class="mv-card"', grid)

    def test_close_session(self) -> None:
        session_id = self._open("vendors")["session"]["session_id"]
        self.assertTrue(self.client.delete(f"/sessions/{session_id}").json()["ok"])
        self.assertEqual(self.client.get(f"/sessions/{session_id}").status_code, 404)


if __name__ == "__main__":
    unittest.main()
