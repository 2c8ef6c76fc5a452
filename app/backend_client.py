"""REST client for the data backend.

Every call returns a result dict (``ok``, ``data``, ``errors``) instead of
raising, so session code can treat transport failures like any other issue.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List
from urllib.parse import quote

import httpx

from query_coordinator import FetchRequest, to_query_params


logger = logging.getLogger("metaview.backend")

Result = Dict[str, Any]

PARENT_RELATION_TYPE = "IS_PARENT_OF"


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> dict:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _failed(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Result:
    return {"ok": False, "data": None, "errors": [_issue(code, message, path, detail)]}


class BackendClient:
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        token: str | None = None,
        transport: httpx.BaseTransport | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._owns_client = client is None
        self._client = client or httpx.Client(
            base_url=self._base_url,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "BackendClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        failure_code: str,
        params: dict | None = None,
        json: Any = None,
        headers: dict | None = None,
    ) -> Result:
        try:
            res = self._client.request(method, path, params=params, json=json, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("backend_transport_error method=%s path=%s error=%s", method, path, exc)
            return _failed(failure_code, f"backend unreachable: {exc}", path, {"retryable": True})

        if res.status_code >= 400:
            message = _error_message(res) or f"backend returned {res.status_code}"
            logger.warning("backend_http_error method=%s path=%s status=%s", method, path, res.status_code)
            return _failed(failure_code, message, path, {"status": res.status_code})

        if not res.content:
            return {"ok": True, "data": None, "errors": []}
        try:
            body = res.json()
        except ValueError:
            logger.warning("backend_invalid_json method=%s path=%s", method, path)
            return _failed(failure_code, "backend returned a non-JSON body", path)

        if isinstance(body, dict) and body.get("success") is False:
            message = body.get("error") or body.get("message") or "backend reported failure"
            return _failed(failure_code, str(message), path)
        return {"ok": True, "data": body, "errors": []}

    # -- listing ---------------------------------------------------------

    def list_entities(self, request: FetchRequest) -> Result:
        headers = {"Cache-Control": "no-cache"} if request.disable_cache else None
        res = self._request(
            "GET",
            f"/api/data/{quote(request.schema_id, safe='')}",
            failure_code="FETCH_FAILED",
            params=to_query_params(request),
            headers=headers,
        )
        if not res["ok"]:
            return res
        body = res["data"]
        if isinstance(body, list):
            return {"ok": True, "data": body, "pagination": None, "errors": []}
        if not isinstance(body, dict):
            return _failed("FETCH_FAILED", "unexpected listing response", f"/api/data/{request.schema_id}")
        data = body.get("data")
        return {
            "ok": True,
            "data": data if isinstance(data, list) else [],
            "pagination": body.get("pagination") if isinstance(body.get("pagination"), dict) else None,
            "errors": [],
        }

    def count(self, schema_id: str, user_id: str, company_ids: List[str] | None = None) -> Result:
        params = {"userId": user_id}
        if company_ids:
            params["companyIds"] = ",".join(company_ids)
        res = self._request(
            "GET",
            f"/api/data/{quote(schema_id, safe='')}/count",
            failure_code="FETCH_FAILED",
            params=params,
        )
        if not res["ok"]:
            return res
        body = res["data"] if isinstance(res["data"], dict) else {}
        payload = body.get("data") if isinstance(body.get("data"), dict) else body
        counts = {
            "assignedToCount": _count_value(payload.get("assignedToCount")),
            "initiatedByCount": _count_value(payload.get("initiatedByCount")),
        }
        return {"ok": True, "data": counts, "errors": []}

    # -- mutations -------------------------------------------------------

    def create(self, schema_id: str, values: dict) -> Result:
        return self._request(
            "POST", f"/api/data/{quote(schema_id, safe='')}", failure_code="MUTATION_FAILED", json=values
        )

    def update(self, schema_id: str, entity_id: str, values: dict) -> Result:
        return self._request(
            "PUT",
            f"/api/data/{quote(schema_id, safe='')}/{quote(str(entity_id), safe='')}",
            failure_code="MUTATION_FAILED",
            json=values,
        )

    def delete(self, schema_id: str, entity_id: str) -> Result:
        return self._request(
            "DELETE",
            f"/api/data/{quote(schema_id, safe='')}/{quote(str(entity_id), safe='')}",
            failure_code="MUTATION_FAILED",
        )

    # -- relations -------------------------------------------------------

    def sync_parent_relation(self, schema_id: str, child_id: str, parent_id: str | None) -> Result:
        """Make the IS_PARENT_OF relation pointing at ``child_id`` match ``parent_id``.

        Stale parent links are removed and the new one is added when missing.
        Stops at the first failed call.
        """
        res = self._request(
            "GET",
            "/api/relations",
            failure_code="RELATION_SYNC_FAILED",
            params={
                "targetSchema": schema_id,
                "targetId": str(child_id),
                "relationTypeId": PARENT_RELATION_TYPE,
            },
        )
        if not res["ok"]:
            return res
        body = res["data"]
        if isinstance(body, dict):
            body = body.get("data")
        existing = [r for r in body if isinstance(r, dict)] if isinstance(body, list) else []

        removed: List[str] = []
        kept = False
        for relation in existing:
            if parent_id is not None and str(relation.get("sourceId")) == str(parent_id) and not kept:
                kept = True
                continue
            relation_id = relation.get("id")
            if relation_id in (None, ""):
                continue
            res = self._request(
                "DELETE",
                f"/api/relations/{quote(str(relation_id), safe='')}",
                failure_code="RELATION_SYNC_FAILED",
            )
            if not res["ok"]:
                return res
            removed.append(str(relation_id))

        created = False
        if parent_id is not None and not kept:
            res = self._request(
                "POST",
                "/api/relations",
                failure_code="RELATION_SYNC_FAILED",
                json={
                    "sourceSchema": schema_id,
                    "sourceId": str(parent_id),
                    "targetSchema": schema_id,
                    "targetId": str(child_id),
                    "relationTypeId": PARENT_RELATION_TYPE,
                },
            )
            if not res["ok"]:
                return res
            created = True
        logger.info(
            "backend_parent_relation schema=%s child=%s parent=%s removed=%s created=%s",
            schema_id,
            child_id,
            parent_id,
            len(removed),
            created,
        )
        return {"ok": True, "data": {"removed": removed, "created": created}, "errors": []}

    # -- schemas ---------------------------------------------------------

    def get_schema(self, schema_id: str) -> Result:
        res = self._request("GET", f"/api/schemas/{quote(schema_id, safe='')}", failure_code="SCHEMA_LOAD_FAILED")
        if not res["ok"]:
            return res
        body = res["data"]
        if isinstance(body, dict) and isinstance(body.get("data"), dict):
            body = body["data"]
        if not isinstance(body, dict):
            return _failed("SCHEMA_LOAD_FAILED", "schema response must be an object", f"/api/schemas/{schema_id}")
        return {"ok": True, "data": body, "errors": []}


def _error_message(res: httpx.Response) -> str | None:
    try:
        body = res.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        message = body.get("error") or body.get("message") or body.get("detail")
        if isinstance(message, str):
            return message
    return None


def _count_value(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        return int(value or 0)
    except (TypeError, ValueError, OverflowError):
        logger.warning("backend_count_invalid value=%r", value)
        return 0
