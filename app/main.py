"""FastAPI app serving schema-driven listing pages."""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Dict

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app import settings
from app.backend_client import BackendClient
from app.page_session import PageSession
from app.render import render_page
from query_coordinator import QueryStateError
from schema_model import SchemaValidationError, load_schema
from scope import Scope


app = FastAPI(title="metaview")
logger = logging.getLogger("metaview")
logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL, logging.INFO))

_LOCAL_CORS_ORIGINS = {
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:3000",
    "http://127.0.0.1:3000",
}
_CORS_ORIGINS = _LOCAL_CORS_ORIGINS | settings.CORS_ORIGINS

app.add_middleware(
    CORSMiddleware,
    allow_origins=sorted(_CORS_ORIGINS),
    allow_origin_regex=r"http://localhost:\d+|http://127\.0\.0\.1:\d+",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_backend: BackendClient | None = None
_SESSIONS: Dict[str, PageSession] = {}


def _get_backend() -> BackendClient:
    global _backend
    if _backend is None:
        _backend = BackendClient(
            settings.BACKEND_URL,
            timeout=settings.BACKEND_TIMEOUT,
            token=settings.BACKEND_TOKEN or None,
        )
    return _backend


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    body = {
        "ok": False,
        "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
        "warnings": [],
    }
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _ok_response(payload: dict, warnings: list | None = None, status: int = 200) -> JSONResponse:
    body = {"ok": True, **payload, "errors": [], "warnings": warnings or []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _result_error(result: dict, status: int = 400, extra: dict | None = None) -> JSONResponse:
    first = (result.get("errors") or [{}])[0]
    detail = dict(first.get("detail") or {})
    if extra:
        detail.update(extra)
    return _error_response(
        first.get("code") or "MUTATION_FAILED",
        first.get("message") or "operation failed",
        first.get("path"),
        detail or None,
        status=status,
    )


async def _safe_json(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _session_payload(session: PageSession, fetch: dict | None = None) -> dict:
    return {"session": session.snapshot(), "view": session.projection(), "fetch": fetch}


def _get_session(session_id: str) -> PageSession | None:
    return _SESSIONS.get(session_id)


def _session_missing(session_id: str) -> JSONResponse:
    return _error_response("SESSION_NOT_FOUND", f"no page session {session_id}", "session_id", status=404)


@app.get("/health")
async def health() -> dict:
    return {"ok": True, "sessions": len(_SESSIONS)}


@app.post("/pages/{schema_id}/sessions")
async def create_session(schema_id: str, request: Request):
    body = await _safe_json(request)
    raw_schema = body.get("schema")
    if raw_schema is None:
        loaded = _get_backend().get_schema(schema_id)
        if not loaded["ok"]:
            return _result_error(loaded, status=502)
        raw_schema = loaded["data"]
    try:
        schema = load_schema(raw_schema)
    except SchemaValidationError as exc:
        return _error_response("SCHEMA_INVALID", str(exc), "schema", {"issues": exc.issues}, status=422)
    if schema.id != schema_id:
        return _error_response("SCHEMA_ID_MISMATCH", f"schema id {schema.id!r} does not match {schema_id!r}", "schema.id")
    try:
        scope = Scope.from_dict(body.get("scope"))
    except ValueError as exc:
        return _error_response("SCOPE_INVALID", str(exc), "scope")

    session = PageSession(
        schema,
        _get_backend(),
        scope,
        view_mode=body.get("view_mode"),
        debounce_ms=settings.SEARCH_DEBOUNCE_MS,
        default_page_size=settings.DEFAULT_PAGE_SIZE,
        hierarchy_page_size=settings.HIERARCHY_PAGE_SIZE,
    )
    _SESSIONS[session.session_id] = session
    logger.info("session_created session=%s schema=%s view=%s", session.session_id, schema.id, session.view_mode)
    fetch = session.sync()
    return _ok_response(_session_payload(session, fetch), status=201)


@app.get("/sessions/{session_id}")
async def get_session(session_id: str):
    session = _get_session(session_id)
    if session is None:
        return _session_missing(session_id)
    fetch = session.sync()
    return _ok_response(_session_payload(session, fetch))


@app.patch("/sessions/{session_id}/query")
async def update_query(session_id: str, request: Request):
    session = _get_session(session_id)
    if session is None:
        return _session_missing(session_id)
    body = await _safe_json(request)
    try:
        if "search" in body:
            session.set_search_text(body.get("search"))
            if body.get("flush_search"):
                session.coordinator.flush_search()
        if "filters" in body:
            session.set_filters(body.get("filters"))
        filter_update = body.get("filter")
        if isinstance(filter_update, dict) and isinstance(filter_update.get("key"), str):
            session.set_filter(filter_update["key"], filter_update.get("value"))
        if "sort" in body:
            session.set_sort(body.get("sort"))
        if "page_size" in body:
            session.set_page_size(body.get("page_size"))
        if "page" in body:
            session.set_page(body.get("page"))
    except QueryStateError as exc:
        return _error_response(exc.code, exc.message, exc.path)
    fetch = session.sync()
    return _ok_response(_session_payload(session, fetch))


@app.put("/sessions/{session_id}/scope")
async def update_scope(session_id: str, request: Request):
    session = _get_session(session_id)
    if session is None:
        return _session_missing(session_id)
    body = await _safe_json(request)
    try:
        scope = Scope.from_dict(body)
    except ValueError as exc:
        return _error_response("SCOPE_INVALID", str(exc), "scope")
    session.set_scope(scope)
    fetch = session.sync()
    return _ok_response(_session_payload(session, fetch))


@app.put("/sessions/{session_id}/view")
async def update_view(session_id: str, request: Request):
    session = _get_session(session_id)
    if session is None:
        return _session_missing(session_id)
    body = await _safe_json(request)
    if "view_mode" in body:
        session.set_view_mode(body.get("view_mode"))
    if "show_metadata" in body:
        session.set_show_metadata(bool(body.get("show_metadata")))
    if body.get("expand_all"):
        session.expand_all()
    if body.get("collapse_all"):
        session.collapse_all()
    fetch = session.sync()
    return _ok_response(_session_payload(session, fetch))


@app.post("/sessions/{session_id}/refresh")
async def refresh_session(session_id: str, request: Request):
    session = _get_session(session_id)
    if session is None:
        return _session_missing(session_id)
    body = await _safe_json(request)
    if body.get("dismiss_error"):
        session.dismiss_error()
        return _ok_response(_session_payload(session))
    fetch = session.retry() if body.get("retry") else session.refresh()
    return _ok_response(_session_payload(session, fetch))


@app.post("/sessions/{session_id}/records")
async def create_record(session_id: str, request: Request):
    session = _get_session(session_id)
    if session is None:
        return _session_missing(session_id)
    body = await _safe_json(request)
    values = body.get("values") if isinstance(body.get("values"), dict) else {}
    result = session.create(values, parent_id=body.get("parent_id"))
    if not result["ok"]:
        return _result_error(result, extra={"values": values})
    return _ok_response(
        {"record": result.get("data"), **_session_payload(session, result.get("refresh"))},
        warnings=result.get("warnings"),
        status=201,
    )


@app.put("/sessions/{session_id}/records/{record_id}")
async def update_record(session_id: str, record_id: str, request: Request):
    session = _get_session(session_id)
    if session is None:
        return _session_missing(session_id)
    body = await _safe_json(request)
    values = body.get("values") if isinstance(body.get("values"), dict) else {}
    result = session.update(record_id, values)
    if not result["ok"]:
        return _result_error(result, extra={"values": values})
    return _ok_response({"record": result.get("data"), **_session_payload(session, result.get("refresh"))})


@app.delete("/sessions/{session_id}/records/{record_id}")
async def delete_record(session_id: str, record_id: str):
    session = _get_session(session_id)
    if session is None:
        return _session_missing(session_id)
    result = session.delete(record_id)
    if not result["ok"]:
        return _result_error(result, status=409 if result.get("deleted") else 400)
    return _ok_response({"deleted": result["deleted"], **_session_payload(session, result.get("refresh"))})


@app.put("/sessions/{session_id}/records/{record_id}/parent")
async def change_record_parent(session_id: str, record_id: str, request: Request):
    session = _get_session(session_id)
    if session is None:
        return _session_missing(session_id)
    body = await _safe_json(request)
    result = session.change_parent(record_id, body.get("parent_id"))
    if not result["ok"]:
        not_found = result["errors"][0].get("code") == "ENTITY_NOT_FOUND"
        return _result_error(result, status=404 if not_found else 400)
    return _ok_response(_session_payload(session, result.get("refresh")), warnings=result.get("warnings"))


@app.get("/sessions/{session_id}/assignment-counts")
async def assignment_counts(session_id: str):
    session = _get_session(session_id)
    if session is None:
        return _session_missing(session_id)
    result = session.assignment_counts()
    if not result["ok"]:
        return _result_error(result, status=502)
    return _ok_response({"counts": result["data"]})


@app.get("/sessions/{session_id}/render")
async def render_session(session_id: str):
    session = _get_session(session_id)
    if session is None:
        return _session_missing(session_id)
    session.sync()
    return HTMLResponse(render_page(session.projection()))


@app.delete("/sessions/{session_id}")
async def close_session(session_id: str):
    session = _SESSIONS.pop(session_id, None)
    if session is None:
        return _session_missing(session_id)
    logger.info("session_closed session=%s schema=%s", session_id, session.schema.id)
    return _ok_response({"session_id": session_id})
