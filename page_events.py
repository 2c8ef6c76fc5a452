"""In-memory event bus for listing-page notifications."""

from __future__ import annotations

import copy
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from metaview.canonical_json import canonical_dumps


logger = logging.getLogger("metaview.events")

Event = Dict[str, Any]
Handler = Callable[[Event], None]

EVENT_NAMES = {
    "query.fetched",
    "query.failed",
    "query.stale_dropped",
    "entity.created",
    "entity.updated",
    "entity.deleted",
    "entity.parent_changed",
    "cascade.partial_failure",
    "hierarchy.expand_all",
    "hierarchy.collapse_all",
}


@dataclass
class EventValidationError(Exception):
    code: str
    message: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


def _raise(code: str, message: str, path: str | None = None) -> None:
    raise EventValidationError(code=code, message=message, path=path)


def _validate_occurred_at(value: Any) -> None:
    if not isinstance(value, str) or not value.endswith("Z"):
        _raise("META_OCCURRED_AT_INVALID", "occurred_at must be an ISO8601 string ending with 'Z'", "meta.occurred_at")
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        _raise("META_OCCURRED_AT_INVALID", "occurred_at must be ISO8601", "meta.occurred_at")


def validate_event(event: Any) -> None:
    if not isinstance(event, dict):
        _raise("EVENT_INVALID", "event must be object")
    name = event.get("name")
    if name not in EVENT_NAMES:
        _raise("EVENT_NAME_INVALID", f"unknown event name: {name!r}", "name")

    payload = event.get("payload")
    if not isinstance(payload, dict):
        _raise("PAYLOAD_INVALID", "payload must be an object", "payload")
    try:
        canonical_dumps(payload)
    except (TypeError, ValueError) as exc:
        _raise("PAYLOAD_INVALID", str(exc), "payload")

    meta = event.get("meta")
    if not isinstance(meta, dict):
        _raise("META_INVALID", "meta must be object", "meta")
    if not isinstance(meta.get("event_id"), str):
        _raise("META_EVENT_ID_INVALID", "event_id must be string", "meta.event_id")
    _validate_occurred_at(meta.get("occurred_at"))
    if not isinstance(meta.get("schema_id"), str):
        _raise("META_SCHEMA_ID_INVALID", "schema_id must be string", "meta.schema_id")
    session_id = meta.get("session_id")
    if session_id is not None and not isinstance(session_id, str):
        _raise("META_SESSION_ID_INVALID", "session_id must be string or null", "meta.session_id")
    if meta.get("schema_version") != "1":
        _raise("META_SCHEMA_VERSION_INVALID", "schema_version must be '1'", "meta.schema_version")


def make_event(name: str, payload: dict, schema_id: str, session_id: str | None = None) -> Event:
    event = {
        "name": name,
        "payload": copy.deepcopy(payload),
        "meta": {
            "event_id": str(uuid.uuid4()),
            "occurred_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "schema_id": schema_id,
            "session_id": session_id,
            "schema_version": "1",
        },
    }
    validate_event(event)
    return event


class PageEventBus:
    def __init__(self, history_limit: int = 200) -> None:
        self._subs: Dict[str, List[Handler]] = {}
        self._history: List[Event] = []
        self._history_limit = history_limit

    def subscribe(self, name: str, handler: Handler) -> None:
        self._subs.setdefault(name, []).append(handler)

    def unsubscribe(self, name: str, handler: Handler) -> bool:
        handlers = self._subs.get(name)
        if not handlers or handler not in handlers:
            return False
        handlers.remove(handler)
        if not handlers:
            del self._subs[name]
        return True

    def publish(self, event: Event) -> None:
        validate_event(event)
        self._history.append(copy.deepcopy(event))
        if len(self._history) > self._history_limit:
            del self._history[: len(self._history) - self._history_limit]
        for handler in list(self._subs.get(event["name"], [])) + list(self._subs.get("*", [])):
            try:
                handler(event)
            except Exception:
                logger.exception("page_event_handler_failed name=%s", event["name"])

    def history(self, name: str | None = None) -> list[Event]:
        if name is None:
            return list(self._history)
        return [e for e in self._history if e["name"] == name]
