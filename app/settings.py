"""Environment-driven settings for the listing service."""

from __future__ import annotations

import os
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


_load_env_file(ROOT / "app" / ".env")


def _int_env(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


BACKEND_URL = (os.getenv("METAVIEW_BACKEND_URL") or "http://localhost:8080").strip().rstrip("/")
BACKEND_TIMEOUT = float(os.getenv("METAVIEW_BACKEND_TIMEOUT", "30") or "30")
BACKEND_TOKEN = (os.getenv("METAVIEW_BACKEND_TOKEN") or "").strip()
SEARCH_DEBOUNCE_MS = _int_env("METAVIEW_SEARCH_DEBOUNCE_MS", 600)
DEFAULT_PAGE_SIZE = _int_env("METAVIEW_DEFAULT_PAGE_SIZE", 50)
HIERARCHY_PAGE_SIZE = _int_env("METAVIEW_HIERARCHY_PAGE_SIZE", 500)
LOG_LEVEL = (os.getenv("METAVIEW_LOG_LEVEL") or "INFO").strip().upper()
CORS_ORIGINS = {
    origin.strip().rstrip("/")
    for origin in os.getenv("METAVIEW_CORS_ORIGINS", "").split(",")
    if origin.strip()
}
