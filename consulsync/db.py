from __future__ import annotations

import logging
import os
import sqlite3
from contextlib import closing
from datetime import datetime, timezone
from threading import Lock
from typing import Any

from .settings import settings

logger = logging.getLogger(__name__)

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}

# Journal paths whose schema exists in this process.
_initialized: set[str] = set()
_init_lock = Lock()


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is an existing directory (a common result of
    bind-mounting a path that did not exist yet), the journal is placed
    inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "consulsync.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with closing(connect()) as conn, conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              service_name TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            """
        )


def _ensure_schema() -> None:
    path = _resolve_db_path()
    with _init_lock:
        if path in _initialized:
            return
        init_db()
        _initialized.add(path)


def log_event(level: str, message: str, service_name: str | None = None) -> None:
    """Log through `logging` and append the event to the journal.

    Journal failures are reported but never raised: losing an event must not
    stop a reconcile pass or a probe cycle.
    """
    level = level.upper()
    text = f"[{service_name}] {message}" if service_name else message
    logger.log(_LEVELS.get(level, logging.INFO), text)
    try:
        _ensure_schema()
        with closing(connect()) as conn, conn:
            conn.execute(
                "INSERT INTO events (ts, level, service_name, message) VALUES (?, ?, ?, ?)",
                (utc_now(), level, service_name, message),
            )
    except sqlite3.Error as e:
        logger.warning("Could not write event journal: %s", e)


def latest_events(limit: int = 100) -> list[dict[str, Any]]:
    _ensure_schema()
    with closing(connect()) as conn:
        rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]
