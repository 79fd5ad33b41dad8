from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

from .settings import settings


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path(path: str) -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (docker creates one when a missing
    bind-mounted file is requested), the db file is placed inside it.
    """
    p = os.path.abspath(path)

    if os.path.isdir(p):
        p = os.path.join(p, "wrc.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


SCHEMA = """
CREATE TABLE IF NOT EXISTS workloads (
  name TEXT PRIMARY KEY,
  replicas INTEGER NOT NULL,
  template TEXT NOT NULL,       -- json {spec, labels}
  template_hash TEXT NOT NULL,
  selector TEXT NOT NULL,       -- json {match_labels, match_expressions}
  max_surge INTEGER NOT NULL,
  max_unavailable INTEGER NOT NULL,
  min_replicas INTEGER NOT NULL DEFAULT 0,
  max_replicas INTEGER,
  rollout TEXT NOT NULL,        -- json RolloutState
  deleted INTEGER NOT NULL DEFAULT 0,
  version INTEGER NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS revisions (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  workload TEXT NOT NULL,
  number INTEGER NOT NULL,
  template_hash TEXT NOT NULL,
  template TEXT NOT NULL,
  outcome TEXT NOT NULL,        -- InProgress|Succeeded|RolledBack
  created_at TEXT NOT NULL,
  UNIQUE(workload, number)
);

CREATE TABLE IF NOT EXISTS instances (
  id TEXT PRIMARY KEY,
  owner TEXT NOT NULL,
  revision TEXT NOT NULL,
  labels TEXT NOT NULL,
  status TEXT NOT NULL,         -- Pending|Starting|Ready|Failed|Terminating|Terminated
  ready INTEGER NOT NULL DEFAULT 0,
  reason TEXT,
  attempts INTEGER NOT NULL DEFAULT 0,
  alert INTEGER NOT NULL DEFAULT 0,
  failed_op TEXT,
  runtime_ref TEXT,
  created_at REAL NOT NULL,
  updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS events (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  ts TEXT NOT NULL,
  level TEXT NOT NULL,
  workload TEXT,
  revision TEXT,
  message TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
CREATE INDEX IF NOT EXISTS idx_instances_owner ON instances(owner);
CREATE INDEX IF NOT EXISTS idx_revisions_workload ON revisions(workload);
"""


class Database:
    """Thin sqlite wrapper shared by the WorkloadStore, the InstanceRegistry and the event log."""

    def __init__(self, path: str | None = None):
        self.path = _resolve_db_path(path or settings.db_path)

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.path, timeout=30.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def init_db(self) -> None:
        """Create tables if they do not exist."""
        with self.connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA)

    def log_event(
        self, level: str, message: str, workload: str | None = None, revision: str | None = None
    ) -> None:
        with self.connect() as conn:
            conn.execute(
                "INSERT INTO events (ts, level, workload, revision, message) VALUES (?, ?, ?, ?, ?)",
                (utc_now(), level.upper(), workload, revision, message),
            )

    def latest_events(self, limit: int = 100, workload: str | None = None) -> list[dict[str, Any]]:
        with self.connect() as conn:
            if workload:
                rows = conn.execute(
                    "SELECT * FROM events WHERE workload=? ORDER BY id DESC LIMIT ?", (workload, limit)
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
            return [dict(r) for r in rows]
