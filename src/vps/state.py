#!/usr/bin/env python3
"""
State Store — Persistent Memory for the Control Plane

SQLite-backed namespaced key-value store plus an append-only event
ledger. Instance records, encrypted certificate material, SSH key
references and orphaned-resource markers all live here.

Tables:
- kv:      (namespace, key) -> JSON value, last write wins
- events:  Append-only log of every state transition and action

Design principles:
- The store is opaque: callers encrypt secrets before put()
- Append-only events (never delete history)
- All writes are timestamped
- SQLite = zero infrastructure, portable, backup-friendly

Usage:
    store = StateStore("/tmp/xanthus.db")
    store.put("instances", "hetzner-42", {"state": "Running"})
    record = store.get("instances", "hetzner-42")
    store.log("lifecycle", "transition", "Running", target="hetzner-42")
"""

import json
import logging
import os
import sqlite3
import threading
import time
from typing import Optional, Dict, Any, List

logger = logging.getLogger(__name__)

DEFAULT_DB_DIR = os.path.expanduser("~/.xanthus")
DEFAULT_DB_PATH = os.path.join(DEFAULT_DB_DIR, "state.db")

# ── Namespaces ───────────────────────────────────────────────────

NS_INSTANCES = "instances"
NS_DOMAINS = "domains"
NS_SSH_KEYS = "ssh_keys"
NS_ORPHANS = "orphans"
NS_SESSIONS = "sessions"

SCHEMA = """
-- Namespaced key-value records
CREATE TABLE IF NOT EXISTS kv (
    namespace TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,           -- JSON document
    updated_at REAL NOT NULL,
    PRIMARY KEY (namespace, key)
);

-- Append-only event log: the audit trail
CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp REAL NOT NULL,
    actor TEXT NOT NULL,           -- lifecycle, certs, terminal, ssh
    category TEXT NOT NULL,        -- transition, action, error, orphan
    action TEXT NOT NULL,
    target TEXT DEFAULT '',        -- instance key, domain, session id
    success INTEGER DEFAULT 1,     -- 1=ok, 0=fail
    detail TEXT DEFAULT '',
    context TEXT DEFAULT '{}'      -- JSON blob of relevant state
);

CREATE INDEX IF NOT EXISTS idx_events_target ON events(target);
CREATE INDEX IF NOT EXISTS idx_events_category ON events(category);
CREATE INDEX IF NOT EXISTS idx_events_timestamp ON events(timestamp);
"""


class StateStore:
    """
    Namespaced JSON store + event ledger.

    Safe to share between threads: every statement runs under one lock.
    """

    def __init__(self, db_path: str = None):
        self.db_path = str(db_path or os.environ.get("XANTHUS_STATE_DB", DEFAULT_DB_PATH))

        if self.db_path != ":memory:":
            db_dir = os.path.dirname(self.db_path)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)

        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._init_schema()

        logger.info(f"StateStore initialized (db={self.db_path})")

    def _init_schema(self):
        """Create tables if they don't exist."""
        with self._lock:
            self._conn.executescript(SCHEMA)
            self._conn.commit()

    def close(self):
        """Close the database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    # ── Key-Value ────────────────────────────────────────────────

    def put(self, namespace: str, key: str, value: Any):
        """Insert or replace a JSON value."""
        payload = json.dumps(value)
        with self._lock:
            self._conn.execute(
                """INSERT INTO kv (namespace, key, value, updated_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(namespace, key) DO UPDATE SET
                       value = excluded.value,
                       updated_at = excluded.updated_at""",
                (namespace, key, payload, time.time()),
            )
            self._conn.commit()

    def get(self, namespace: str, key: str) -> Optional[Any]:
        """Get a value, or None if absent."""
        with self._lock:
            row = self._conn.execute(
                "SELECT value FROM kv WHERE namespace = ? AND key = ?",
                (namespace, key),
            ).fetchone()
        return json.loads(row["value"]) if row else None

    def delete(self, namespace: str, key: str) -> bool:
        """Delete a value. Returns True if something was removed."""
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM kv WHERE namespace = ? AND key = ?",
                (namespace, key),
            )
            self._conn.commit()
        return cursor.rowcount > 0

    def list(self, namespace: str) -> Dict[str, Any]:
        """All values in a namespace, keyed by key."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT key, value FROM kv WHERE namespace = ? ORDER BY key",
                (namespace,),
            ).fetchall()
        return {r["key"]: json.loads(r["value"]) for r in rows}

    # ── Event Log ────────────────────────────────────────────────

    def log(
        self, actor: str, category: str, action: str,
        target: str = "", success: bool = True, detail: str = "",
        context: Dict[str, Any] = None,
    ) -> int:
        """
        Append an event to the ledger. Returns the event ID.

        Categories: transition, action, error, orphan
        """
        ctx_json = json.dumps(context or {})
        with self._lock:
            cursor = self._conn.execute(
                """INSERT INTO events
                   (timestamp, actor, category, action, target, success, detail, context)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (time.time(), actor, category, action, target,
                 1 if success else 0, detail, ctx_json),
            )
            self._conn.commit()
        return cursor.lastrowid

    def get_events(
        self, target: str = None, category: str = None,
        since: float = None, limit: int = 50,
    ) -> List[Dict[str, Any]]:
        """Query events with optional filters, most recent first."""
        query = "SELECT * FROM events WHERE 1=1"
        params = []

        if target:
            query += " AND target = ?"
            params.append(target)
        if category:
            query += " AND category = ?"
            params.append(category)
        if since:
            query += " AND timestamp > ?"
            params.append(since)

        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [self._row_to_event(r) for r in rows]

    # ── Orphaned Resources ───────────────────────────────────────

    def mark_orphan(self, kind: str, resource_id: str, provider: str = "", detail: str = "",
                    context: Dict[str, Any] = None):
        """
        Record a resource whose cleanup failed, for later reconciliation.

        ``context`` carries whatever the reconciler needs to retry the
        cleanup (zone ids, names); it is stored alongside the marker.
        """
        key = f"{kind}:{resource_id}"
        self.put(NS_ORPHANS, key, {
            **(context or {}),
            "kind": kind,
            "resource_id": resource_id,
            "provider": provider,
            "detail": detail,
            "marked_at": time.time(),
        })
        self.log("reconciler", "orphan", "mark", target=key, success=False, detail=detail)
        logger.warning(f"Orphaned resource recorded: {key} ({provider}) {detail}")

    def list_orphans(self) -> List[Dict[str, Any]]:
        return list(self.list(NS_ORPHANS).values())

    def clear_orphan(self, kind: str, resource_id: str) -> bool:
        key = f"{kind}:{resource_id}"
        removed = self.delete(NS_ORPHANS, key)
        if removed:
            self.log("reconciler", "orphan", "clear", target=key)
        return removed

    # ── Helpers ──────────────────────────────────────────────────

    def _row_to_event(self, row) -> Dict[str, Any]:
        """Convert a DB row to event dict."""
        d = dict(row)
        if "context" in d:
            try:
                d["context"] = json.loads(d["context"])
            except (json.JSONDecodeError, TypeError):
                pass
        return d

    def get_stats(self) -> Dict[str, Any]:
        """Get store-level statistics."""
        with self._lock:
            event_count = self._conn.execute("SELECT COUNT(*) FROM events").fetchone()[0]
            rows = self._conn.execute(
                "SELECT namespace, COUNT(*) AS n FROM kv GROUP BY namespace"
            ).fetchall()

        return {
            "db_path": self.db_path,
            "events": event_count,
            "records": {r["namespace"]: r["n"] for r in rows},
        }
