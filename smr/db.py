from __future__ import annotations

import json
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

from .models import MergeState, ResourceId
from .settings import settings


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (a bind mount that did not exist
    yet becomes a directory), the database file is placed inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "smr.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False, timeout=30)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS merge_states (
              resource_id TEXT PRIMARY KEY,
              active INTEGER NOT NULL,
              services TEXT NOT NULL,        -- json list
              port_by_service TEXT NOT NULL, -- json object
              merged_pod_ids TEXT NOT NULL,  -- json list
              merged_service_name TEXT NOT NULL,
              selector_by_service TEXT NOT NULL DEFAULT '{}', -- json object of objects
              updated_at TEXT NOT NULL
            );

            -- Ports and selectors captured by a transition that has not completed yet.
            CREATE TABLE IF NOT EXISTS captured_ports (
              resource_id TEXT NOT NULL,
              service TEXT NOT NULL,
              port INTEGER NOT NULL,
              selector TEXT NOT NULL DEFAULT '{}', -- json object
              captured_at TEXT NOT NULL,
              PRIMARY KEY (resource_id, service)
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              resource TEXT,
              service TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_events_resource ON events(resource);
            """
        )
        # Databases created before selectors were recorded.
        _add_column(conn, "merge_states", "selector_by_service", "TEXT NOT NULL DEFAULT '{}'")
        _add_column(conn, "captured_ports", "selector", "TEXT NOT NULL DEFAULT '{}'")


def _add_column(conn: sqlite3.Connection, table: str, column: str, decl: str) -> None:
    cols = {r["name"] for r in conn.execute(f"PRAGMA table_info({table})").fetchall()}
    if column not in cols:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {decl}")


def log_event(level: str, message: str, resource: ResourceId | str | None = None, service: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, resource, service, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level.upper(), str(resource) if resource is not None else None, service, message),
        )


@dataclass(frozen=True)
class MergeStateRow:
    resource_id: str
    state: MergeState
    updated_at: str


def _row_to_state(row: sqlite3.Row) -> MergeState:
    return MergeState.from_dict(
        {
            "active": bool(row["active"]),
            "services": json.loads(row["services"]),
            "port_by_service": json.loads(row["port_by_service"]),
            "merged_pod_ids": json.loads(row["merged_pod_ids"]),
            "merged_service_name": row["merged_service_name"],
            "selector_by_service": json.loads(row["selector_by_service"] or "{}"),
        }
    )


def load_state(resource_id: ResourceId) -> MergeState:
    """Return the persisted MergeState, or a fresh inactive one."""
    with connect() as conn:
        row = conn.execute("SELECT * FROM merge_states WHERE resource_id=?", (resource_id.key,)).fetchone()
        return _row_to_state(row) if row else MergeState()


def save_state(resource_id: ResourceId, state: MergeState) -> None:
    """Persist a MergeState. An inactive state clears the record entirely."""
    state.validate()
    with connect() as conn:
        if not state.active:
            conn.execute("DELETE FROM merge_states WHERE resource_id=?", (resource_id.key,))
            conn.execute("DELETE FROM captured_ports WHERE resource_id=?", (resource_id.key,))
            return
        d = state.to_dict()
        conn.execute(
            """
            INSERT INTO merge_states (resource_id, active, services, port_by_service, merged_pod_ids, merged_service_name, selector_by_service, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(resource_id) DO UPDATE SET
              active=excluded.active,
              services=excluded.services,
              port_by_service=excluded.port_by_service,
              merged_pod_ids=excluded.merged_pod_ids,
              merged_service_name=excluded.merged_service_name,
              selector_by_service=excluded.selector_by_service,
              updated_at=excluded.updated_at
            """,
            (
                resource_id.key,
                1,
                json.dumps(d["services"]),
                json.dumps(d["port_by_service"]),
                json.dumps(d["merged_pod_ids"]),
                d["merged_service_name"],
                json.dumps(d["selector_by_service"]),
                utc_now(),
            ),
        )
        conn.execute("DELETE FROM captured_ports WHERE resource_id=?", (resource_id.key,))


def list_states(active_only: bool = False) -> list[MergeStateRow]:
    with connect() as conn:
        sql = "SELECT * FROM merge_states"
        if active_only:
            sql += " WHERE active=1"
        rows = conn.execute(sql + " ORDER BY resource_id").fetchall()
        return [MergeStateRow(resource_id=r["resource_id"], state=_row_to_state(r), updated_at=r["updated_at"]) for r in rows]


def record_captured_ports(
    resource_id: ResourceId, ports: dict[str, int], selectors: dict[str, dict[str, str]] | None = None
) -> None:
    """Journal ports (and selectors) read from original services before any of them is deleted."""
    selectors = selectors or {}
    with connect() as conn:
        conn.executemany(
            """
            INSERT INTO captured_ports (resource_id, service, port, selector, captured_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(resource_id, service) DO UPDATE SET port=excluded.port, selector=excluded.selector
            """,
            [
                (resource_id.key, svc, int(port), json.dumps(selectors.get(svc) or {}), utc_now())
                for svc, port in ports.items()
            ],
        )


def captured_ports(resource_id: ResourceId) -> dict[str, int]:
    with connect() as conn:
        rows = conn.execute("SELECT service, port FROM captured_ports WHERE resource_id=?", (resource_id.key,)).fetchall()
        return {r["service"]: int(r["port"]) for r in rows}


def captured_selectors(resource_id: ResourceId) -> dict[str, dict[str, str]]:
    with connect() as conn:
        rows = conn.execute("SELECT service, selector FROM captured_ports WHERE resource_id=?", (resource_id.key,)).fetchall()
        return {r["service"]: json.loads(r["selector"]) for r in rows if r["selector"] not in (None, "", "{}")}


def _rows_to_dicts(rows: Iterable[sqlite3.Row]) -> list[dict[str, Any]]:
    return [dict(r) for r in rows]


def latest_events(limit: int = 100, resource: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if resource:
            rows = conn.execute(
                "SELECT * FROM events WHERE resource=? ORDER BY id DESC LIMIT ?", (resource, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return _rows_to_dicts(rows)
