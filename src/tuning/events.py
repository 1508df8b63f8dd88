"""Append-only lifecycle event log (imports, proposals, backups)."""

import json
import sqlite3
from pathlib import Path

from db import wal_connect
from shared_types import EventType
from tuning.models import utc_iso


def record_event(
    conn: sqlite3.Connection,
    event_type: EventType,
    payload: dict | None = None,
    profile_id: str | None = None,
    proposal_id: str | None = None,
    created_by: str | None = None,
) -> None:
    """Insert an event on the caller's connection; commits with the caller's transaction."""
    conn.execute(
        "INSERT INTO tuning_events (event_type, profile_id, proposal_id, payload, created_by, created_at) "
        "VALUES (?, ?, ?, ?, ?, ?)",
        (
            str(event_type),
            profile_id,
            proposal_id,
            json.dumps(payload or {}, default=str),
            created_by,
            utc_iso(),
        ),
    )


def list_events(
    db_path: Path,
    proposal_id: str | None = None,
    event_type: str | None = None,
    limit: int = 100,
) -> list[dict]:
    """Events oldest first, optionally filtered."""
    query = "SELECT * FROM tuning_events WHERE 1=1"
    params: list = []
    if proposal_id:
        query += " AND proposal_id = ?"
        params.append(proposal_id)
    if event_type:
        query += " AND event_type = ?"
        params.append(event_type)
    query += " ORDER BY id ASC LIMIT ?"
    params.append(limit)
    conn = wal_connect(db_path, row_factory=True)
    try:
        rows = conn.execute(query, params).fetchall()
    finally:
        conn.close()
    events = []
    for r in rows:
        event = dict(r)
        event["payload"] = json.loads(event["payload"] or "{}")
        events.append(event)
    return events
