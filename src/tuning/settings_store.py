"""Configuration store: assistant settings keyed by (profile_id, setting)."""

import json
import sqlite3
from pathlib import Path
from typing import Any

import structlog

from db import transaction, wal_connect
from tuning.models import utc_iso

logger = structlog.get_logger()


def _decode(raw: str | None) -> Any:
    return None if raw is None else json.loads(raw)


class SettingsStore:
    """JSON values per profile. Writes made with a caller's connection join its transaction."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    # --- Transaction-scoped access (used by the Applier) ---

    def read_value(self, conn: sqlite3.Connection, profile_id: str, setting: str) -> Any:
        row = conn.execute(
            "SELECT value FROM configuration_settings WHERE profile_id = ? AND setting = ?",
            (profile_id, setting),
        ).fetchone()
        return _decode(row[0]) if row else None

    def snapshot(self, conn: sqlite3.Connection, profile_id: str) -> dict[str, Any]:
        rows = conn.execute(
            "SELECT setting, value FROM configuration_settings WHERE profile_id = ? ORDER BY setting",
            (profile_id,),
        ).fetchall()
        return {r[0]: _decode(r[1]) for r in rows}

    def write_value(
        self,
        conn: sqlite3.Connection,
        profile_id: str,
        setting: str,
        value: Any,
        actor: str,
    ) -> None:
        """Upsert ``value``; ``None`` clears the setting."""
        if value is None:
            conn.execute(
                "DELETE FROM configuration_settings WHERE profile_id = ? AND setting = ?",
                (profile_id, setting),
            )
            return
        conn.execute(
            """INSERT INTO configuration_settings (profile_id, setting, value, version, updated_by, updated_at)
            VALUES (?, ?, ?, 1, ?, ?)
            ON CONFLICT(profile_id, setting) DO UPDATE SET
                value = excluded.value,
                version = configuration_settings.version + 1,
                updated_by = excluded.updated_by,
                updated_at = excluded.updated_at""",
            (profile_id, setting, json.dumps(value), actor, utc_iso()),
        )

    # --- Standalone access ---

    def get(self, profile_id: str, setting: str) -> Any:
        conn = wal_connect(self.db_path)
        try:
            return self.read_value(conn, profile_id, setting)
        finally:
            conn.close()

    def get_all(self, profile_id: str) -> dict[str, Any]:
        conn = wal_connect(self.db_path)
        try:
            return self.snapshot(conn, profile_id)
        finally:
            conn.close()

    def get_records(self, profile_id: str) -> list[dict]:
        """Settings with audit fields (version, updated_by, updated_at)."""
        conn = wal_connect(self.db_path, row_factory=True)
        try:
            rows = conn.execute(
                "SELECT * FROM configuration_settings WHERE profile_id = ? ORDER BY setting",
                (profile_id,),
            ).fetchall()
        finally:
            conn.close()
        records = []
        for r in rows:
            record = dict(r)
            record["value"] = _decode(record["value"])
            records.append(record)
        return records

    def seed(self, profile_id: str, values: dict[str, Any], actor: str) -> None:
        """Administrative bulk write, outside the proposal workflow."""
        with transaction(self.db_path) as conn:
            for setting, value in values.items():
                self.write_value(conn, profile_id, setting, value, actor)
        logger.info("settings.seeded", profile_id=profile_id, count=len(values), actor=actor)
