"""Users table: identities seen on the API and their administrative role."""

import os
import sqlite3
from pathlib import Path
from typing import Any

import structlog

from db import wal_connect
from tuning.errors import NotFound, ValidationError
from tuning.models import utc_iso
from tuning.schema import DEFAULT_DB_PATH, resolve_db_path

logger = structlog.get_logger()

_DEFAULT_DB_PATH = DEFAULT_DB_PATH

ADMIN_USER_TYPES = frozenset({"admin", "super_admin"})
USER_TYPES = frozenset({"user"}) | ADMIN_USER_TYPES


def _get_conn(db_path: Path | None = None) -> sqlite3.Connection:
    return wal_connect(resolve_db_path(db_path or _DEFAULT_DB_PATH), row_factory=True)


def _admin_emails() -> set[str]:
    raw = os.getenv("ADMIN_EMAILS", "")
    return {e.strip().lower() for e in raw.split(",") if e.strip()}


def get_or_create_user(
    user_id: str,
    email: str | None = None,
    name: str | None = None,
    db_path: Path | None = None,
) -> dict[str, Any]:
    """Upsert a user on authentication. Returns user dict."""
    conn = _get_conn(db_path)
    try:
        row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if row:
            if email or name:
                conn.execute(
                    "UPDATE users SET email = COALESCE(?, email), name = COALESCE(?, name) WHERE id = ?",
                    (email, name, user_id),
                )
                conn.commit()
                row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
            return dict(row)
        now = utc_iso()
        conn.execute(
            "INSERT INTO users (id, email, name, user_type, created_at) VALUES (?, ?, ?, 'user', ?)",
            (user_id, email, name, now),
        )
        conn.commit()
        logger.info("user_store.user_created", user_id=user_id)
        return {"id": user_id, "email": email, "name": name, "user_type": "user", "created_at": now}
    finally:
        conn.close()


def get_user(user_id: str, db_path: Path | None = None) -> dict[str, Any] | None:
    conn = _get_conn(db_path)
    try:
        row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def find_user_by_email(email: str, db_path: Path | None = None) -> dict[str, Any] | None:
    conn = _get_conn(db_path)
    try:
        row = conn.execute(
            "SELECT * FROM users WHERE lower(email) = lower(?) ORDER BY created_at LIMIT 1",
            (email,),
        ).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def set_user_type(user_id: str, user_type: str, db_path: Path | None = None) -> dict[str, Any]:
    """Grant or revoke the administrative role."""
    if user_type not in USER_TYPES:
        raise ValidationError(f"Invalid user_type: {user_type!r}", allowed=sorted(USER_TYPES))
    conn = _get_conn(db_path)
    try:
        cur = conn.execute("UPDATE users SET user_type = ? WHERE id = ?", (user_type, user_id))
        conn.commit()
        if not cur.rowcount:
            raise NotFound(f"User {user_id} not found", user_id=user_id)
        row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
    finally:
        conn.close()
    logger.info("user_store.user_type_changed", user_id=user_id, user_type=user_type)
    return dict(row)


def is_admin(user: dict[str, Any], db_path: Path | None = None) -> bool:
    """Evaluated per request from the stored role (or the ADMIN_EMAILS allow-list)."""
    email = (user.get("email") or "").lower()
    if email and email in _admin_emails():
        return True
    stored = get_user(user["id"], db_path=db_path)
    return bool(stored and stored.get("user_type") in ADMIN_USER_TYPES)
