"""SQLite schema for the tuning workflow: imports, feedback, proposals, settings, audit."""

import os
from pathlib import Path

import structlog

from db import wal_connect

logger = structlog.get_logger()

DEFAULT_DB_PATH = Path(os.environ.get("TUNER_HOME", Path.home() / "tuner")) / "tuning.db"

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT,
        name TEXT,
        user_type TEXT NOT NULL DEFAULT 'user'
            CHECK(user_type IN ('user','admin','super_admin')),
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    CREATE INDEX IF NOT EXISTS idx_users_email ON users(email);

    CREATE TABLE IF NOT EXISTS imports (
        id TEXT PRIMARY KEY,
        filename TEXT NOT NULL,
        source TEXT NOT NULL,
        content_fingerprint TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK(status IN ('pending','processing','completed','failed')),
        conversations INTEGER NOT NULL DEFAULT 0,
        messages INTEGER NOT NULL DEFAULT 0,
        feedback_items INTEGER NOT NULL DEFAULT 0,
        refinements INTEGER NOT NULL DEFAULT 0,
        detected_format TEXT,
        size_bytes INTEGER NOT NULL DEFAULT 0,
        error TEXT,
        created_by TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL,
        processed_at TIMESTAMP,
        deleted_at TIMESTAMP
    );
    CREATE UNIQUE INDEX IF NOT EXISTS idx_imports_fingerprint
        ON imports(content_fingerprint) WHERE deleted_at IS NULL;
    CREATE INDEX IF NOT EXISTS idx_imports_created ON imports(created_at DESC);

    CREATE TABLE IF NOT EXISTS message_feedback (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        import_id TEXT NOT NULL REFERENCES imports(id),
        chat_id TEXT NOT NULL,
        message_id TEXT NOT NULL,
        category TEXT NOT NULL DEFAULT 'quality',
        tags TEXT NOT NULL DEFAULT '[]',
        source_type TEXT NOT NULL DEFAULT 'external',
        created_at TIMESTAMP NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_feedback_created ON message_feedback(created_at);

    CREATE TABLE IF NOT EXISTS message_refinements (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        import_id TEXT NOT NULL REFERENCES imports(id),
        chat_id TEXT NOT NULL,
        message_id TEXT NOT NULL,
        category TEXT NOT NULL,
        primary_text TEXT NOT NULL DEFAULT '',
        governance_tags TEXT NOT NULL DEFAULT '[]',
        source_type TEXT NOT NULL DEFAULT 'external',
        created_at TIMESTAMP NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_refinements_created ON message_refinements(created_at);

    CREATE TABLE IF NOT EXISTS proposals (
        id TEXT PRIMARY KEY,
        profile_id TEXT NOT NULL,
        recommendations TEXT NOT NULL DEFAULT '[]',
        metrics TEXT NOT NULL DEFAULT '{}',
        governance_links TEXT NOT NULL DEFAULT '[]',
        window_start TIMESTAMP NOT NULL,
        window_end TIMESTAMP NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK(status IN ('pending','accepted','rejected','applied')),
        dry_run INTEGER NOT NULL DEFAULT 0,
        created_by TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL,
        reviewed_by TEXT,
        reviewed_at TIMESTAMP,
        selected_indices TEXT,
        import_ids TEXT NOT NULL DEFAULT '[]',
        top_examples TEXT NOT NULL DEFAULT '[]',
        CHECK(window_end >= window_start)
    );
    CREATE INDEX IF NOT EXISTS idx_proposals_status ON proposals(status, created_at DESC);
    CREATE INDEX IF NOT EXISTS idx_proposals_profile ON proposals(profile_id, created_at DESC);

    CREATE TRIGGER IF NOT EXISTS proposals_recommendations_immutable
    BEFORE UPDATE OF recommendations ON proposals
    WHEN NEW.recommendations IS NOT OLD.recommendations
    BEGIN
        SELECT RAISE(ABORT, 'proposal recommendations are immutable');
    END;

    CREATE TRIGGER IF NOT EXISTS proposals_terminal_status
    BEFORE UPDATE OF status ON proposals
    WHEN OLD.status IN ('rejected','applied') AND NEW.status IS NOT OLD.status
    BEGIN
        SELECT RAISE(ABORT, 'proposal status is terminal');
    END;

    CREATE TABLE IF NOT EXISTS configuration_settings (
        profile_id TEXT NOT NULL,
        setting TEXT NOT NULL,
        value TEXT,
        version INTEGER NOT NULL DEFAULT 1,
        updated_by TEXT,
        updated_at TIMESTAMP NOT NULL,
        PRIMARY KEY (profile_id, setting)
    );

    CREATE TABLE IF NOT EXISTS apply_audit (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        proposal_id TEXT NOT NULL REFERENCES proposals(id),
        recommendation_index INTEGER NOT NULL,
        profile_id TEXT NOT NULL,
        setting TEXT NOT NULL,
        action TEXT NOT NULL CHECK(action IN ('set','append','remove')),
        previous_value TEXT,
        new_value TEXT,
        expected_from TEXT,
        drifted INTEGER NOT NULL DEFAULT 0,
        applied_by TEXT NOT NULL,
        applied_at TIMESTAMP NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_audit_proposal ON apply_audit(proposal_id, recommendation_index);

    CREATE TABLE IF NOT EXISTS tuning_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_type TEXT NOT NULL,
        profile_id TEXT,
        proposal_id TEXT,
        payload TEXT NOT NULL DEFAULT '{}',
        created_by TEXT,
        created_at TIMESTAMP NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_events_proposal ON tuning_events(proposal_id, created_at);
    CREATE INDEX IF NOT EXISTS idx_events_type ON tuning_events(event_type, created_at DESC);

    CREATE TABLE IF NOT EXISTS analysis_runs (
        id TEXT PRIMARY KEY,
        profile_id TEXT NOT NULL,
        window_start TIMESTAMP NOT NULL,
        window_end TIMESTAMP NOT NULL,
        status TEXT NOT NULL DEFAULT 'running'
            CHECK(status IN ('running','completed','no_proposal','cancelled','failed','abandoned')),
        dry_run INTEGER NOT NULL DEFAULT 0,
        proposal_id TEXT,
        error TEXT,
        started_by TEXT NOT NULL,
        started_at TIMESTAMP NOT NULL,
        finished_at TIMESTAMP
    );
    CREATE UNIQUE INDEX IF NOT EXISTS idx_runs_inflight
        ON analysis_runs(profile_id, window_start, window_end) WHERE status = 'running';
"""


def resolve_db_path(db_path: Path | None = None) -> Path:
    path = Path(db_path or DEFAULT_DB_PATH).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def init_db(db_path: Path | None = None) -> Path:
    """Create tables if they don't exist. Returns the resolved path."""
    path = resolve_db_path(db_path)
    conn = wal_connect(path)
    try:
        conn.executescript(_SCHEMA)
        conn.commit()
    finally:
        conn.close()
    logger.debug("schema.ready", db_path=str(path))
    return path
