"""Import registry: fingerprint, deduplicate and extract conversational exports."""

import codecs
import hashlib
import json
import sqlite3
import unicodedata
from pathlib import Path

import structlog

from cli.retry import db_retry
from db import transaction, wal_connect
from observability import metrics
from shared_types import EventType, ImportStatus
from tuning.errors import (
    DuplicateImport,
    ImportFailed,
    NotFound,
    ValidationError,
)
from tuning.events import record_event
from tuning.models import ImportRecord, utc_iso
from tuning.parsing import ParsedExport, parse_export

logger = structlog.get_logger()

DEFAULT_MAX_CONTENT_CHARS = 5_000_000

_UTF16_BOMS = (codecs.BOM_UTF16_LE, codecs.BOM_UTF16_BE)


def decode_content(content: str | bytes) -> str:
    """Decode raw upload bytes; UTF-16 with BOM, otherwise UTF-8 (BOM stripped)."""
    if isinstance(content, bytes):
        if content.startswith(_UTF16_BOMS):
            content = content.decode("utf-16")
        else:
            content = content.decode("utf-8-sig", errors="replace")
    return content.lstrip("\ufeff")


def normalize_content(content: str | bytes) -> str:
    """Whitespace- and encoding-insensitive canonical form used for fingerprinting."""
    text = unicodedata.normalize("NFC", decode_content(content))
    return " ".join(text.split())


def content_fingerprint(content: str | bytes) -> str:
    return hashlib.sha256(normalize_content(content).encode("utf-8")).hexdigest()


def _row_to_record(row: sqlite3.Row) -> ImportRecord:
    return ImportRecord(**dict(row))


class ImportRegistry:
    """SQLite-backed registry of conversational exports.

    Fingerprint uniqueness is enforced by a partial unique index over
    non-deleted rows, so two simultaneous submissions of the same content
    cannot both claim it.
    """

    def __init__(self, db_path: Path, max_content_chars: int = DEFAULT_MAX_CONTENT_CHARS):
        self.db_path = Path(db_path)
        self.max_content_chars = max_content_chars

    def submit(
        self,
        content: str | bytes,
        filename: str,
        source: str,
        created_by: str,
    ) -> ImportRecord:
        """Register, parse and extract an export.

        Raises:
            DuplicateImport: a non-deleted import already has this fingerprint.
            ImportFailed: extraction failed; the record is left ``failed``.
            ValidationError: empty or oversized content.
        """
        text = decode_content(content)
        if not text.strip():
            raise ValidationError("Import content is empty", filename=filename)
        if len(text) > self.max_content_chars:
            raise ValidationError(
                f"Import exceeds {self.max_content_chars} characters",
                filename=filename,
                size=len(text),
            )

        record = ImportRecord(
            filename=filename,
            source=source,
            content_fingerprint=content_fingerprint(text),
            created_by=created_by,
            size_bytes=len(text.encode("utf-8")),
        )
        self._claim(record)
        self._set_status(record.id, ImportStatus.PROCESSING)
        record.status = ImportStatus.PROCESSING
        log = logger.bind(import_id=record.id, filename=filename)

        try:
            with metrics.timer("imports.extract"):
                parsed = parse_export(text, conversation_id=f"import_{record.content_fingerprint[:12]}")
                self._persist_extraction(record, parsed)
        except Exception as e:
            reason = str(e) or e.__class__.__name__
            failed = self._mark_failed(record, reason)
            metrics.counter("imports.failed")
            log.warning("imports.failed", reason=reason)
            raise ImportFailed(failed.to_dict(), reason) from e

        metrics.counter("imports.completed")
        log.info(
            "imports.completed",
            format=record.detected_format,
            conversations=record.conversations,
            messages=record.messages,
            feedback=record.feedback_items,
            refinements=record.refinements,
        )
        return record

    @db_retry()
    def _claim(self, record: ImportRecord) -> None:
        """Insert the ``pending`` row; the unique index rejects duplicates."""
        try:
            with transaction(self.db_path) as conn:
                conn.execute(
                    """INSERT INTO imports
                    (id, filename, source, content_fingerprint, status, size_bytes, created_by, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        record.id,
                        record.filename,
                        record.source,
                        record.content_fingerprint,
                        str(ImportStatus.PENDING),
                        record.size_bytes,
                        record.created_by,
                        record.created_at,
                    ),
                )
        except sqlite3.IntegrityError:
            existing = self.find_by_fingerprint(record.content_fingerprint)
            if existing is None:
                raise
            metrics.counter("imports.duplicate")
            self._log_duplicate(record, existing)
            raise DuplicateImport(existing.to_dict())

    def _log_duplicate(self, attempted: ImportRecord, existing: ImportRecord) -> None:
        logger.info(
            "imports.duplicate",
            existing_id=existing.id,
            existing_file=existing.filename,
            attempted_file=attempted.filename,
        )
        with transaction(self.db_path) as conn:
            record_event(
                conn,
                EventType.IMPORT_DUPLICATE,
                {"existing_import_id": existing.id, "attempted_filename": attempted.filename},
                created_by=attempted.created_by,
            )

    @db_retry()
    def _set_status(self, import_id: str, status: ImportStatus) -> None:
        with transaction(self.db_path) as conn:
            conn.execute("UPDATE imports SET status = ? WHERE id = ?", (str(status), import_id))

    def _persist_extraction(self, record: ImportRecord, parsed: ParsedExport) -> None:
        """Write every extracted row plus the ``completed`` status in one transaction."""
        processed_at = utc_iso()
        feedback_count = 0
        refinement_count = 0
        with transaction(self.db_path) as conn:
            for conv in parsed.conversations:
                for msg in conv.messages:
                    created_at = msg.timestamp or record.created_at
                    if msg.feedback_tags:
                        self._insert_feedback(conn, record.id, conv.id, msg.id, msg.feedback_tags, created_at)
                        feedback_count += 1
                    for ref in msg.refinements:
                        self._insert_refinement(conn, record.id, conv.id, msg.id, ref, created_at)
                        refinement_count += 1
            conn.execute(
                """UPDATE imports SET status = ?, conversations = ?, messages = ?,
                   feedback_items = ?, refinements = ?, detected_format = ?, processed_at = ?
                   WHERE id = ?""",
                (
                    str(ImportStatus.COMPLETED),
                    len(parsed.conversations),
                    parsed.message_count,
                    feedback_count,
                    refinement_count,
                    parsed.detected_format,
                    processed_at,
                    record.id,
                ),
            )
            record_event(
                conn,
                EventType.IMPORT_COMPLETED,
                {
                    "import_id": record.id,
                    "conversations": len(parsed.conversations),
                    "messages": parsed.message_count,
                    "feedback": feedback_count,
                    "refinements": refinement_count,
                },
                created_by=record.created_by,
            )

        record.status = ImportStatus.COMPLETED
        record.conversations = len(parsed.conversations)
        record.messages = parsed.message_count
        record.feedback_items = feedback_count
        record.refinements = refinement_count
        record.detected_format = parsed.detected_format
        record.processed_at = processed_at

    def _insert_feedback(self, conn, import_id, chat_id, message_id, tags, created_at) -> None:
        conn.execute(
            """INSERT INTO message_feedback (import_id, chat_id, message_id, category, tags, created_at)
            VALUES (?, ?, ?, 'quality', ?, ?)""",
            (import_id, chat_id, message_id, json.dumps(tags), created_at),
        )

    def _insert_refinement(self, conn, import_id, chat_id, message_id, ref: dict, created_at) -> None:
        conn.execute(
            """INSERT INTO message_refinements
            (import_id, chat_id, message_id, category, primary_text, governance_tags, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                import_id,
                chat_id,
                message_id,
                ref["category"],
                ref.get("text", ""),
                json.dumps(ref.get("governance_tags", [])),
                created_at,
            ),
        )

    @db_retry()
    def _mark_failed(self, record: ImportRecord, reason: str) -> ImportRecord:
        processed_at = utc_iso()
        with transaction(self.db_path) as conn:
            conn.execute(
                "UPDATE imports SET status = ?, error = ?, processed_at = ? WHERE id = ?",
                (str(ImportStatus.FAILED), reason[:500], processed_at, record.id),
            )
            record_event(
                conn,
                EventType.IMPORT_FAILED,
                {"import_id": record.id, "reason": reason[:500]},
                created_by=record.created_by,
            )
        record.status = ImportStatus.FAILED
        record.error = reason[:500]
        record.processed_at = processed_at
        return record

    # --- Queries ---

    def get(self, import_id: str) -> ImportRecord:
        conn = wal_connect(self.db_path, row_factory=True)
        try:
            row = conn.execute("SELECT * FROM imports WHERE id = ?", (import_id,)).fetchone()
        finally:
            conn.close()
        if not row:
            raise NotFound(f"Import {import_id} not found", import_id=import_id)
        return _row_to_record(row)

    def find_by_fingerprint(self, fingerprint: str) -> ImportRecord | None:
        """The live (non-deleted) import holding ``fingerprint``, if any."""
        conn = wal_connect(self.db_path, row_factory=True)
        try:
            row = conn.execute(
                "SELECT * FROM imports WHERE content_fingerprint = ? AND deleted_at IS NULL",
                (fingerprint,),
            ).fetchone()
        finally:
            conn.close()
        return _row_to_record(row) if row else None

    def list(self, limit: int = 50, include_deleted: bool = False) -> list[ImportRecord]:
        """Imports newest first."""
        query = "SELECT * FROM imports"
        if not include_deleted:
            query += " WHERE deleted_at IS NULL"
        query += " ORDER BY created_at DESC LIMIT ?"
        conn = wal_connect(self.db_path, row_factory=True)
        try:
            rows = conn.execute(query, (limit,)).fetchall()
        finally:
            conn.close()
        return [_row_to_record(r) for r in rows]

    def delete(self, import_id: str, actor: str) -> ImportRecord:
        """Soft-delete an import, releasing its fingerprint for a deliberate re-import."""
        now = utc_iso()
        with transaction(self.db_path) as conn:
            cur = conn.execute(
                "UPDATE imports SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
                (now, import_id),
            )
            if cur.rowcount:
                record_event(conn, EventType.IMPORT_DELETED, {"import_id": import_id}, created_by=actor)
        record = self.get(import_id)
        if cur.rowcount:
            logger.info("imports.deleted", import_id=import_id, actor=actor)
        return record
