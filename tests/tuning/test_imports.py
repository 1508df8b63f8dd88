"""Tests for ImportRegistry: fingerprinting, dedup, extraction, soft delete."""

import json
import sqlite3
import threading
from unittest.mock import patch

import pytest

from observability import metrics
from tuning.errors import DuplicateImport, ImportFailed, NotFound, ValidationError
from tuning.events import list_events
from tuning.imports import ImportRegistry, content_fingerprint, normalize_content


@pytest.fixture
def registry(db_path):
    return ImportRegistry(db_path)


def _export(tags=("too_long",), timestamp="2025-01-10T12:00:00Z"):
    return json.dumps(
        {
            "id": "chat-1",
            "messages": [
                {"id": "m1", "role": "user", "content": "Help", "timestamp": timestamp},
                {
                    "id": "m2",
                    "role": "assistant",
                    "content": "Answer",
                    "timestamp": timestamp,
                    "feedback": {"tags": list(tags)},
                    "refinements": [{"category": "correction", "text": "Fix", "governance_tags": ["drifted"]}],
                },
            ],
        }
    )


class TestFingerprint:
    def test_whitespace_insensitive(self):
        assert content_fingerprint("hello world") == content_fingerprint("hello   world")
        assert content_fingerprint("hello world") == content_fingerprint("  hello\n\tworld \n")

    def test_encoding_insensitive(self):
        text = "café au lait"
        assert content_fingerprint(text.encode("utf-8")) == content_fingerprint(text)
        assert content_fingerprint(b"\xef\xbb\xbf" + text.encode("utf-8")) == content_fingerprint(text)
        assert content_fingerprint(text.encode("utf-16")) == content_fingerprint(text)

    def test_unicode_normalization(self):
        assert normalize_content("cafe\u0301") == normalize_content("caf\u00e9")

    def test_different_content(self):
        assert content_fingerprint("hello world") != content_fingerprint("hello there")


class TestSubmit:
    def test_hello_world_then_whitespace_variant(self, registry):
        first = registry.submit("hello world", "a.txt", "upload", created_by="admin")
        assert first.status == "completed"
        assert first.messages == 1

        with pytest.raises(DuplicateImport) as exc:
            registry.submit("hello   world", "b.txt", "upload", created_by="admin")
        assert exc.value.existing["id"] == first.id
        assert exc.value.status_code == 409
        assert exc.value.to_dict()["existing_import"]["filename"] == "a.txt"

        live = registry.list()
        assert len(live) == 1
        assert live[0].status == "completed"

    def test_byte_identical_resubmission(self, registry):
        registry.submit(b"same bytes", "a.txt", "upload", created_by="admin")
        with pytest.raises(DuplicateImport):
            registry.submit(b"same bytes", "a.txt", "upload", created_by="admin")
        assert metrics.count("imports.duplicate") == 1

    def test_duplicate_event_recorded(self, registry, db_path):
        registry.submit("x y", "a.txt", "upload", created_by="admin")
        with pytest.raises(DuplicateImport):
            registry.submit("x  y", "b.txt", "upload", created_by="other")
        events = list_events(db_path, event_type="import_duplicate")
        assert len(events) == 1
        assert events[0]["payload"]["attempted_filename"] == "b.txt"

    def test_extracts_feedback_and_refinements(self, registry, db_path):
        record = registry.submit(_export(), "chat.json", "export", created_by="admin")
        assert record.detected_format == "JSON"
        assert record.conversations == 1
        assert record.messages == 2
        assert record.feedback_items == 1
        assert record.refinements == 1

        conn = sqlite3.connect(db_path)
        try:
            rows = conn.execute("SELECT chat_id, message_id, tags, created_at FROM message_feedback").fetchall()
        finally:
            conn.close()
        assert rows == [("chat-1", "m2", '["too_long"]', "2025-01-10T12:00:00.000000+00:00")]

    def test_empty_content_rejected(self, registry):
        with pytest.raises(ValidationError):
            registry.submit("   \n", "empty.txt", "upload", created_by="admin")
        assert registry.list() == []

    def test_oversized_content_rejected(self, db_path):
        registry = ImportRegistry(db_path, max_content_chars=10)
        with pytest.raises(ValidationError):
            registry.submit("x" * 11, "big.txt", "upload", created_by="admin")


class TestFailure:
    def test_parse_failure_marks_failed(self, registry):
        with pytest.raises(ImportFailed) as exc:
            registry.submit("{broken json", "bad.json", "upload", created_by="admin")
        record = exc.value.record
        assert record["status"] == "failed"
        assert "Invalid JSON" in record["error"]
        assert registry.get(record["id"]).status == "failed"

    def test_partial_extraction_rolls_back_all_rows(self, registry, db_path):
        calls = {"n": 0}

        def flaky(self, *args, **kwargs):
            calls["n"] += 1
            raise sqlite3.OperationalError("disk I/O error")

        with patch.object(ImportRegistry, "_insert_refinement", flaky):
            with pytest.raises(ImportFailed):
                registry.submit(_export(), "chat.json", "export", created_by="admin")

        assert calls["n"] == 1
        conn = sqlite3.connect(db_path)
        try:
            feedback_rows = conn.execute("SELECT COUNT(*) FROM message_feedback").fetchone()[0]
        finally:
            conn.close()
        assert feedback_rows == 0
        [record] = registry.list()
        assert record.status == "failed"
        assert record.feedback_items == 0

    def test_deeply_nested_json_marks_failed(self, registry):
        with pytest.raises(ImportFailed) as exc:
            registry.submit("[" * 500_000 + "]" * 500_000, "deep.json", "upload", created_by="admin")
        [record] = registry.list()
        assert record.id == exc.value.record["id"]
        assert record.status == "failed"

    def test_unexpected_error_marks_failed(self, registry):
        with patch("tuning.imports.parse_export", side_effect=KeyError("category")):
            with pytest.raises(ImportFailed):
                registry.submit(_export(), "chat.json", "export", created_by="admin")
        [record] = registry.list()
        assert record.status == "failed"
        assert "category" in record.error
        assert metrics.count("imports.failed") == 1

    def test_failed_import_still_holds_fingerprint(self, registry):
        with pytest.raises(ImportFailed):
            registry.submit("{broken json", "bad.json", "upload", created_by="admin")
        with pytest.raises(DuplicateImport):
            registry.submit("{broken   json", "bad2.json", "upload", created_by="admin")


class TestDelete:
    def test_soft_delete_frees_fingerprint(self, registry, db_path):
        first = registry.submit("hello world", "a.txt", "upload", created_by="admin")
        deleted = registry.delete(first.id, actor="admin")
        assert deleted.deleted_at is not None

        again = registry.submit("hello world", "a.txt", "upload", created_by="admin")
        assert again.id != first.id
        assert [r.id for r in registry.list()] == [again.id]
        assert {r.id for r in registry.list(include_deleted=True)} == {first.id, again.id}
        assert len(list_events(db_path, event_type="import_deleted")) == 1

    def test_delete_unknown(self, registry):
        with pytest.raises(NotFound):
            registry.delete("nope", actor="admin")


class TestConcurrentSubmit:
    def test_identical_content_claimed_once(self, db_path):
        barrier = threading.Barrier(2)
        outcomes = []

        def submit(filename):
            registry = ImportRegistry(db_path)
            barrier.wait()
            try:
                registry.submit("hello world", filename, "upload", created_by="admin")
                outcomes.append("imported")
            except DuplicateImport:
                outcomes.append("duplicate")

        workers = [threading.Thread(target=submit, args=(name,)) for name in ("a.txt", "b.txt")]
        for w in workers:
            w.start()
        for w in workers:
            w.join(timeout=10)

        assert sorted(outcomes) == ["duplicate", "imported"]
        [record] = ImportRegistry(db_path).list()
        assert record.status == "completed"
        assert len(list_events(db_path, event_type="import_duplicate")) == 1
