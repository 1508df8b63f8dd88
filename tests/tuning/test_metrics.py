"""Tests for MetricsAggregator rollups."""

import json

import pytest

from tuning.imports import ImportRegistry
from tuning.metrics import MetricsAggregator
from tuning.models import Window

WINDOW = Window.from_bounds("2025-01-01T00:00:00Z", "2025-01-31T23:59:59Z")


def _export(chat_id, timestamp, tags, category="correction", governance=("drifted",)):
    return json.dumps(
        {
            "id": chat_id,
            "messages": [
                {
                    "id": "m1",
                    "role": "assistant",
                    "content": f"reply in {chat_id}",
                    "timestamp": timestamp,
                    "feedback": {"tags": list(tags)},
                    "refinements": [{"category": category, "text": "Fix", "governance_tags": list(governance)}],
                }
            ],
        }
    )


@pytest.fixture
def registry(db_path):
    return ImportRegistry(db_path)


@pytest.fixture
def aggregator(db_path):
    return MetricsAggregator(db_path)


class TestAggregate:
    def test_empty_window(self, aggregator):
        result = aggregator.aggregate(WINDOW)
        assert result["total"] == 0
        assert result["issue_rates"] == {}
        assert result["window"] == {"from": WINDOW.start, "to": WINDOW.end}

    def test_rates_and_tag_mapping(self, registry, aggregator):
        record = registry.submit(_export("c1", "2025-01-10T12:00:00Z", ["too_long", "drifted"]), "a.json", "upload", "admin")

        result = aggregator.aggregate(WINDOW)

        assert result["feedback_totals"] == 1
        assert result["refinement_totals"] == 1
        assert result["total"] == 2
        assert result["tag_frequencies"]["drifted"] == 2
        assert result["tag_frequencies"]["insufficient_grounding"] == 1
        assert result["tag_frequencies"]["accuracy_issue"] == 1
        assert result["issue_rates"]["drifted"] == 1.0
        assert result["issue_rates"]["too_long"] == 0.5
        assert result["by_category"] == {"feedback:quality": 1, "refinement:correction": 1}
        assert result["import_ids"] == [record.id]

    def test_unknown_refinement_category(self, registry, aggregator):
        registry.submit(_export("c1", "2025-01-10T12:00:00Z", [], category="freeform", governance=()), "a.json", "upload", "admin")
        result = aggregator.aggregate(WINDOW)
        assert result["tag_frequencies"] == {"general_improvement": 1}

    def test_rows_outside_window_excluded(self, registry, aggregator):
        registry.submit(_export("c1", "2025-01-10T12:00:00Z", ["too_long"]), "a.json", "upload", "admin")
        registry.submit(_export("c2", "2025-03-01T00:00:00Z", ["unclear"]), "b.json", "upload", "admin")

        result = aggregator.aggregate(WINDOW)
        assert result["feedback_totals"] == 1
        assert "unclear" not in result["tag_frequencies"]

    def test_window_bounds_inclusive(self, registry, aggregator):
        registry.submit(_export("c1", WINDOW.end, ["too_long"]), "a.json", "upload", "admin")
        assert aggregator.aggregate(WINDOW)["feedback_totals"] == 1

    def test_soft_deleted_imports_excluded(self, registry, aggregator):
        kept = registry.submit(_export("c1", "2025-01-10T12:00:00Z", ["too_long"]), "a.json", "upload", "admin")
        dropped = registry.submit(_export("c2", "2025-01-11T12:00:00Z", ["unclear"]), "b.json", "upload", "admin")
        registry.delete(dropped.id, actor="admin")

        result = aggregator.aggregate(WINDOW)
        assert result["import_ids"] == [kept.id]
        assert "unclear" not in result["tag_frequencies"]


class TestSample:
    def test_sample_lists_tagged_messages(self, registry, aggregator):
        registry.submit(_export("c1", "2025-01-10T12:00:00Z", ["too_long"]), "a.json", "upload", "admin")

        examples = aggregator.sample(WINDOW)

        assert examples == [
            {"kind": "feedback", "chat_id": "c1", "message_id": "m1", "tags": ["too_long"]},
            {"kind": "refinement", "chat_id": "c1", "message_id": "m1", "tags": ["drifted", "accuracy_issue"]},
        ]
