"""Read-only rollups over extracted feedback and refinements."""

import json
from collections import Counter
from pathlib import Path

import structlog

from db import wal_connect
from tuning.models import Window

logger = structlog.get_logger()

# Feedback tags that also count toward a retrieval-quality issue
RAG_TAG_ALIASES = {
    "drifted": "insufficient_grounding",
    "too_theoretical": "irrelevant_chunks",
    "unclear": "too_many_chunks",
}

REFINEMENT_CATEGORY_TAGS = {
    "correction": "accuracy_issue",
    "missing_followup_prompt": "skipped_steps",
    "alternative_response": "tone_issue",
    "insert_prompt_before": "missing_context",
    "guidance_for_future": "process_improvement",
}
DEFAULT_REFINEMENT_TAG = "general_improvement"

_LIVE_IMPORTS = "JOIN imports i ON i.id = t.import_id AND i.deleted_at IS NULL"


class MetricsAggregator:
    """Aggregates over rows whose import is not soft-deleted."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    def aggregate(self, window: Window) -> dict:
        conn = wal_connect(self.db_path, row_factory=True)
        try:
            feedback = conn.execute(
                f"""SELECT t.import_id, t.category, t.tags FROM message_feedback t {_LIVE_IMPORTS}
                WHERE t.created_at >= ? AND t.created_at <= ?""",
                (window.start, window.end),
            ).fetchall()
            refinements = conn.execute(
                f"""SELECT t.import_id, t.category, t.governance_tags FROM message_refinements t {_LIVE_IMPORTS}
                WHERE t.created_at >= ? AND t.created_at <= ?""",
                (window.start, window.end),
            ).fetchall()
        finally:
            conn.close()

        tags: Counter[str] = Counter()
        by_category: Counter[str] = Counter()
        import_ids: set[str] = set()

        for row in feedback:
            import_ids.add(row["import_id"])
            by_category[f"feedback:{row['category']}"] += 1
            for tag in json.loads(row["tags"] or "[]"):
                tags[tag] += 1
                if tag in RAG_TAG_ALIASES:
                    tags[RAG_TAG_ALIASES[tag]] += 1

        for row in refinements:
            import_ids.add(row["import_id"])
            by_category[f"refinement:{row['category']}"] += 1
            tags[REFINEMENT_CATEGORY_TAGS.get(row["category"], DEFAULT_REFINEMENT_TAG)] += 1
            for tag in json.loads(row["governance_tags"] or "[]"):
                tags[tag] += 1

        total = len(feedback) + len(refinements)
        issue_rates = {tag: count / total for tag, count in tags.items()} if total else {}

        logger.debug(
            "metrics.aggregated",
            window_start=window.start,
            window_end=window.end,
            feedback=len(feedback),
            refinements=len(refinements),
        )
        return {
            "window": window.to_dict(),
            "total": total,
            "feedback_totals": len(feedback),
            "refinement_totals": len(refinements),
            "tag_frequencies": dict(tags.most_common()),
            "by_category": dict(sorted(by_category.items())),
            "issue_rates": dict(sorted(issue_rates.items())),
            "import_ids": sorted(import_ids),
        }

    def sample(self, window: Window, limit: int = 200) -> list[dict]:
        """Tagged chat/message references in the window, oldest first, for picking examples."""
        conn = wal_connect(self.db_path, row_factory=True)
        try:
            feedback = conn.execute(
                f"""SELECT t.chat_id, t.message_id, t.tags FROM message_feedback t {_LIVE_IMPORTS}
                WHERE t.created_at >= ? AND t.created_at <= ? ORDER BY t.created_at, t.id LIMIT ?""",
                (window.start, window.end, limit),
            ).fetchall()
            refinements = conn.execute(
                f"""SELECT t.chat_id, t.message_id, t.category, t.governance_tags
                FROM message_refinements t {_LIVE_IMPORTS}
                WHERE t.created_at >= ? AND t.created_at <= ? ORDER BY t.created_at, t.id LIMIT ?""",
                (window.start, window.end, limit),
            ).fetchall()
        finally:
            conn.close()

        examples = [
            {
                "kind": "feedback",
                "chat_id": r["chat_id"],
                "message_id": r["message_id"],
                "tags": json.loads(r["tags"] or "[]"),
            }
            for r in feedback
        ]
        for r in refinements:
            tags = json.loads(r["governance_tags"] or "[]")
            tags.append(REFINEMENT_CATEGORY_TAGS.get(r["category"], DEFAULT_REFINEMENT_TAG))
            examples.append(
                {
                    "kind": "refinement",
                    "chat_id": r["chat_id"],
                    "message_id": r["message_id"],
                    "tags": tags,
                }
            )
        return examples
