"""Tests for the governance rule analyzer and the single-flight analyzer gateway."""

import asyncio
import json
import sqlite3
from unittest.mock import patch

import pytest

from db import transaction, wal_connect
from tuning.analyzer import (
    AnalysisRequest,
    AnalysisResult,
    AnalyzerGateway,
    GovernanceRuleAnalyzer,
)
from tuning.errors import AnalysisInFlight, AnalysisTimeout, InvalidRecommendation, InvalidWindow
from tuning.events import list_events
from tuning.imports import ImportRegistry
from tuning.models import NoProposal, Proposal, SetRecommendation, Window, utc_iso

WINDOW = Window.from_bounds("2025-01-01T00:00:00Z", "2025-01-31T23:59:59Z")


def _submit(db_path, tags, chat_id="c1", timestamp="2025-01-10T12:00:00Z"):
    content = json.dumps(
        {
            "id": chat_id,
            "messages": [
                {"id": "m1", "role": "assistant", "content": "reply", "timestamp": timestamp, "feedback": {"tags": tags}},
            ],
        }
    )
    return ImportRegistry(db_path).submit(content, f"{chat_id}.json", "upload", created_by="admin")


def _runs(db_path):
    conn = wal_connect(db_path, row_factory=True)
    try:
        return [dict(r) for r in conn.execute("SELECT * FROM analysis_runs ORDER BY started_at")]
    finally:
        conn.close()


class BlockingAnalyzer:
    """Waits until released; lets a test hold a run open."""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def analyze(self, request):
        self.started.set()
        await self.release.wait()
        return AnalysisResult(recommendations=[])


class NoneAnalyzer:
    async def analyze(self, request):
        return None


class BrokenAnalyzer:
    async def analyze(self, request):
        raise RuntimeError("model unavailable")


class OverconfidentAnalyzer:
    async def analyze(self, request):
        return AnalysisResult(
            recommendations=[SetRecommendation(setting="temperature", to=0.5, from_=0.7, confidence=1.5)]
        )


class TestGovernanceRuleAnalyzer:
    @pytest.mark.asyncio
    async def test_rules_above_threshold(self):
        request = AnalysisRequest(
            window=WINDOW,
            profile_id="default",
            metrics={"issue_rates": {"too_long": 0.6, "drifted": 0.05}},
            current_settings={"max_tokens": 1000, "instructions": "Be kind."},
            examples=[{"chat_id": "c1", "message_id": "m1", "tags": ["too_long"]}],
        )

        result = await GovernanceRuleAnalyzer().analyze(request)

        assert [(r.setting, str(r.action)) for r in result.recommendations] == [
            ("max_tokens", "set"),
            ("instructions", "append"),
        ]
        max_tokens = result.recommendations[0]
        assert max_tokens.from_ == 1000
        assert max_tokens.to == 750
        assert max_tokens.confidence == 1.0
        assert "too_long rate: 60.0%" in max_tokens.rationale
        assert result.governance_links == ["guide:clear/concise"]
        assert result.top_examples == [{"chat_id": "c1", "message_id": "m1", "tags": ["too_long"]}]

    @pytest.mark.asyncio
    async def test_confidence_scales_with_rate(self):
        request = AnalysisRequest(
            window=WINDOW,
            profile_id="default",
            metrics={"issue_rates": {"drifted": 0.15}},
            current_settings={"temperature": 0.7},
        )
        result = await GovernanceRuleAnalyzer().analyze(request)
        temperature = result.recommendations[0]
        assert temperature.setting == "temperature"
        assert temperature.to == 0.56
        assert temperature.confidence == 1.0

    @pytest.mark.asyncio
    async def test_existing_instruction_not_repeated(self):
        focus = "\n\n**FOCUS:** Stay strictly on-topic with the seven-step process."
        request = AnalysisRequest(
            window=WINDOW,
            profile_id="default",
            metrics={"issue_rates": {"drifted": 0.5}},
            current_settings={"temperature": 0.7, "instructions": "Be kind." + focus},
        )
        result = await GovernanceRuleAnalyzer().analyze(request)
        assert [r.setting for r in result.recommendations] == ["temperature"]

    @pytest.mark.asyncio
    async def test_value_already_in_place_is_skipped(self):
        request = AnalysisRequest(
            window=WINDOW,
            profile_id="default",
            metrics={"issue_rates": {"parent_centric": 0.1}},
            current_settings={"presence_penalty": 0.3, "instructions": ""},
        )
        result = await GovernanceRuleAnalyzer().analyze(request)
        assert [r.setting for r in result.recommendations] == ["instructions"]

    @pytest.mark.asyncio
    async def test_factor_uses_default_baseline(self):
        request = AnalysisRequest(
            window=WINDOW,
            profile_id="default",
            metrics={"issue_rates": {"insufficient_grounding": 0.2}},
            current_settings={},
        )
        result = await GovernanceRuleAnalyzer().analyze(request)
        by_setting = {r.setting: r for r in result.recommendations}
        assert by_setting["retrieval_min_score"].to == 0.6
        assert by_setting["retrieval_min_score"].from_ is None
        assert by_setting["retrieval_k"].to == 8


class TestGateway:
    @pytest.mark.asyncio
    async def test_no_data_yields_no_proposal(self, db_path, proposal_store):
        outcome = await AnalyzerGateway(db_path).run_analysis(WINDOW)

        assert isinstance(outcome, NoProposal)
        assert outcome.to_dict()["proposal"] is None
        assert proposal_store.list_by_status() == []
        assert [r["status"] for r in _runs(db_path)] == ["no_proposal"]

    @pytest.mark.asyncio
    async def test_creates_pending_proposal(self, db_path, proposal_store, seeded_settings):
        record = _submit(db_path, ["too_long"])

        outcome = await AnalyzerGateway(db_path).run_analysis(WINDOW, created_by="admin")

        assert isinstance(outcome, Proposal)
        stored = proposal_store.get(outcome.id)
        assert stored.status == "pending"
        assert stored.created_by == "admin"
        assert stored.window_start == WINDOW.start
        assert stored.import_ids == [record.id]
        assert stored.metrics == {"too_long": 1.0}
        assert [r.setting for r in stored.recommendations] == ["max_tokens", "instructions"]
        assert stored.recommendations[1].from_ == "Be kind."
        [run] = _runs(db_path)
        assert run["status"] == "completed"
        assert run["proposal_id"] == outcome.id

    @pytest.mark.asyncio
    async def test_below_thresholds_gives_empty_proposal(self, db_path, proposal_store):
        _submit(db_path, ["unrelated"])
        outcome = await AnalyzerGateway(db_path).run_analysis(WINDOW)
        assert isinstance(outcome, Proposal)
        assert outcome.recommendations == ()

    @pytest.mark.asyncio
    async def test_dry_run_flag_carried(self, db_path, proposal_store):
        _submit(db_path, ["too_long"])
        outcome = await AnalyzerGateway(db_path).run_analysis(WINDOW, dry_run=True)
        assert proposal_store.get(outcome.id).dry_run is True

    @pytest.mark.asyncio
    async def test_analyzer_returning_none(self, db_path, proposal_store):
        _submit(db_path, ["too_long"])
        outcome = await AnalyzerGateway(db_path, analyzer=NoneAnalyzer()).run_analysis(WINDOW)
        assert isinstance(outcome, NoProposal)
        assert outcome.reason == "Analyzer returned no result"
        assert proposal_store.list_by_status() == []

    @pytest.mark.asyncio
    async def test_inverted_window(self, db_path):
        with pytest.raises(InvalidWindow):
            await AnalyzerGateway(db_path).run_analysis(Window(WINDOW.end, WINDOW.start))
        assert _runs(db_path) == []


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_overlapping_run_rejected(self, db_path, proposal_store):
        _submit(db_path, ["too_long"])
        analyzer = BlockingAnalyzer()
        gateway = AnalyzerGateway(db_path, analyzer=analyzer)

        first = asyncio.create_task(gateway.run_analysis(WINDOW))
        await analyzer.started.wait()
        with pytest.raises(AnalysisInFlight):
            await gateway.run_analysis(WINDOW)
        analyzer.release.set()
        outcome = await first

        assert isinstance(outcome, Proposal)
        assert len(proposal_store.list_by_status()) == 1

    @pytest.mark.asyncio
    async def test_other_gateway_rejected_by_database(self, db_path):
        _submit(db_path, ["too_long"])
        analyzer = BlockingAnalyzer()
        first = asyncio.create_task(AnalyzerGateway(db_path, analyzer=analyzer).run_analysis(WINDOW))
        await analyzer.started.wait()

        with pytest.raises(AnalysisInFlight):
            await AnalyzerGateway(db_path).run_analysis(WINDOW)

        analyzer.release.set()
        await first

    @pytest.mark.asyncio
    async def test_different_window_runs_concurrently(self, db_path):
        _submit(db_path, ["too_long"])
        analyzer = BlockingAnalyzer()
        gateway = AnalyzerGateway(db_path, analyzer=analyzer)
        first = asyncio.create_task(gateway.run_analysis(WINDOW))
        await analyzer.started.wait()

        other = Window.from_bounds("2025-01-01T00:00:00Z", "2025-01-15T00:00:00Z")
        outcome = await AnalyzerGateway(db_path).run_analysis(other)
        assert isinstance(outcome, Proposal)

        analyzer.release.set()
        await first

    @pytest.mark.asyncio
    async def test_stale_running_row_is_abandoned(self, db_path):
        _submit(db_path, ["too_long"])
        with transaction(db_path) as conn:
            conn.execute(
                """INSERT INTO analysis_runs
                (id, profile_id, window_start, window_end, status, started_by, started_at)
                VALUES ('old', 'default', ?, ?, 'running', 'crashed-worker', ?)""",
                (WINDOW.start, WINDOW.end, utc_iso("2020-01-01T00:00:00Z")),
            )

        outcome = await AnalyzerGateway(db_path).run_analysis(WINDOW)

        assert isinstance(outcome, Proposal)
        statuses = {r["id"]: r["status"] for r in _runs(db_path)}
        assert statuses["old"] == "abandoned"


class TestAbortedRuns:
    @pytest.mark.asyncio
    async def test_timeout_saves_nothing(self, db_path, proposal_store):
        _submit(db_path, ["too_long"])
        analyzer = BlockingAnalyzer()
        gateway = AnalyzerGateway(db_path, analyzer=analyzer, timeout_seconds=0.05)

        with pytest.raises(AnalysisTimeout) as exc:
            await gateway.run_analysis(WINDOW)

        assert exc.value.status_code == 504
        assert proposal_store.list_by_status() == []
        [run] = _runs(db_path)
        assert run["status"] == "failed"
        assert run["error"] == "timeout"
        assert len(list_events(db_path, event_type="analysis_failed")) == 1

    @pytest.mark.asyncio
    async def test_cancel_saves_nothing_and_releases(self, db_path, proposal_store):
        _submit(db_path, ["too_long"])
        analyzer = BlockingAnalyzer()
        gateway = AnalyzerGateway(db_path, analyzer=analyzer)

        task = asyncio.create_task(gateway.run_analysis(WINDOW))
        await analyzer.started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert proposal_store.list_by_status() == []
        assert [r["status"] for r in _runs(db_path)] == ["cancelled"]
        assert len(list_events(db_path, event_type="analysis_cancelled")) == 1

        gateway.analyzer = GovernanceRuleAnalyzer()
        outcome = await gateway.run_analysis(WINDOW)
        assert isinstance(outcome, Proposal)

    @pytest.mark.asyncio
    async def test_analyzer_error_propagates(self, db_path, proposal_store):
        _submit(db_path, ["too_long"])
        with pytest.raises(RuntimeError, match="model unavailable"):
            await AnalyzerGateway(db_path, analyzer=BrokenAnalyzer()).run_analysis(WINDOW)
        assert proposal_store.list_by_status() == []
        assert _runs(db_path)[0]["error"] == "model unavailable"

    @pytest.mark.asyncio
    async def test_aggregate_failure_releases_run(self, db_path, proposal_store):
        _submit(db_path, ["too_long"])
        gateway = AnalyzerGateway(db_path)
        real_aggregate = gateway.aggregator.aggregate
        calls = {"n": 0}

        def flaky(window):
            calls["n"] += 1
            if calls["n"] == 1:
                raise sqlite3.OperationalError("disk I/O error")
            return real_aggregate(window)

        with patch.object(gateway.aggregator, "aggregate", side_effect=flaky):
            with pytest.raises(sqlite3.OperationalError):
                await gateway.run_analysis(WINDOW)
            assert [r["status"] for r in _runs(db_path)] == ["failed"]

            outcome = await gateway.run_analysis(WINDOW)

        assert isinstance(outcome, Proposal)
        assert [r["status"] for r in _runs(db_path)] == ["failed", "completed"]

    @pytest.mark.asyncio
    async def test_invalid_recommendation_saves_nothing(self, db_path, proposal_store):
        _submit(db_path, ["too_long"])
        gateway = AnalyzerGateway(db_path, analyzer=OverconfidentAnalyzer())

        with pytest.raises(InvalidRecommendation):
            await gateway.run_analysis(WINDOW)

        assert proposal_store.list_by_status() == []
        [run] = _runs(db_path)
        assert run["status"] == "failed"
        assert "Confidence" in run["error"]
