"""Analyzer gateway: single-flight, cancellable analysis runs that yield a proposal or nothing.

The analyzer itself is pluggable (``Analyzer`` protocol). ``GovernanceRuleAnalyzer``
is the default: it maps issue rates onto a fixed table of governance rules.
"""

import asyncio
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Protocol

import structlog

from db import transaction
from observability import metrics
from shared_types import AnalysisRunStatus, EventType
from tuning.errors import AnalysisInFlight, AnalysisTimeout, InvalidWindow
from tuning.events import record_event
from tuning.metrics import MetricsAggregator
from tuning.models import (
    AppendRecommendation,
    NoProposal,
    Proposal,
    Recommendation,
    SetRecommendation,
    Window,
    new_id,
    utc_iso,
    utc_now,
)
from tuning.proposals import ProposalStore
from tuning.settings_store import SettingsStore

logger = structlog.get_logger()

DEFAULT_TIMEOUT_SECONDS = 120.0
DEFAULT_STALE_RUN_MINUTES = 30


@dataclass(frozen=True)
class AnalysisRequest:
    window: Window
    profile_id: str
    metrics: dict[str, Any]
    current_settings: dict[str, Any]
    examples: list[dict] = field(default_factory=list)
    dry_run: bool = False


@dataclass
class AnalysisResult:
    recommendations: list[Recommendation]
    metrics: dict[str, float] = field(default_factory=dict)
    governance_links: list[str] = field(default_factory=list)
    top_examples: list[dict] = field(default_factory=list)


class Analyzer(Protocol):
    async def analyze(self, request: AnalysisRequest) -> AnalysisResult | None: ...


# --- Reference analyzer ---


@dataclass(frozen=True)
class RuleChange:
    """One change a governance rule proposes.

    Exactly one of ``factor`` (scale the current value), ``value`` (set it)
    or ``append`` (add text to it) is given.
    """

    setting: str
    rationale: str
    factor: float | None = None
    value: Any = None
    append: str | None = None


@dataclass(frozen=True)
class GovernanceRule:
    threshold: float
    changes: tuple[RuleChange, ...]
    governance_links: tuple[str, ...]


GOVERNANCE_RULES: dict[str, GovernanceRule] = {
    "too_long": GovernanceRule(
        0.3,
        (
            RuleChange("max_tokens", "Reduce verbosity", factor=0.75),
            RuleChange(
                "instructions",
                "Add conciseness instruction",
                append="\n\n**IMPORTANT:** Keep responses concise and focused.",
            ),
        ),
        ("guide:clear/concise",),
    ),
    "drifted": GovernanceRule(
        0.15,
        (
            RuleChange("temperature", "Reduce response variability", factor=0.8),
            RuleChange(
                "instructions",
                "Add focus instruction",
                append="\n\n**FOCUS:** Stay strictly on-topic with the seven-step process.",
            ),
        ),
        ("guardrail:scope/focus", "process:guidance_adherence"),
    ),
    "too_sharp": GovernanceRule(
        0.1,
        (
            RuleChange("temperature", "Soften tone with higher temperature", factor=1.2),
            RuleChange(
                "instructions",
                "Add empathy instruction",
                append="\n\n**TONE:** Use warm, empathetic language. Avoid directness that could seem harsh.",
            ),
        ),
        ("guardrail:tone/calm", "guide:empathy"),
    ),
    "too_theoretical": GovernanceRule(
        0.2,
        (
            RuleChange(
                "instructions",
                "Add practical format instruction",
                append="\n\n**FORMAT:** Provide practical, actionable steps in bullet points.",
            ),
            RuleChange("top_p", "Focus on more probable/practical suggestions", factor=0.9),
        ),
        ("guide:practical_steps", "process:actionable_outputs"),
    ),
    "parent_centric": GovernanceRule(
        0.05,
        (
            RuleChange(
                "instructions",
                "Add child-centered instruction",
                append="\n\n**PRIORITY:** Always center the child's needs and wellbeing in responses.",
            ),
            RuleChange("presence_penalty", "Reduce repetitive parent-focused patterns", value=0.3),
        ),
        ("guardrail:child_centered", "guide:balance/priorities"),
    ),
    "skipped_steps": GovernanceRule(
        0.1,
        (
            RuleChange("phase1_prompt_enabled", "Enable phase 1 prompting", value=True),
            RuleChange(
                "instructions",
                "Add process enforcement",
                append="\n\n**PROCESS:** Follow the seven-step process sequentially. Do not skip steps.",
            ),
        ),
        ("process:seven_step", "guide:structured_approach"),
    ),
    "validation_needed": GovernanceRule(
        0.05,
        (
            RuleChange(
                "instructions",
                "Add validation instruction",
                append="\n\n**VALIDATION:** Begin responses by acknowledging and validating the user's feelings.",
            ),
            RuleChange("temperature", "Increase warmth through temperature", factor=1.1),
        ),
        ("guide:emotional_validation", "process:acknowledgment"),
    ),
    "needs_empathy": GovernanceRule(
        0.05,
        (
            RuleChange("temperature", "Increase empathetic warmth", factor=1.2),
            RuleChange(
                "instructions",
                "Add empathy scaffolding",
                append='\n\n**EMPATHY:** Show deep understanding and compassion. Use phrases like '
                '"I understand how difficult this must be"',
            ),
            RuleChange("frequency_penalty", "Allow more empathetic repetition", value=-0.2),
        ),
        ("guardrail:tone/empathetic", "guide:empathy"),
    ),
    "emotional_support": GovernanceRule(
        0.05,
        (
            RuleChange(
                "instructions",
                "Add supportive language",
                append="\n\n**SUPPORT:** Provide emotional support and encouragement. "
                "Acknowledge strength and resilience.",
            ),
            RuleChange("max_tokens", "Allow space for supportive elaboration", factor=1.2),
            RuleChange("temperature", "Increase warmth in responses", factor=1.15),
        ),
        ("guide:emotional_support", "guardrail:tone/supportive"),
    ),
    "faith_based": GovernanceRule(
        0.05,
        (
            RuleChange(
                "instructions",
                "Add spiritual sensitivity",
                append="\n\n**SPIRITUALITY:** Be respectful of faith perspectives. "
                "Use inclusive spiritual language when appropriate.",
            ),
            RuleChange("greeting_include_motivational_quote", "Include inspirational elements", value=True),
        ),
        ("guide:spiritual_sensitivity", "process:inclusive_language"),
    ),
    "insufficient_grounding": GovernanceRule(
        0.1,
        (
            RuleChange("retrieval_min_score", "Increase relevance threshold to improve grounding", factor=1.2),
            RuleChange("retrieval_k", "Retrieve more documents for better context", factor=1.5),
        ),
        ("rag:grounding", "policy:citation_required"),
    ),
    "missing_citation": GovernanceRule(
        0.05,
        (
            RuleChange(
                "instructions",
                "Enforce citation requirements",
                append="\n\n**CITATIONS:** Always cite relevant sections from retrieved documents "
                "when using their content.",
            ),
            RuleChange("retrieval_enabled", "Enable retrieval to support citations", value=True),
        ),
        ("rag:citations", "policy:attribution"),
    ),
    "irrelevant_chunks": GovernanceRule(
        0.15,
        (
            RuleChange("retrieval_max_per_doc", "Reduce chunks per document to improve relevance", factor=0.7),
            RuleChange("retrieval_min_score", "Increase relevance threshold", factor=1.3),
        ),
        ("rag:relevance", "process:quality_control"),
    ),
    "too_many_chunks": GovernanceRule(
        0.1,
        (
            RuleChange("retrieval_max_tokens", "Reduce context window for clearer responses", factor=0.8),
            RuleChange("retrieval_k", "Retrieve fewer documents to reduce noise", factor=0.7),
        ),
        ("rag:context_management", "guide:clarity"),
    ),
}

# Baselines for factor rules when a profile has no stored value yet
DEFAULT_SETTINGS: dict[str, Any] = {
    "max_tokens": 1000,
    "temperature": 0.7,
    "top_p": 1.0,
    "retrieval_min_score": 0.5,
    "retrieval_k": 5,
    "retrieval_max_per_doc": 3,
    "retrieval_max_tokens": 2000,
}

TOP_EXAMPLE_MIN_RATE = 0.1
MAX_TOP_EXAMPLES = 3


def _scaled(current: Any, factor: float) -> Any:
    if isinstance(current, bool) or not isinstance(current, (int, float)):
        return factor
    if isinstance(current, int):
        return max(1, round(current * factor))
    return round(current * factor, 4)


class GovernanceRuleAnalyzer:
    """Recommendations from issue rates that cross a governance rule's threshold."""

    def __init__(self, rules: dict[str, GovernanceRule] | None = None):
        self.rules = rules or GOVERNANCE_RULES

    async def analyze(self, request: AnalysisRequest) -> AnalysisResult | None:
        rates: dict[str, float] = request.metrics.get("issue_rates", {})
        settings = request.current_settings
        recommendations: list[Recommendation] = []
        links: list[str] = []

        for issue, rule in self.rules.items():
            rate = rates.get(issue, 0.0)
            if rate < rule.threshold:
                continue
            confidence = round(min(rate / rule.threshold, 1.0), 4)
            for change in rule.changes:
                rec = self._recommend(change, settings, confidence, f"{change.rationale} ({issue} rate: {rate:.1%})")
                if rec is None:
                    continue
                recommendations.append(rec)
            links.extend(link for link in rule.governance_links if link not in links)

        return AnalysisResult(
            recommendations=recommendations,
            metrics=dict(rates),
            governance_links=links,
            top_examples=self._top_examples(rates, request.examples),
        )

    def _recommend(
        self,
        change: RuleChange,
        settings: dict[str, Any],
        confidence: float,
        rationale: str,
    ) -> Recommendation | None:
        current = settings.get(change.setting)
        if change.append is not None:
            if isinstance(current, str) and change.append in current:
                return None
            return AppendRecommendation(
                setting=change.setting,
                to=change.append,
                from_=current,
                confidence=confidence,
                rationale=rationale,
            )
        if change.factor is not None:
            base = current if current is not None else DEFAULT_SETTINGS.get(change.setting, 1.0)
            target = _scaled(base, change.factor)
        else:
            target = change.value
        rec = SetRecommendation(
            setting=change.setting,
            to=target,
            from_=current,
            confidence=confidence,
            rationale=rationale,
        )
        return None if rec.is_noop() else rec

    def _top_examples(self, rates: dict[str, float], examples: list[dict]) -> list[dict]:
        top_issues = sorted(
            ((issue, rate) for issue, rate in rates.items() if rate >= TOP_EXAMPLE_MIN_RATE),
            key=lambda item: item[1],
            reverse=True,
        )[:MAX_TOP_EXAMPLES]
        picked = []
        for issue, _ in top_issues:
            match = next((e for e in examples if issue in e.get("tags", [])), None)
            if match:
                picked.append({"chat_id": match["chat_id"], "message_id": match["message_id"], "tags": [issue]})
        return picked


# --- Gateway ---


class AnalyzerGateway:
    """Runs the analyzer at most once at a time per ``(profile_id, window)``.

    An in-process guard rejects overlapping calls immediately; a partial unique
    index over running ``analysis_runs`` rows does the same across processes.
    A run that times out or is cancelled leaves no proposal behind.
    """

    def __init__(
        self,
        db_path: Path,
        analyzer: Analyzer | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        stale_run_minutes: int = DEFAULT_STALE_RUN_MINUTES,
    ):
        self.db_path = Path(db_path)
        self.analyzer = analyzer or GovernanceRuleAnalyzer()
        self.timeout_seconds = timeout_seconds
        self.stale_run_minutes = stale_run_minutes
        self.aggregator = MetricsAggregator(self.db_path)
        self.proposals = ProposalStore(self.db_path)
        self.settings = SettingsStore(self.db_path)
        self._inflight: set[tuple[str, str, str]] = set()
        self._guard = threading.Lock()

    async def run_analysis(
        self,
        window: Window,
        profile_id: str = "default",
        dry_run: bool = False,
        created_by: str = "system",
    ) -> Proposal | NoProposal:
        if window.end < window.start:
            raise InvalidWindow(window.start, window.end)
        key = (profile_id, window.start, window.end)
        with self._guard:
            if key in self._inflight:
                raise AnalysisInFlight(profile_id, window.start, window.end)
            self._inflight.add(key)
        try:
            return await self._run(window, profile_id, dry_run, created_by)
        finally:
            with self._guard:
                self._inflight.discard(key)

    async def _run(self, window: Window, profile_id: str, dry_run: bool, created_by: str) -> Proposal | NoProposal:
        run_id = self._claim_run(window, profile_id, dry_run, created_by)
        log = logger.bind(run_id=run_id, profile_id=profile_id, window_start=window.start, window_end=window.end)

        # Every exit after the claim must leave the run row terminal.
        try:
            return await self._analyze(run_id, window, profile_id, dry_run, created_by, log)
        except asyncio.TimeoutError:
            self._abort_run(run_id, profile_id, AnalysisRunStatus.FAILED, "timeout", created_by)
            log.warning("analysis.timeout", timeout=self.timeout_seconds)
            raise AnalysisTimeout(profile_id, self.timeout_seconds)
        except asyncio.CancelledError:
            self._abort_run(run_id, profile_id, AnalysisRunStatus.CANCELLED, "cancelled", created_by)
            log.warning("analysis.cancelled")
            raise
        except Exception as e:
            self._abort_run(run_id, profile_id, AnalysisRunStatus.FAILED, str(e) or type(e).__name__, created_by)
            log.error("analysis.failed", error=str(e))
            raise

    async def _analyze(
        self, run_id: str, window: Window, profile_id: str, dry_run: bool, created_by: str, log
    ) -> Proposal | NoProposal:
        aggregate = await asyncio.to_thread(self.aggregator.aggregate, window)
        if not aggregate["total"]:
            self._finish_run(run_id, AnalysisRunStatus.NO_PROPOSAL)
            log.info("analysis.no_data")
            return NoProposal("No feedback or refinements in window", window)

        request = AnalysisRequest(
            window=window,
            profile_id=profile_id,
            metrics=aggregate,
            current_settings=await asyncio.to_thread(self.settings.get_all, profile_id),
            examples=await asyncio.to_thread(self.aggregator.sample, window),
            dry_run=dry_run,
        )

        with metrics.timer("analysis.run"):
            result = await asyncio.wait_for(self.analyzer.analyze(request), timeout=self.timeout_seconds)

        if result is None:
            self._finish_run(run_id, AnalysisRunStatus.NO_PROPOSAL)
            log.info("analysis.no_result")
            return NoProposal("Analyzer returned no result", window)

        proposal = Proposal(
            profile_id=profile_id,
            window_start=window.start,
            window_end=window.end,
            created_by=created_by,
            recommendations=tuple(result.recommendations),
            metrics=result.metrics,
            governance_links=result.governance_links,
            dry_run=dry_run,
            import_ids=aggregate["import_ids"],
            top_examples=result.top_examples,
        )
        with transaction(self.db_path) as conn:
            self.proposals.create(proposal, conn=conn)
            self._finish_run(run_id, AnalysisRunStatus.COMPLETED, proposal_id=proposal.id, conn=conn)

        metrics.counter("analysis.proposals")
        log.info("analysis.completed", proposal_id=proposal.id, recommendations=len(proposal.recommendations))
        return proposal

    def _claim_run(self, window: Window, profile_id: str, dry_run: bool, created_by: str) -> str:
        run_id = new_id()
        cutoff = utc_iso(utc_now() - timedelta(minutes=self.stale_run_minutes))
        try:
            with transaction(self.db_path) as conn:
                abandoned = conn.execute(
                    """UPDATE analysis_runs SET status = ?, finished_at = ?, error = 'stale'
                    WHERE profile_id = ? AND window_start = ? AND window_end = ?
                      AND status = ? AND started_at < ?""",
                    (
                        str(AnalysisRunStatus.ABANDONED),
                        utc_iso(),
                        profile_id,
                        window.start,
                        window.end,
                        str(AnalysisRunStatus.RUNNING),
                        cutoff,
                    ),
                ).rowcount
                conn.execute(
                    """INSERT INTO analysis_runs
                    (id, profile_id, window_start, window_end, status, dry_run, started_by, started_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        run_id,
                        profile_id,
                        window.start,
                        window.end,
                        str(AnalysisRunStatus.RUNNING),
                        int(dry_run),
                        created_by,
                        utc_iso(),
                    ),
                )
        except sqlite3.IntegrityError:
            raise AnalysisInFlight(profile_id, window.start, window.end)
        if abandoned:
            logger.warning("analysis.stale_runs_abandoned", profile_id=profile_id, count=abandoned)
        return run_id

    def _finish_run(
        self,
        run_id: str,
        status: AnalysisRunStatus,
        proposal_id: str | None = None,
        error: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> None:
        params = (str(status), proposal_id, error, utc_iso(), run_id)
        query = "UPDATE analysis_runs SET status = ?, proposal_id = ?, error = ?, finished_at = ? WHERE id = ?"
        if conn is not None:
            conn.execute(query, params)
            return
        with transaction(self.db_path) as own_conn:
            own_conn.execute(query, params)

    def _abort_run(
        self,
        run_id: str,
        profile_id: str,
        status: AnalysisRunStatus,
        reason: str,
        created_by: str,
    ) -> None:
        event = EventType.ANALYSIS_CANCELLED if status == AnalysisRunStatus.CANCELLED else EventType.ANALYSIS_FAILED
        with transaction(self.db_path) as conn:
            self._finish_run(run_id, status, error=reason[:500], conn=conn)
            record_event(conn, event, {"run_id": run_id, "reason": reason[:500]}, profile_id=profile_id, created_by=created_by)
        metrics.counter(f"analysis.{status}")
