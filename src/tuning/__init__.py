"""Tuning-proposal lifecycle: imports, analysis, review and atomic apply."""

from .analyzer import AnalysisRequest, AnalysisResult, AnalyzerGateway, GovernanceRuleAnalyzer
from .applier import Applier
from .imports import ImportRegistry, content_fingerprint
from .metrics import MetricsAggregator
from .models import (
    AppendRecommendation,
    AppliedResult,
    ImportRecord,
    NoProposal,
    Proposal,
    Recommendation,
    RemoveRecommendation,
    SetRecommendation,
    Window,
)
from .proposals import ProposalStore
from .review import Accept, Reject, ReviewCoordinator, ReviewSession
from .schema import init_db
from .settings_store import SettingsStore

__all__ = [
    "Accept",
    "AnalysisRequest",
    "AnalysisResult",
    "AnalyzerGateway",
    "AppendRecommendation",
    "AppliedResult",
    "Applier",
    "GovernanceRuleAnalyzer",
    "ImportRecord",
    "ImportRegistry",
    "MetricsAggregator",
    "NoProposal",
    "Proposal",
    "ProposalStore",
    "Recommendation",
    "Reject",
    "RemoveRecommendation",
    "ReviewCoordinator",
    "ReviewSession",
    "SetRecommendation",
    "SettingsStore",
    "Window",
    "content_fingerprint",
    "init_db",
]
