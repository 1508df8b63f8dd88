"""Dependency injection for FastAPI routes."""

from functools import lru_cache
from pathlib import Path

import structlog

from cli.config import get_db_path as _config_db_path
from cli.config import load_config_model
from cli.config_models import TunerConfig
from tuning.analyzer import AnalyzerGateway
from tuning.applier import Applier
from tuning.imports import ImportRegistry
from tuning.metrics import MetricsAggregator
from tuning.proposals import ProposalStore
from tuning.review import ReviewCoordinator
from tuning.settings_store import SettingsStore

logger = structlog.get_logger()


@lru_cache
def get_config() -> TunerConfig:
    """Load shared config (config.yaml, ~/.tuner/config.yaml or ~/tuner/config.yaml)."""
    return load_config_model()


def get_db_path() -> Path:
    return _config_db_path(get_config())


def get_import_registry() -> ImportRegistry:
    return ImportRegistry(get_db_path(), max_content_chars=get_config().imports.max_content_chars)


def get_proposal_store() -> ProposalStore:
    return ProposalStore(get_db_path())


def get_settings_store() -> SettingsStore:
    return SettingsStore(get_db_path())


def get_metrics_aggregator() -> MetricsAggregator:
    return MetricsAggregator(get_db_path())


def get_applier() -> Applier:
    db_path = get_db_path()
    return Applier(db_path, fail_on_drift=get_config().apply.fail_on_drift)


def get_review_coordinator() -> ReviewCoordinator:
    return ReviewCoordinator(get_proposal_store(), get_applier())


@lru_cache
def get_analyzer_gateway() -> AnalyzerGateway:
    """One gateway per process so its in-flight guard is shared by every request."""
    config = get_config()
    return AnalyzerGateway(
        get_db_path(),
        timeout_seconds=config.analysis.timeout_seconds,
        stale_run_minutes=config.analysis.stale_run_minutes,
    )
