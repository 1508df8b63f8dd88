"""Shared test fixtures for the tuner."""

import sys
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from observability import metrics  # noqa: E402
from tuning.models import Proposal, recommendation_from_dict  # noqa: E402
from tuning.proposals import ProposalStore  # noqa: E402
from tuning.schema import init_db  # noqa: E402
from tuning.settings_store import SettingsStore  # noqa: E402

WINDOW_START = "2025-01-01T00:00:00.000000+00:00"
WINDOW_END = "2025-01-31T23:59:59.000000+00:00"


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def db_path(tmp_path):
    """Fresh tuning database for each test."""
    return init_db(tmp_path / "tuning.db")


@pytest.fixture
def proposal_store(db_path):
    return ProposalStore(db_path)


@pytest.fixture
def settings_store(db_path):
    return SettingsStore(db_path)


@pytest.fixture
def sample_recommendations():
    """Three recommendations touching three different settings."""
    return [
        {
            "setting": "temperature",
            "action": "set",
            "from": 0.7,
            "to": 0.56,
            "confidence": 0.9,
            "rationale": "Reduce response variability",
        },
        {
            "setting": "max_tokens",
            "action": "set",
            "from": 1000,
            "to": 750,
            "confidence": 0.6,
            "rationale": "Reduce verbosity",
        },
        {
            "setting": "instructions",
            "action": "append",
            "from": "Be kind.",
            "to": "\n\n**FOCUS:** Stay on-topic.",
            "confidence": 0.8,
            "rationale": "Add focus instruction",
        },
    ]


@pytest.fixture
def seeded_settings(settings_store):
    values = {"temperature": 0.7, "max_tokens": 1000, "instructions": "Be kind."}
    settings_store.seed("default", values, actor="seed")
    return values


@pytest.fixture
def make_proposal(proposal_store):
    """Factory: persist a pending proposal from recommendation dicts."""

    def _make(recommendations, profile_id="default", dry_run=False, created_by="analyst"):
        proposal = Proposal(
            profile_id=profile_id,
            window_start=WINDOW_START,
            window_end=WINDOW_END,
            created_by=created_by,
            recommendations=tuple(recommendation_from_dict(r) for r in recommendations),
            metrics={"drifted": 0.2},
            governance_links=["guardrail:scope/focus"],
            dry_run=dry_run,
        )
        return proposal_store.create(proposal)

    return _make
