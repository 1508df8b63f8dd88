"""Shared CLI utilities."""

import functools
import json
import sys
from datetime import timedelta

import structlog
from rich.console import Console
from rich.markup import escape

from tuning.errors import TuningError

console = Console()
logger = structlog.get_logger()


def get_components():
    """Initialize stores from config, creating the schema on first use."""
    from cli.config import get_db_path, load_config_model
    from tuning.analyzer import AnalyzerGateway
    from tuning.applier import Applier
    from tuning.imports import ImportRegistry
    from tuning.metrics import MetricsAggregator
    from tuning.proposals import ProposalStore
    from tuning.review import ReviewCoordinator
    from tuning.schema import init_db
    from tuning.settings_store import SettingsStore

    config = load_config_model()
    db_path = init_db(get_db_path(config))

    proposals = ProposalStore(db_path)
    applier = Applier(db_path, proposals=proposals, fail_on_drift=config.apply.fail_on_drift)

    return {
        "config": config,
        "db_path": db_path,
        "imports": ImportRegistry(db_path, max_content_chars=config.imports.max_content_chars),
        "proposals": proposals,
        "settings": SettingsStore(db_path),
        "metrics": MetricsAggregator(db_path),
        "applier": applier,
        "review": ReviewCoordinator(proposals, applier),
        "gateway": AnalyzerGateway(
            db_path,
            timeout_seconds=config.analysis.timeout_seconds,
            stale_run_minutes=config.analysis.stale_run_minutes,
        ),
    }


def report_errors(func):
    """Print tuning errors as ``Kind: message`` plus details, exit 1."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except TuningError as e:
            console.print(f"[red]{e.kind}:[/] {e.message}")
            details = {k: v for k, v in e.details().items() if k not in ("import", "existing_import")}
            if details:
                console.print(f"[dim]{json.dumps(details, default=str)}[/]")
            sys.exit(1)

    return wrapper


def parse_indices(raw: str | None) -> list[int] | None:
    """``"0,2"`` -> ``[0, 2]``; empty string -> ``[]``; ``None`` -> ``None``."""
    if raw is None:
        return None
    try:
        return [int(part) for part in raw.split(",") if part.strip()]
    except ValueError:
        console.print(f"[red]Invalid selection:[/] {raw!r} (expected comma-separated indices)")
        sys.exit(1)


def default_window(days: int) -> tuple[str, str]:
    from tuning.models import utc_iso, utc_now

    end = utc_now()
    return utc_iso(end - timedelta(days=days)), utc_iso(end)


def format_value(value, width: int = 40) -> str:
    if value is None:
        return "[dim]-[/]"
    text = value if isinstance(value, str) else json.dumps(value)
    text = text.replace("\n", " ")
    text = text if len(text) <= width else text[: width - 3] + "..."
    return escape(text)
