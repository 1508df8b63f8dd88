"""Analysis and metrics CLI commands."""

import asyncio

import click
from rich.console import Console
from rich.table import Table

from cli.utils import default_window, get_components, report_errors
from observability import log_run_summary
from tuning.models import NoProposal, Window

console = Console()


def _window(c: dict, start: str | None, end: str | None, days: int | None) -> Window:
    default_start, default_end = default_window(days or c["config"].analysis.default_window_days)
    return Window.from_bounds(start or default_start, end or default_end)


@click.command()
@click.option("--from", "start", help="Window start (ISO 8601)")
@click.option("--to", "end", help="Window end (ISO 8601)")
@click.option("--days", type=int, help="Window length ending now (default from config)")
@click.option("--profile", "profile_id", help="Configuration profile")
@click.option("--dry-run", is_flag=True, help="Mark the proposal as a preview that never applies")
@click.option("--as-user", "actor", default="cli")
@report_errors
def analyze(start, end, days, profile_id, dry_run, actor):
    """Run the analyzer over a window and store a proposal."""
    c = get_components()
    window = _window(c, start, end, days)
    profile_id = profile_id or c["config"].analysis.default_profile

    with console.status("Analyzing feedback..."):
        outcome = asyncio.run(
            c["gateway"].run_analysis(window, profile_id=profile_id, dry_run=dry_run, created_by=actor)
        )
    log_run_summary("analysis.summary")

    if isinstance(outcome, NoProposal):
        console.print(f"[yellow]No proposal:[/] {outcome.reason}")
        return

    label = " [dim](dry run)[/]" if outcome.dry_run else ""
    console.print(f"[green]Proposal {outcome.id}[/]{label}: {len(outcome.recommendations)} recommendations")
    if outcome.governance_links:
        console.print(f"[dim]Governance: {', '.join(outcome.governance_links)}[/]")


@click.command()
@click.option("--from", "start", help="Window start (ISO 8601)")
@click.option("--to", "end", help="Window end (ISO 8601)")
@click.option("--days", type=int, help="Window length ending now (default from config)")
@report_errors
def metrics(start, end, days):
    """Show feedback and refinement rollups for a window."""
    c = get_components()
    result = c["metrics"].aggregate(_window(c, start, end, days))

    console.print(f"\n[bold]Feedback:[/] {result['feedback_totals']}  [bold]Refinements:[/] {result['refinement_totals']}")
    if not result["tag_frequencies"]:
        console.print("[yellow]No tagged feedback in window.[/]")
        return

    table = Table(show_header=True, title="Issues")
    table.add_column("Tag")
    table.add_column("Count", justify="right")
    table.add_column("Rate", justify="right")
    for tag, count in result["tag_frequencies"].items():
        table.add_row(tag, str(count), f"{result['issue_rates'].get(tag, 0):.1%}")
    console.print(table)
