"""Proposal review CLI commands."""

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from cli.utils import format_value, get_components, parse_indices, report_errors

console = Console()

_STATUS_STYLE = {"pending": "yellow", "accepted": "cyan", "rejected": "red", "applied": "green"}


@click.group()
def proposals():
    """Review and apply tuning proposals."""
    pass


@proposals.command("list")
@click.option(
    "--status",
    type=click.Choice(["pending", "accepted", "rejected", "applied", "all"]),
    default="all",
)
@click.option("--profile", "profile_id", default=None)
@click.option("--limit", "-n", default=20)
@report_errors
def proposals_list(status, profile_id, limit):
    """List proposals, newest first."""
    c = get_components()
    rows = c["proposals"].list_by_status(
        status=status if status != "all" else None,
        profile_id=profile_id,
        limit=limit,
    )

    if not rows:
        console.print("[yellow]No proposals found.[/]")
        return

    table = Table(show_header=True, title="Proposals")
    table.add_column("Created", style="cyan", width=10)
    table.add_column("ID", style="dim")
    table.add_column("Profile")
    table.add_column("Window")
    table.add_column("Recs", justify="right")
    table.add_column("Status")

    for p in rows:
        style = _STATUS_STYLE.get(p.status, "white")
        status_str = f"[{style}]{p.status}[/]" + (" [dim](dry run)[/]" if p.dry_run else "")
        table.add_row(
            p.created_at[:10],
            p.id,
            p.profile_id,
            f"{p.window_start[:10]}..{p.window_end[:10]}",
            str(len(p.recommendations)),
            status_str,
        )

    console.print(table)


@proposals.command("show")
@click.argument("proposal_id")
@report_errors
def proposals_show(proposal_id):
    """Show a proposal's recommendations against current settings."""
    from tuning.review import ReviewSession

    c = get_components()
    proposal = c["proposals"].get(proposal_id)
    diff = ReviewSession(proposal).diff_view(c["settings"].get_all(proposal.profile_id))

    console.print(f"\n[bold]{proposal.id}[/] ({proposal.status}) profile={proposal.profile_id}")
    console.print(f"[dim]Window {proposal.window_start} .. {proposal.window_end}[/]")

    if not diff:
        console.print("[yellow]No recommendations (metrics only).[/]")
    else:
        table = Table(show_header=True)
        table.add_column("#", justify="right")
        table.add_column("Setting", style="cyan")
        table.add_column("Action")
        table.add_column("Current")
        table.add_column("After")
        table.add_column("Conf", justify="right")
        table.add_column("Rationale", max_width=40)
        for d in diff:
            current = format_value(d["current"], 20)
            if d["drifted"]:
                current += " [red](drift)[/]"
            marker = "" if d["selected"] else " [dim](not selected)[/]"
            table.add_row(
                str(d["index"]),
                d["setting"] + marker,
                d["action"],
                current,
                format_value(d["preview"], 30),
                f"{d['confidence']:.0%}",
                escape(d["rationale"]),
            )
        console.print(table)

    if proposal.metrics:
        rates = ", ".join(f"{k} {v:.1%}" for k, v in sorted(proposal.metrics.items(), key=lambda kv: -kv[1])[:5])
        console.print(f"[dim]Top issue rates: {rates}[/]")


@proposals.command("reject")
@click.argument("proposal_id")
@click.option("--expect", "expected_status", default=None, help="Status you last saw (default: current)")
@click.option("--notes", default=None, help="Reviewer note kept on the decision event")
@click.option("--as-user", "reviewer", default="cli")
@report_errors
def proposals_reject(proposal_id, expected_status, notes, reviewer):
    """Reject a pending proposal."""
    c = get_components()
    decision = c["review"].decide(
        proposal_id, "rejected", reviewer, expected_status=expected_status, notes=notes
    )
    console.print(f"[red]Rejected[/] {decision.proposal.id}")


@proposals.command("accept")
@click.argument("proposal_id")
@click.option("--select", "selection", default=None, help="Comma-separated indices (default: all)")
@click.option("--expect", "expected_status", default=None)
@click.option("--as-user", "reviewer", default="cli")
@report_errors
def proposals_accept(proposal_id, selection, expected_status, reviewer):
    """Accept a proposal and record the selection without applying it."""
    c = get_components()
    decision = c["review"].decide(
        proposal_id,
        "accepted",
        reviewer,
        selected=parse_indices(selection),
        expected_status=expected_status,
    )
    console.print(f"[cyan]Accepted[/] {decision.proposal.id} selection={decision.proposal.selected_indices}")


@proposals.command("apply")
@click.argument("proposal_id")
@click.option("--select", "selection", default=None, help="Comma-separated indices (default: accepted selection or all)")
@click.option("--expect", "expected_status", default=None)
@click.option("--dry-run", is_flag=True, help="Preview the writes and roll them back")
@click.option("--as-user", "reviewer", default="cli")
@report_errors
def proposals_apply(proposal_id, selection, expected_status, dry_run, reviewer):
    """Apply selected recommendations atomically."""
    c = get_components()
    decision = c["review"].decide(
        proposal_id,
        "applied",
        reviewer,
        apply=True,
        selected=parse_indices(selection),
        expected_status=expected_status,
        dry_run=dry_run,
    )
    result = decision.applied

    table = Table(show_header=True, title="Preview" if result.dry_run else "Applied")
    table.add_column("#", justify="right")
    table.add_column("Setting", style="cyan")
    table.add_column("Before")
    table.add_column("After")
    for change in result.changes:
        before = format_value(change.previous_value, 25)
        if change.drifted:
            before += " [red](drift)[/]"
        table.add_row(str(change.index), change.setting, before, format_value(change.new_value, 25))
    console.print(table)

    if result.dry_run:
        console.print("[yellow]Dry run:[/] nothing was written.")
    else:
        console.print(f"[green]Applied[/] {len(result.changes)} changes; proposal is {result.proposal.status}")
