"""Import CLI commands."""

from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from cli.utils import get_components, report_errors
from tuning.errors import DuplicateImport

console = Console()


@click.command("import")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--source", default="cli", help="Free-text origin tag")
@click.option("--as-user", "actor", default="cli", help="Recorded as created_by")
@report_errors
def import_cmd(file: Path, source: str, actor: str):
    """Import a conversational export (BeAligned XML, JSON or transcript)."""
    c = get_components()
    try:
        record = c["imports"].submit(file.read_bytes(), file.name, source, created_by=actor)
    except DuplicateImport as e:
        existing = e.existing
        console.print(f"[yellow]Duplicate:[/] already imported as {existing['filename']} ({existing['id']})")
        console.print(
            f"[dim]{existing['conversations']} conversations, {existing['messages']} messages, "
            f"{existing['feedback_items']} feedback on {existing['created_at'][:10]}[/]"
        )
        console.print("[dim]Delete the original with `tuner imports delete` to re-import.[/]")
        raise SystemExit(1)

    console.print(f"[green]Imported:[/] {record.filename} ({record.detected_format})")
    console.print(
        f"  {record.conversations} conversations, {record.messages} messages, "
        f"{record.feedback_items} feedback, {record.refinements} refinements"
    )


@click.group()
def imports():
    """List and delete imports."""
    pass


@imports.command("list")
@click.option("--limit", "-n", default=20)
@click.option("--all", "include_deleted", is_flag=True, help="Include soft-deleted imports")
def imports_list(limit: int, include_deleted: bool):
    """List recent imports."""
    c = get_components()
    records = c["imports"].list(limit=limit, include_deleted=include_deleted)

    if not records:
        console.print("[yellow]No imports found.[/]")
        return

    table = Table(show_header=True, title="Imports")
    table.add_column("Date", style="cyan", width=10)
    table.add_column("ID", style="dim")
    table.add_column("File")
    table.add_column("Format", style="green")
    table.add_column("Msgs", justify="right")
    table.add_column("Feedback", justify="right")
    table.add_column("Status")

    for r in records:
        status = r.status
        if status == "completed":
            status = f"[green]{status}[/]"
        elif status == "failed":
            status = f"[red]{status}[/]"
        if r.deleted_at:
            status += " [dim](deleted)[/]"
        table.add_row(
            r.created_at[:10],
            r.id[:12],
            r.filename[:30],
            r.detected_format or "-",
            str(r.messages),
            str(r.feedback_items + r.refinements),
            status,
        )

    console.print(table)


@imports.command("delete")
@click.argument("import_id")
@click.option("--as-user", "actor", default="cli")
@click.confirmation_option(prompt="Soft-delete this import? Its feedback leaves the metrics.")
@report_errors
def imports_delete(import_id: str, actor: str):
    """Soft-delete an import so its content can be re-imported."""
    c = get_components()
    record = c["imports"].delete(import_id, actor=actor)
    console.print(f"[green]Deleted:[/] {record.filename} ({record.id})")
