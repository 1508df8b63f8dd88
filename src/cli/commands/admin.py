"""Administrative CLI commands: settings, users, server."""

import json
from pathlib import Path

import click
import yaml
from rich.console import Console
from rich.table import Table

from cli.utils import format_value, get_components, report_errors

console = Console()


@click.group()
def settings():
    """Inspect and seed configuration settings."""
    pass


@settings.command("show")
@click.argument("profile_id", default="default")
def settings_show(profile_id):
    """Show a profile's current settings."""
    c = get_components()
    records = c["settings"].get_records(profile_id)

    if not records:
        console.print(f"[yellow]No settings for profile {profile_id}.[/]")
        return

    table = Table(show_header=True, title=f"Settings: {profile_id}")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_column("Ver", justify="right")
    table.add_column("Updated by", style="dim")
    table.add_column("Updated", style="dim", width=10)
    for r in records:
        table.add_row(r["setting"], format_value(r["value"], 50), str(r["version"]), r["updated_by"] or "-", r["updated_at"][:10])
    console.print(table)


@settings.command("seed")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--profile", "profile_id", default="default")
@click.option("--as-user", "actor", default="cli")
@report_errors
def settings_seed(file: Path, profile_id, actor):
    """Write settings from a YAML or JSON mapping, outside the proposal workflow."""
    text = file.read_text()
    values = json.loads(text) if file.suffix == ".json" else yaml.safe_load(text)
    if not isinstance(values, dict):
        console.print("[red]Error:[/] seed file must contain a mapping of setting -> value")
        raise SystemExit(1)
    c = get_components()
    c["settings"].seed(profile_id, values, actor=actor)
    console.print(f"[green]Seeded[/] {len(values)} settings for {profile_id}")


@click.group()
def users():
    """Manage reviewer roles."""
    pass


@users.command("grant-admin")
@click.argument("email")
@click.option("--super", "super_admin", is_flag=True, help="Grant super_admin instead of admin")
@report_errors
def users_grant_admin(email, super_admin):
    """Grant the admin role to a user who has signed in at least once."""
    from web.user_store import find_user_by_email, set_user_type

    c = get_components()
    user = find_user_by_email(email, db_path=c["db_path"])
    if not user:
        console.print(f"[red]Error:[/] no user with email {email}; they must sign in first")
        raise SystemExit(1)
    updated = set_user_type(user["id"], "super_admin" if super_admin else "admin", db_path=c["db_path"])
    console.print(f"[green]{email}[/] is now {updated['user_type']}")


@click.command()
@click.option("--host", default=None)
@click.option("--port", type=int, default=None)
def serve(host, port):
    """Run the tuning API server."""
    import uvicorn

    from cli.logging_config import setup_logging

    c = get_components()
    web = c["config"].web
    setup_logging(json_mode=True, level=c["config"].logging.level)
    uvicorn.run("web.app:app", host=host or web.host, port=port or web.port, log_config=None)
