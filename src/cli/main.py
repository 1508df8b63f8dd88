"""CLI entry point for the tuner."""

import sys
from pathlib import Path

import click

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from cli.commands import analyze, import_cmd, imports, metrics, proposals, serve, settings, users
from cli.config import load_config_model
from cli.logging_config import setup_logging


@click.group()
@click.version_option(version="0.1.0")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def cli(verbose: bool):
    """Tuner - review and apply assistant tuning proposals."""
    config = load_config_model()
    level = "DEBUG" if verbose else config.logging.level
    setup_logging(json_mode=config.logging.json_mode, level=level)


cli.add_command(import_cmd)
cli.add_command(imports)
cli.add_command(analyze)
cli.add_command(metrics)
cli.add_command(proposals)
cli.add_command(settings)
cli.add_command(users)
cli.add_command(serve)


if __name__ == "__main__":
    cli()
