"""CLI command modules."""

from .admin import serve, settings, users
from .analysis import analyze, metrics
from .imports import import_cmd, imports
from .proposals import proposals

__all__ = [
    "analyze",
    "import_cmd",
    "imports",
    "metrics",
    "proposals",
    "serve",
    "settings",
    "users",
]
