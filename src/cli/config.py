"""Configuration loading."""

from pathlib import Path
from typing import Optional

import yaml

from .config_models import TunerConfig


def find_config() -> Optional[Path]:
    """Find config file in standard locations."""
    locations = [
        Path.cwd() / "config.yaml",
        Path.home() / ".tuner" / "config.yaml",
        Path.home() / "tuner" / "config.yaml",
    ]
    for loc in locations:
        if loc.exists():
            return loc
    return None


def load_config_model(config_path: Optional[Path] = None) -> TunerConfig:
    """Load configuration as Pydantic model with validation."""
    base_config = {}

    path = config_path or find_config()
    if path and path.exists():
        try:
            with open(path) as f:
                base_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in config file: {e}")

    try:
        return TunerConfig.from_dict(base_config)
    except Exception as e:
        raise ValueError(f"Config validation failed: {e}")


def get_db_path(config: TunerConfig) -> Path:
    """Database path with its parent directory created."""
    db_path = Path(config.paths.db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return db_path
