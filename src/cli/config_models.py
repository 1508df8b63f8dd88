"""Pydantic configuration models for the tuner."""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator


def _default_home() -> Path:
    return Path(os.environ.get("TUNER_HOME", "~/tuner"))


class PathsConfig(BaseModel):
    """File paths configuration."""

    data_dir: Path = Field(default_factory=_default_home)
    db_path: Optional[Path] = None  # None = <data_dir>/tuning.db

    @model_validator(mode="after")
    def expand_paths(self):
        """Expand ~ and derive the database path."""
        self.data_dir = self.data_dir.expanduser()
        self.db_path = (self.db_path or self.data_dir / "tuning.db").expanduser()
        return self


class AnalysisConfig(BaseModel):
    """Analyzer gateway configuration."""

    timeout_seconds: float = 120.0
    stale_run_minutes: int = 30
    default_profile: str = "default"
    default_window_days: int = 7

    @field_validator("timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"timeout_seconds must be positive, got {v}")
        return v


class ApplyConfig(BaseModel):
    """Applier configuration."""

    fail_on_drift: bool = False


class ImportsConfig(BaseModel):
    """Import registry limits."""

    max_content_chars: int = 5_000_000


VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    json_mode: bool = False

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        v_upper = v.upper()
        if v_upper not in VALID_LOG_LEVELS:
            raise ValueError(f"Invalid log level: {v}. Must be one of {VALID_LOG_LEVELS}")
        return v_upper


class WebConfig(BaseModel):
    """Web server configuration."""

    host: str = "127.0.0.1"
    port: int = 8000
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])


class TunerConfig(BaseModel):
    """Main configuration model."""

    paths: PathsConfig = Field(default_factory=PathsConfig)
    analysis: AnalysisConfig = Field(default_factory=AnalysisConfig)
    apply: ApplyConfig = Field(default_factory=ApplyConfig)
    imports: ImportsConfig = Field(default_factory=ImportsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    web: WebConfig = Field(default_factory=WebConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "TunerConfig":
        """Create config from dict (e.g. parsed YAML)."""
        if "paths" in data:
            for key in ["data_dir", "db_path"]:
                if isinstance(data["paths"].get(key), str):
                    data["paths"][key] = Path(data["paths"][key])
        return cls.model_validate(data)

    def to_dict(self) -> dict:
        return self.model_dump(mode="python")
