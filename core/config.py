from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from core.contracts import RetentionPolicy, RotationPolicy

_MB = 1024 * 1024


class LoggingCfg(BaseModel):
    model_config = ConfigDict(extra="forbid")

    level: str = "INFO"
    dir: Path | None = None
    console: bool = True


class BackoffCfg(BaseModel):
    model_config = ConfigDict(extra="forbid")

    base_delay_s: float = Field(default=0.5, ge=0)
    max_delay_s: float = Field(default=10.0, ge=0)
    max_open_attempts: int = Field(default=5, ge=1)


class Config(BaseModel):
    model_config = ConfigDict(extra="forbid")

    log_dir: Path = Path("logs")
    max_file_size_mb: int = Field(default=100, gt=0)
    topics: list[str] = Field(default_factory=lambda: ["subscribe001"])
    timeout_secs: int = Field(default=1, ge=0)
    log_retention_hours: int = 0
    host: str = "127.0.0.1"
    port: int = Field(default=6379, ge=1, le=65535)
    logging: LoggingCfg = Field(default_factory=LoggingCfg)
    backoff: BackoffCfg = Field(default_factory=BackoffCfg)

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * _MB

    def rotation_policy(self) -> RotationPolicy:
        return RotationPolicy(
            max_file_size_bytes=self.max_file_size_bytes,
            idle_rotation_timeout=timedelta(seconds=self.timeout_secs),
        )

    def retention_policy(self) -> RetentionPolicy:
        hours = max(self.log_retention_hours, 0)
        return RetentionPolicy(retention_window=timedelta(hours=hours))


def _read_yaml(path: Path) -> dict[str, Any]:
    """Safe YAML read; returns {} if file missing/empty."""
    import yaml  # lazy import

    if not path.exists():
        return {}
    text = path.read_text(encoding="utf-8")
    data = yaml.safe_load(text)
    return data or {}


def load_config(base_dir: str | Path) -> Config:
    """Load the recorder config from ``<base_dir>/config/recorder.yaml``."""

    config_path = Path(base_dir) / "config" / "recorder.yaml"
    data = _read_yaml(config_path)
    if not data:
        msg = f"Missing or empty config file: {config_path}"
        raise FileNotFoundError(msg)
    return Config.model_validate(data)
