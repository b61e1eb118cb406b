"""
Centralized configuration for runnerinstall.

Uses Pydantic BaseSettings for environment variable integration
and validation. All configurable values should be defined here.

Configuration sources (in order of precedence):
1. Explicit arguments (CLI options)
2. Environment variables (RUNNERINSTALL_*)
3. YAML file passed with ``--config``
4. .env file
5. Default values

Example:
    from runnerinstall.config import load_config

    config = load_config("/etc/runnerinstall.yaml", max_retries=5)
    policy = config.retry_policy()
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Optional

import yaml
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from runnerinstall.contracts import timeouts
from runnerinstall.models import RetryPolicy

DEFAULT_PACKAGES = ["curl", "jq", "tar", "git", "ca-certificates"]


class InstallerConfig(BaseSettings):
    """
    Central configuration for an installation run.

    All settings can be overridden via environment variables
    prefixed with RUNNERINSTALL_.

    Example:
        export RUNNERINSTALL_MAX_RETRIES=5
        export RUNNERINSTALL_NETWORK_ENDPOINTS='["api.github.com:443"]'
    """

    model_config = SettingsConfigDict(
        env_prefix="RUNNERINSTALL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Readiness
    readiness_timeout: float = Field(
        default=timeouts.READINESS_TIMEOUT_S,
        gt=0,
        description="Seconds to wait for the system to become ready",
    )
    readiness_poll_interval: float = Field(
        default=timeouts.READINESS_POLL_INTERVAL_S,
        gt=0,
        description="Seconds between readiness polls",
    )
    min_disk_mb: int = Field(
        default=timeouts.MIN_DISK_FREE_MB,
        ge=0,
        description="Free disk floor (MB) on disk_path",
    )
    min_memory_mb: int = Field(
        default=timeouts.MIN_MEMORY_FREE_MB,
        ge=0,
        description="Available memory floor (MB)",
    )
    disk_path: str = Field(
        default="/",
        description="Filesystem checked for free disk",
    )
    network_endpoints: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: list(timeouts.DEFAULT_NETWORK_ENDPOINTS),
        description="host:port endpoints; reachable if any accepts a connection",
    )
    network_timeout: float = Field(
        default=timeouts.NETWORK_CHECK_TIMEOUT_S,
        gt=0,
        description="TCP connect timeout per endpoint",
    )

    # Package manager contention
    contention_timeout: float = Field(
        default=timeouts.CONTENTION_TIMEOUT_S,
        gt=0,
        description="Seconds to wait for package managers to become available",
    )
    poll_interval: float = Field(
        default=timeouts.CONTENTION_POLL_INTERVAL_S,
        ge=5,
        le=60,
        description="Seconds between contention polls",
    )
    retry_contention_timeout: float = Field(
        default=timeouts.RETRY_CONTENTION_TIMEOUT_S,
        ge=0,
        description="Contention wait before each install retry (0 disables)",
    )

    # Retry
    max_retries: int = Field(
        default=timeouts.DEFAULT_MAX_RETRIES,
        ge=1,
        le=10,
        description="Maximum attempts per step",
    )
    base_delay_seconds: float = Field(
        default=timeouts.DEFAULT_BASE_DELAY_S,
        ge=0,
        description="Backoff delay before the first retry",
    )
    max_delay_seconds: float = Field(
        default=timeouts.DEFAULT_MAX_DELAY_S,
        ge=0,
        description="Backoff ceiling",
    )

    # Diagnostics
    diagnostics_log_lines: int = Field(
        default=timeouts.DIAGNOSTICS_LOG_LINES,
        ge=0,
        description="Lines of each log file captured in diagnostics",
    )

    # Logging and metrics
    log_dir: str = Field(
        default="/var/log/runnerinstall",
        description="Directory for the event log and metrics artifact",
    )
    event_log_file: Optional[str] = Field(
        default=None,
        description="Event log path (defaults to <log_dir>/events.jsonl)",
    )
    metrics_file: Optional[str] = Field(
        default=None,
        description="Metrics artifact path (defaults to <log_dir>/metrics.json)",
    )
    event_log_max_bytes: int = Field(
        default=timeouts.EVENT_LOG_MAX_BYTES,
        ge=0,
        description="Rotate the event log once it would exceed this size (0 disables)",
    )
    event_log_backups: int = Field(
        default=timeouts.EVENT_LOG_BACKUPS,
        ge=0,
        description="Rotated event logs kept as events.jsonl.1 .. .N",
    )
    log_level: Literal["debug", "info", "warning", "error"] = Field(
        default="info",
        description="Logging level",
    )
    log_format: Literal["json", "text"] = Field(
        default="text",
        description="Console log format",
    )
    otlp_endpoint: Optional[str] = Field(
        default=None,
        description="OTLP gRPC endpoint for metric export (disabled if unset)",
    )

    # Runner
    repository: Optional[str] = Field(
        default=None,
        description="Target repository as owner/repo",
    )
    runner_dir: str = Field(
        default="/opt/actions-runner",
        description="Runner installation directory",
    )
    runner_name: Optional[str] = Field(
        default=None,
        description="Runner name (defaults to the hostname)",
    )
    runner_labels: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: ["self-hosted", "linux"],
        description="Labels applied at registration",
    )
    runner_user: Optional[str] = Field(
        default=None,
        description="User the runner service runs as",
    )
    runner_version: str = Field(
        default="latest",
        description="Runner release version, or 'latest'",
    )
    packages: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_PACKAGES),
        description="OS packages installed before the runner",
    )
    use_sudo: bool = Field(
        default=True,
        description="Prefix privileged commands with sudo when not root",
    )

    # GitHub
    github_api_url: str = Field(
        default="https://api.github.com",
        description="GitHub REST API base URL",
    )
    github_url: str = Field(
        default="https://github.com",
        description="GitHub web URL used for runner registration",
    )

    @field_validator("log_dir", "runner_dir", "event_log_file", "metrics_file")
    @classmethod
    def expand_path(cls, v: Optional[str]) -> Optional[str]:
        """Expand ~ and environment variables in paths."""
        if v is None:
            return v
        return os.path.expanduser(os.path.expandvars(v))

    @field_validator("runner_labels", "packages", "network_endpoints", mode="before")
    @classmethod
    def split_csv(cls, v: Any) -> Any:
        """Accept comma-separated strings (or a JSON array) as lists."""
        if isinstance(v, str) and v.lstrip().startswith("["):
            return json.loads(v)
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @field_validator("repository")
    @classmethod
    def validate_repository(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip().strip("/")
        if v.startswith(("https://github.com/", "http://github.com/")):
            v = v.split("github.com/", 1)[1]
        parts = v.split("/")
        if len(parts) != 2 or not all(parts):
            raise ValueError(f"repository must be owner/repo, got {v!r}")
        return v

    @field_validator("github_api_url", "github_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @model_validator(mode="after")
    def check_delays(self) -> "InstallerConfig":
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        return self

    def retry_policy(self) -> RetryPolicy:
        """Backoff policy built from the retry settings."""
        return RetryPolicy(
            base_delay=self.base_delay_seconds,
            max_delay=self.max_delay_seconds,
            max_attempts=self.max_retries,
        )

    def get_event_log_path(self) -> Path:
        return Path(self.event_log_file or os.path.join(self.log_dir, "events.jsonl"))

    def get_metrics_path(self) -> Path:
        return Path(self.metrics_file or os.path.join(self.log_dir, "metrics.json"))


def read_yaml_config(path: str | Path) -> Dict[str, Any]:
    """Read a YAML config file; dashes in keys are accepted for underscores."""
    with open(Path(path).expanduser(), encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")
    return {str(k).replace("-", "_"): v for k, v in data.items()}


def load_config(path: Optional[str | Path] = None, **overrides) -> InstallerConfig:
    """
    Build a configuration from an optional YAML file plus overrides.

    Overrides whose value is None are ignored, so unset CLI options fall
    through to env, YAML and defaults. A YAML key is dropped when the
    matching RUNNERINSTALL_* variable is set, so the environment wins.
    """
    values: Dict[str, Any] = {}
    if path:
        prefix = InstallerConfig.model_config.get("env_prefix", "")
        for key, value in read_yaml_config(path).items():
            if key not in InstallerConfig.model_fields:
                continue
            if f"{prefix}{key}".upper() in os.environ:
                continue
            values[key] = value
    values.update({k: v for k, v in overrides.items() if v is not None})
    return InstallerConfig(**values)


# Global singleton
_config: Optional[InstallerConfig] = None


def get_config(**overrides) -> InstallerConfig:
    """
    Get the global configuration instance.

    Creates a singleton on first call. Subsequent calls return
    the same instance unless overrides are provided.
    """
    global _config

    if overrides or _config is None:
        _config = InstallerConfig(**overrides)

    return _config


def reset_config() -> None:
    """Reset the global configuration (for testing)."""
    global _config
    _config = None
