"""Runtime settings for subagent orchestration.

Settings are layered: built-in defaults, then a JSON config file, then
``SUBAGENT_MANAGER_*`` environment variables (``.env`` files are loaded by the
CLI before this module reads the environment).
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, model_validator

logger = logging.getLogger(__name__)

ENV_PREFIX = "SUBAGENT_MANAGER_"
CONFIG_PATH_ENV = f"{ENV_PREFIX}CONFIG"

MAX_PARALLEL = 8
MAX_CONCURRENCY = 4
POLL_INTERVAL_MS = 250
PROGRESS_THROTTLE_MS = 50
KILL_GRACE_SECONDS = 3.0
DEFAULT_MAX_OUTPUT_BYTES = 200 * 1024
DEFAULT_MAX_OUTPUT_LINES = 5000

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def _tmp(name: str) -> Path:
    return Path(tempfile.gettempdir()) / name


def default_config_path() -> Path:
    """Return the config file location, honouring ``SUBAGENT_MANAGER_CONFIG``."""
    override = os.getenv(CONFIG_PATH_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".config" / "subagent-manager" / "config.json"


class Settings(BaseModel):
    """Paths, limits, and timing constants shared by every orchestration layer."""

    agent_binary: str = "pi"
    async_dir: Path = Field(default_factory=lambda: _tmp("subagent-async-runs"))
    results_dir: Path = Field(default_factory=lambda: _tmp("subagent-async-results"))
    chain_runs_dir: Path = Field(default_factory=lambda: _tmp("subagent-chain-runs"))
    temp_artifacts_dir: Path = Field(default_factory=lambda: _tmp("subagent-artifacts"))
    user_agents_dir: Path = Field(default_factory=lambda: Path.home() / ".pi" / "agent" / "agents")
    user_skills_dir: Path = Field(default_factory=lambda: Path.home() / ".pi" / "agent" / "skills")
    async_by_default: bool = False
    max_parallel: int = MAX_PARALLEL
    max_concurrency: int = MAX_CONCURRENCY
    poll_interval_ms: int = POLL_INTERVAL_MS
    progress_throttle_ms: int = PROGRESS_THROTTLE_MS
    kill_grace_seconds: float = KILL_GRACE_SECONDS
    artifact_cleanup_days: int = 7
    chain_dir_max_age_hours: int = 24
    job_linger_seconds: float = 10.0
    default_max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES
    default_max_output_lines: int = DEFAULT_MAX_OUTPUT_LINES

    @model_validator(mode="after")
    def _clamp_limits(self) -> Settings:
        """Keep numeric limits inside ranges the orchestrator can honour."""
        self.max_parallel = max(1, int(self.max_parallel or MAX_PARALLEL))
        self.max_concurrency = max(1, int(self.max_concurrency or MAX_CONCURRENCY))
        self.poll_interval_ms = max(10, int(self.poll_interval_ms or POLL_INTERVAL_MS))
        self.progress_throttle_ms = max(0, int(self.progress_throttle_ms))
        self.kill_grace_seconds = max(0.0, float(self.kill_grace_seconds))
        self.artifact_cleanup_days = max(1, int(self.artifact_cleanup_days or 7))
        self.chain_dir_max_age_hours = max(1, int(self.chain_dir_max_age_hours or 24))
        self.job_linger_seconds = max(0.0, float(self.job_linger_seconds))
        self.default_max_output_bytes = max(0, int(self.default_max_output_bytes))
        self.default_max_output_lines = max(0, int(self.default_max_output_lines))
        return self

    def ensure_dirs(self) -> None:
        for directory in (self.async_dir, self.results_dir, self.chain_runs_dir):
            directory.mkdir(parents=True, exist_ok=True)


def _snake_case(key: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", key.strip()).lower()


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.is_file():
        return {}
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring unreadable config file %s: %s", path, exc)
        return {}
    if not isinstance(raw, dict):
        logger.warning("Ignoring config file %s: expected a JSON object", path)
        return {}
    return {_snake_case(str(key)): value for key, value in raw.items()}


def _read_env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for field_name in Settings.model_fields:
        raw = os.getenv(f"{ENV_PREFIX}{field_name.upper()}")
        if raw is not None and raw.strip():
            overrides[field_name] = raw.strip()
    return overrides


def load_settings(config_path: Path | None = None, **overrides: Any) -> Settings:
    """Build settings from defaults, config file, environment, and explicit overrides."""
    data: dict[str, Any] = {}
    file_values = _read_config_file(config_path or default_config_path())
    data.update({k: v for k, v in file_values.items() if k in Settings.model_fields})
    data.update(_read_env_overrides())
    data.update({k: v for k, v in overrides.items() if v is not None})
    try:
        return Settings.model_validate(data)
    except ValidationError as exc:
        logger.warning("Invalid subagent settings (%s); falling back to defaults", exc)
        return Settings.model_validate({k: v for k, v in overrides.items() if v is not None})
