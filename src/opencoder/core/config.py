"""Configuration loading.

Priority (lowest to highest):

1. Defaults
2. ``.opencode/opencoder/config.json`` in the project directory
3. ``OPENCODER_*`` environment variables
4. CLI arguments
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, fields
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, ValidationError

logger = logging.getLogger("opencoder.config")

ENV_PREFIX = "OPENCODER_"
WORKSPACE_SUBDIR = os.path.join(".opencode", "opencoder")


class ConfigError(ValueError):
    pass


class ConfigFile(BaseModel):
    """Schema of ``.opencode/opencoder/config.json``."""

    model_config = ConfigDict(extra="ignore")

    planModel: Optional[str] = None
    buildModel: Optional[str] = None
    verbose: Optional[bool] = None
    maxRetries: Optional[int] = None
    backoffBase: Optional[int] = None
    logRetention: Optional[int] = None
    taskPauseSeconds: Optional[int] = None
    autoCommit: Optional[bool] = None
    autoPush: Optional[bool] = None
    commitSignoff: Optional[bool] = None
    cycleTimeoutMinutes: Optional[int] = None


# config.json key -> Settings field
_FILE_KEYS = {
    "planModel": "plan_model",
    "buildModel": "build_model",
    "verbose": "verbose",
    "maxRetries": "max_retries",
    "backoffBase": "backoff_base",
    "logRetention": "log_retention",
    "taskPauseSeconds": "task_pause_seconds",
    "autoCommit": "auto_commit",
    "autoPush": "auto_push",
    "commitSignoff": "commit_signoff",
    "cycleTimeoutMinutes": "cycle_timeout_minutes",
}

_ENV_INT = {
    "MAX_RETRIES": "max_retries",
    "BACKOFF_BASE": "backoff_base",
    "LOG_RETENTION": "log_retention",
    "TASK_PAUSE_SECONDS": "task_pause_seconds",
    "CYCLE_TIMEOUT_MINUTES": "cycle_timeout_minutes",
    "AGENT_TIMEOUT": "agent_timeout",
}

_ENV_BOOL = {
    "VERBOSE": "verbose",
    "AUTO_COMMIT": "auto_commit",
    "AUTO_PUSH": "auto_push",
    "COMMIT_SIGNOFF": "commit_signoff",
}


@dataclass(frozen=True)
class Paths:
    """Workspace layout under ``<project>/.opencode/opencoder/``."""

    opencoder_dir: str
    state_file: str
    current_plan: str
    metrics_file: str
    alerts_file: str
    log_dir: str
    cycle_log_dir: str
    history_dir: str
    ideas_dir: str
    ideas_history_dir: str
    config_file: str

    @staticmethod
    def for_project(project_dir: str) -> "Paths":
        base = os.path.join(os.path.abspath(project_dir), WORKSPACE_SUBDIR)
        log_dir = os.path.join(base, "logs")
        ideas_dir = os.path.join(base, "ideas")
        return Paths(
            opencoder_dir=base,
            state_file=os.path.join(base, "state.json"),
            current_plan=os.path.join(base, "current_plan.md"),
            metrics_file=os.path.join(base, "metrics.json"),
            alerts_file=os.path.join(base, "alerts.jsonl"),
            log_dir=log_dir,
            cycle_log_dir=os.path.join(log_dir, "cycles"),
            history_dir=os.path.join(base, "history"),
            ideas_dir=ideas_dir,
            ideas_history_dir=os.path.join(ideas_dir, "history"),
            config_file=os.path.join(base, "config.json"),
        )

    def ensure_directories(self) -> None:
        for d in (
            self.opencoder_dir,
            self.log_dir,
            self.cycle_log_dir,
            self.history_dir,
            self.ideas_dir,
            self.ideas_history_dir,
        ):
            os.makedirs(d, exist_ok=True)


@dataclass
class Settings:
    plan_model: str = ""
    build_model: str = ""
    project_dir: str = "."
    verbose: bool = False
    user_hint: Optional[str] = None
    max_retries: int = 3
    backoff_base: int = 10
    log_retention: int = 30
    task_pause_seconds: int = 2
    auto_commit: bool = True
    auto_push: bool = True
    commit_signoff: bool = False
    cycle_timeout_minutes: int = 60
    agent_timeout: int = 3600  # seconds per agent invocation
    opencode_path: str = "opencode"
    log_level: str = "info"

    @property
    def paths(self) -> Paths:
        return Paths.for_project(self.project_dir)

    @staticmethod
    def load(
        project_dir: Optional[str] = None,
        hint: Optional[str] = None,
        validate: bool = True,
        **overrides: Any,
    ) -> "Settings":
        """Merge all configuration sources.  ``None`` overrides are ignored."""
        resolved = os.path.abspath(project_dir or os.getenv(f"{ENV_PREFIX}PROJECT_DIR") or os.getcwd())
        values: dict[str, Any] = {"project_dir": resolved}
        values.update(load_config_file(resolved))
        values.update(load_env_config())
        known = {f.name for f in fields(Settings)}
        for key, value in overrides.items():
            if key not in known:
                raise TypeError(f"unknown setting: {key}")
            if value is not None:
                values[key] = value
        values["user_hint"] = hint
        settings = Settings(**values)
        if validate:
            settings.validate()
        return settings

    def validate(self) -> None:
        if not self.plan_model:
            raise ConfigError(
                "Missing plan model. Provide via --model, --plan-model, "
                ".opencode/opencoder/config.json, or OPENCODER_PLAN_MODEL env var."
            )
        if not self.build_model:
            raise ConfigError(
                "Missing build model. Provide via --model, --build-model, "
                ".opencode/opencoder/config.json, or OPENCODER_BUILD_MODEL env var."
            )
        if not is_valid_model_format(self.plan_model):
            raise ConfigError(f"Invalid plan model format: {self.plan_model}. Expected format: provider/model")
        if not is_valid_model_format(self.build_model):
            raise ConfigError(f"Invalid build model format: {self.build_model}. Expected format: provider/model")
        if not os.path.isdir(self.project_dir):
            raise ConfigError(f"Project directory does not exist: {self.project_dir}")
        if self.max_retries < 0:
            raise ConfigError("maxRetries must be >= 0")
        if self.cycle_timeout_minutes < 0:
            raise ConfigError("cycleTimeoutMinutes must be >= 0 (0 disables the timeout)")


def is_valid_model_format(model: str) -> bool:
    """Check the ``provider/model`` form."""
    provider, sep, model_id = model.partition("/")
    return bool(sep and provider and model_id)


def load_config_file(project_dir: str) -> dict[str, Any]:
    """Read config.json; a missing or invalid file contributes nothing."""
    path = Paths.for_project(project_dir).config_file
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as handle:
            raw = json.load(handle)
        parsed = ConfigFile.model_validate(raw)
    except (OSError, ValueError, ValidationError) as exc:
        logger.warning("Failed to parse %s: %s", path, exc)
        return {}
    result: dict[str, Any] = {}
    for key, value in parsed.model_dump(exclude_none=True).items():
        result[_FILE_KEYS[key]] = value
    return result


def load_env_config() -> dict[str, Any]:
    result: dict[str, Any] = {}
    plan_model = os.getenv(f"{ENV_PREFIX}PLAN_MODEL")
    if plan_model:
        result["plan_model"] = plan_model
    build_model = os.getenv(f"{ENV_PREFIX}BUILD_MODEL")
    if build_model:
        result["build_model"] = build_model
    for suffix, key in _ENV_BOOL.items():
        raw = os.getenv(f"{ENV_PREFIX}{suffix}")
        if raw:
            result[key] = raw.strip().lower() in {"1", "true", "yes", "on"}
    for suffix, key in _ENV_INT.items():
        raw = os.getenv(f"{ENV_PREFIX}{suffix}")
        if raw:
            try:
                result[key] = int(raw)
            except ValueError:
                logger.warning("Ignoring %s%s=%r (not an integer)", ENV_PREFIX, suffix, raw)
    opencode_path = os.getenv(f"{ENV_PREFIX}OPENCODE_PATH")
    if opencode_path:
        result["opencode_path"] = opencode_path
    log_level = os.getenv(f"{ENV_PREFIX}LOG_LEVEL")
    if log_level:
        result["log_level"] = log_level
    return result
