"""
TaskPilot Configuration

Pydantic-backed configuration loaded from environment variables.
Uses TASKPILOT_ prefix for all environment variables.
"""

import os
import threading
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from taskpilot.errors import ConfigError


class Config(BaseModel):
    """
    Pydantic-backed configuration loaded from environment variables.

    Key env vars:
    - TASKPILOT_DB_PATH (default: .taskpilot.sqlite)
    - TASKPILOT_ENV (default: local)
    - TASKPILOT_API_TOKEN (optional bearer token)
    - TASKPILOT_LOG_LEVEL (default: INFO), TASKPILOT_LOG_JSON
    - TASKPILOT_RUNNER_POLL_SECONDS / REVIEW_SWEEP_SECONDS / TIMEOUT_CHECK_SECONDS
    - TASKPILOT_IN_PROGRESS_TIMEOUT_MINUTES / IN_REVIEW_TIMEOUT_MINUTES
    - TASKPILOT_BREAKDOWN_COMPLEXITY_THRESHOLD
    - TASKPILOT_REVIEW_TEST_TIMEOUT_SECONDS / REVIEW_MERGE_TIMEOUT_SECONDS
    """

    # Database
    db_path: Path = Field(default=Path(".taskpilot.sqlite"))

    # Environment
    environment: str = Field(default="local")
    api_token: Optional[str] = Field(default=None)
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=False)

    # Background runner
    runner_enabled: bool = Field(default=True)
    runner_poll_seconds: float = Field(default=1.0, gt=0)
    runner_max_workers: int = Field(default=4, ge=1)
    review_sweep_seconds: float = Field(default=10.0, gt=0)
    timeout_check_seconds: float = Field(default=10.0, gt=0)

    # Stage timeouts
    in_progress_timeout_minutes: int = Field(default=20, ge=1)
    in_review_timeout_minutes: int = Field(default=20, ge=1)

    # Task hierarchy
    breakdown_complexity_threshold: int = Field(default=6, ge=0, le=10)

    # Requirements analysis
    analysis_max_workers: int = Field(default=2, ge=1)

    # Review automation
    review_test_timeout_seconds: float = Field(default=600.0, gt=0)
    review_merge_timeout_seconds: float = Field(default=120.0, gt=0)
    review_test_command: Optional[List[str]] = Field(default=None)

    # API / web
    cors_allow_origins: List[str] = Field(default_factory=list)

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @property
    def in_progress_timeout_seconds(self) -> int:
        return self.in_progress_timeout_minutes * 60

    @property
    def in_review_timeout_seconds(self) -> int:
        return self.in_review_timeout_minutes * 60


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    """Parse boolean from environment variable."""
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "on")


def _parse_csv(value: Optional[str]) -> List[str]:
    if not value:
        return []
    if value.strip() == "*":
        return ["*"]
    return [v.strip() for v in value.split(",") if v.strip()]


def _env_number(name: str, default: str, cast=int):
    raw = os.environ.get(name, default)
    try:
        return cast(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc


def load_config() -> Config:
    """
    Load TaskPilot configuration from environment.

    Environment variables use the TASKPILOT_ prefix.
    """
    env = os.environ.get("TASKPILOT_ENV", "local")
    cors = _parse_csv(os.environ.get("TASKPILOT_CORS_ORIGINS"))
    if not cors and env == "local":
        cors = ["*"]
    test_command = os.environ.get("TASKPILOT_REVIEW_TEST_COMMAND")
    return Config(
        # Database
        db_path=Path(os.environ.get("TASKPILOT_DB_PATH", ".taskpilot.sqlite")).expanduser(),

        # Environment
        environment=env,
        api_token=os.environ.get("TASKPILOT_API_TOKEN"),
        log_level=os.environ.get("TASKPILOT_LOG_LEVEL", "INFO"),
        log_json=_parse_bool(os.environ.get("TASKPILOT_LOG_JSON")),

        # Runner
        runner_enabled=_parse_bool(os.environ.get("TASKPILOT_RUNNER_ENABLED"), default=True),
        runner_poll_seconds=_env_number("TASKPILOT_RUNNER_POLL_SECONDS", "1.0", float),
        runner_max_workers=_env_number("TASKPILOT_RUNNER_MAX_WORKERS", "4"),
        review_sweep_seconds=_env_number("TASKPILOT_REVIEW_SWEEP_SECONDS", "10", float),
        timeout_check_seconds=_env_number("TASKPILOT_TIMEOUT_CHECK_SECONDS", "10", float),

        # Stage timeouts
        in_progress_timeout_minutes=_env_number("TASKPILOT_IN_PROGRESS_TIMEOUT_MINUTES", "20"),
        in_review_timeout_minutes=_env_number("TASKPILOT_IN_REVIEW_TIMEOUT_MINUTES", "20"),

        # Hierarchy
        breakdown_complexity_threshold=_env_number("TASKPILOT_BREAKDOWN_COMPLEXITY_THRESHOLD", "6"),

        # Requirements
        analysis_max_workers=_env_number("TASKPILOT_ANALYSIS_MAX_WORKERS", "2"),

        # Review automation
        review_test_timeout_seconds=_env_number("TASKPILOT_REVIEW_TEST_TIMEOUT_SECONDS", "600", float),
        review_merge_timeout_seconds=_env_number("TASKPILOT_REVIEW_MERGE_TIMEOUT_SECONDS", "120", float),
        review_test_command=test_command.split() if test_command else None,

        # API / web
        cors_allow_origins=cors,
    )


# Singleton config instance (lazy loaded)
_config: Optional[Config] = None
_config_lock = threading.Lock()


def get_config() -> Config:
    """Get or create the singleton config instance."""
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:
                _config = load_config()
    return _config


def _reset_config_for_tests() -> None:
    """Reset the global config cache (tests only)."""
    global _config
    with _config_lock:
        _config = None
