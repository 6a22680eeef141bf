"""
Configuration management.

Settings come from (highest priority first) explicit values or a YAML file,
AUTOTASK_* environment variables (nested fields via ``__``, e.g.
AUTOTASK_TIMEOUTS__TASK_EXECUTION_MS), the .env file, then defaults.
"""

from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

from autotask.core.domain.policy import (
    DEFAULT_ALLOWED_COMMANDS,
    DEFAULT_BLOCKED_PATHS,
    DEFAULT_MAX_FILE_SIZE,
)

MIN_TIMEOUT_MS = 1000
MIN_FILE_SIZE = 1024


class TimeoutSettings(BaseModel):
    task_execution_ms: int = Field(default=300_000, description="Per tool command and model call timeout")
    user_verification_ms: int = Field(default=60_000, description="Verification wait before auto-approval")
    session_total_ms: int = Field(default=1_800_000, description="Upper bound for one session")


class AutoApprovalSettings(BaseModel):
    enabled: bool = Field(default=True, description="Auto-approve results that look successful")


class SecuritySettings(BaseModel):
    allowed_commands: List[str] = Field(default_factory=lambda: sorted(DEFAULT_ALLOWED_COMMANDS))
    restrict_to_workspace: bool = True
    max_file_size: int = Field(default=DEFAULT_MAX_FILE_SIZE, description="Bytes")
    blocked_paths: List[str] = Field(default_factory=lambda: list(DEFAULT_BLOCKED_PATHS))


class SessionSettings(BaseModel):
    max_sessions: int = 100
    session_timeout_ms: int = 30 * 60 * 1000
    cleanup_interval_ms: int = 5 * 60 * 1000


class VerificationSettings(BaseModel):
    max_pending: int = 10


class TodoSettings(BaseModel):
    max_description_length: int = 1000
    max_todos: int = 200
    max_todo_retries: int = 3


class ModelSettings(BaseModel):
    default_model: str = Field(default="main", description="Alias or provider model name")
    aliases: Dict[str, str] = Field(default_factory=lambda: {"main": "gpt-4.1", "fast": "gpt-4.1-mini"})
    temperature: Optional[float] = 0.2
    request_timeout_s: float = 120.0


class Settings(BaseSettings):
    """Orchestrator settings with environment variable support."""

    enabled: bool = Field(default=True, description="Enable task mode")
    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)
    auto_approval: AutoApprovalSettings = Field(default_factory=AutoApprovalSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    sessions: SessionSettings = Field(default_factory=SessionSettings)
    verification: VerificationSettings = Field(default_factory=VerificationSettings)
    todos: TodoSettings = Field(default_factory=TodoSettings)
    model: ModelSettings = Field(default_factory=ModelSettings)

    log_level: str = Field(default="INFO", description="Logging level")

    model_config = {
        "env_file": ".env",
        "env_prefix": "AUTOTASK_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
        "extra": "ignore",
    }

    @classmethod
    def load_from_file(cls, config_path: Path) -> "Settings":
        """Load settings from a YAML configuration file."""
        if not config_path.exists():
            return cls()

        with open(config_path, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f) or {}

        return cls(**config_data)

    def save_to_file(self, config_path: Path) -> None:
        """Save settings to a YAML configuration file."""
        config_path.parent.mkdir(parents=True, exist_ok=True)

        config_data = self.model_dump()
        with open(config_path, "w", encoding="utf-8") as f:
            yaml.dump(config_data, f, default_flow_style=False, indent=2, sort_keys=False)

    def validate_settings(self) -> List[str]:
        """
        Check settings for values the orchestrator cannot work with.

        Returns:
            Human-readable problems; empty when the settings are usable
        """
        problems: List[str] = []
        timeouts = self.timeouts
        for name in ("task_execution_ms", "user_verification_ms", "session_total_ms"):
            value = getattr(timeouts, name)
            if value < MIN_TIMEOUT_MS:
                problems.append(f"timeouts.{name} must be at least {MIN_TIMEOUT_MS}ms (got {value})")
        if timeouts.session_total_ms < timeouts.task_execution_ms:
            problems.append("timeouts.session_total_ms must not be shorter than timeouts.task_execution_ms")
        if self.security.max_file_size < MIN_FILE_SIZE:
            problems.append(f"security.max_file_size must be at least {MIN_FILE_SIZE} bytes")
        if self.sessions.max_sessions < 1:
            problems.append("sessions.max_sessions must be at least 1")
        if self.verification.max_pending < 1:
            problems.append("verification.max_pending must be at least 1")
        if self.todos.max_todo_retries < 0:
            problems.append("todos.max_todo_retries must not be negative")
        return problems
