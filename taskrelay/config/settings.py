"""
Configuration system using Pydantic for type-safe settings management.

Settings cover the issue tracker connection, the worker's comment protocol
(bot identity and marker strings), polling cadence, the plan generation
endpoint, local storage, and the operator identity used by the CLI.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, HttpUrl, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from taskrelay.exceptions import ConfigurationError


class TrackerConfig(BaseModel):
    """Issue tracker connection.

    Supports ``${ENV}`` references in YAML, e.g. ``api_token: "${GITHUB_TOKEN}"``.
    """

    provider_type: Literal["github"] = Field(default="github", description="Type of issue tracker")
    base_url: HttpUrl = Field(default=HttpUrl("https://api.github.com"), description="API base URL")
    api_token: SecretStr = Field(..., description="API token used for issues and comments")
    read_attempts: int = Field(default=3, ge=1, le=10, description="Attempts for idempotent reads")


class WorkerConfig(BaseModel):
    """Comment protocol shared with the worker.

    These strings are a versioned contract: the classifier reads them and the
    comment composer writes them. Change both sides together.
    """

    bot_login: str = Field(default="pts-worker[bot]", description="Author login of worker comments")
    bot_handle: str = Field(default="@pts-worker", description="Mention that addresses the worker")
    plan_directive: str = Field(default="/plan", description="Token requesting a plan-only pass")
    cancel_directive: str = Field(default="/cancel", description="Token asking the worker to stop")
    model_directive: str = Field(
        default="/model/", description="Prefix of the model token on plan and implement commands"
    )
    plan_heading: str = Field(default="## Implementation Plan")
    questions_heading: str = Field(default="## Clarifying Questions")
    error_markers: list[str] = Field(
        default_factory=lambda: ["**Agent failed**", "**Budget limit**", "❌ Agent failed", "❌ Budget"]
    )
    working_markers: list[str] = Field(default_factory=lambda: ["Agent working", "Planning...", "🔄", "Working on"])
    done_markers: list[str] = Field(default_factory=lambda: ["**No changes made**", "**Changes committed**"])


class PollingConfig(BaseModel):
    """Status polling cadence."""

    interval_seconds: float = Field(default=10.0, gt=0, description="Delay between status refreshes")
    failure_warning_threshold: int = Field(
        default=3, ge=1, description="Consecutive failed refreshes before a warning is surfaced"
    )


class PlanningConfig(BaseModel):
    """Plan generation endpoint and default thread."""

    stream_base_url: str = Field(default="http://localhost:3000", description="Generation service base URL")
    stream_path: str = Field(default="/api/planning/generate", description="Streaming endpoint path")
    api_token: SecretStr | None = Field(default=None, description="Bearer token for the generation service")
    timeout_seconds: float = Field(default=300.0, gt=0)
    default_model: str = Field(default="claude-sonnet-4.6")
    default_model_label: str = Field(default="Sonnet 4.6")


class StorageConfig(BaseModel):
    """Local persistence."""

    state_directory: str = Field(default=".taskrelay/state", description="Directory for JSON state files")


class PortalConfig(BaseModel):
    """Link back to the originating system, embedded in issue bodies."""

    base_url: str | None = Field(default=None, description="Portal base URL, e.g. https://portal.example.com")

    @property
    def projects_url(self) -> str:
        if not self.base_url:
            return ""
        return f"{self.base_url.rstrip('/')}/projects"


class OperatorConfig(BaseModel):
    """Identity the CLI acts as."""

    id: str = Field(default="operator")
    role: str = Field(default="admin")
    project_ids: list[str] = Field(default_factory=list)


class RelaySettings(BaseSettings):
    """Main task-relay settings.

    Combines all configuration sections and loads from YAML files with
    environment variable interpolation.
    """

    model_config = SettingsConfigDict(
        env_prefix="TASKRELAY_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    tracker: TrackerConfig
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    planning: PlanningConfig = Field(default_factory=PlanningConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    portal: PortalConfig = Field(default_factory=PortalConfig)
    operator: OperatorConfig = Field(default_factory=OperatorConfig)

    @property
    def state_dir(self) -> Path:
        """Get state directory as Path object."""
        return Path(self.storage.state_directory)

    @classmethod
    def from_yaml(cls, config_path: str) -> RelaySettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ${VAR_NAME} and ${VAR_NAME:-default} substitution.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            RelaySettings instance

        Raises:
            ConfigurationError: If config file is invalid or missing required fields
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            yaml_content = config_file.read_text()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e

        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        - ${VAR_NAME} - Required environment variable (raises if not set)
        - ${VAR_NAME:-default} - Optional with default value

        YAML comment lines are left unchanged.

        Raises:
            ValueError: If a required environment variable is not set
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            if default_value is not None:
                return default_value
            raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
