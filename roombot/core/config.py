"""YAML configuration for roombot, validated with pydantic."""

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from roombot.core.retry import RetryPolicy
from roombot.sandbox.executor import CommandTimeouts

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "roombot.yaml"


class ConfigError(Exception):
    """Configuration file is missing required data or malformed."""

    pass


class SystemConfig(BaseModel):
    projects_dir: str = "./projects"
    state_file: str = "data/state.json"
    admins: list[str] = Field(default_factory=list)
    max_steps: int = Field(default=20, ge=1)
    max_history_chars: int = Field(default=60_000, ge=1000)

    def is_admin(self, sender: str) -> bool:
        """Case-insensitive allow-list membership."""
        wanted = sender.strip().lower()
        return any(admin.strip().lower() == wanted for admin in self.admins)


class AgentConfig(BaseModel):
    """One named model backend."""

    provider: str = "claude"  # CLI binary / adapter name
    model: str | None = None
    api_key_env: str | None = None
    requests_per_minute: float | None = None
    timeout: float = Field(default=600.0, gt=0)


class TimeoutsConfig(BaseModel):
    default: float = Field(default=30.0, gt=0)
    long: float = Field(default=600.0, gt=0)
    long_commands: list[str] = Field(default_factory=lambda: CommandTimeouts().long_commands)


class CommandsConfig(BaseModel):
    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)
    max_output_bytes: int = Field(default=64 * 1024, ge=1024)


class RetryConfig(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    initial_delay: float = Field(default=2.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=60.0, ge=0)


class AppConfig(BaseModel):
    system: SystemConfig = Field(default_factory=SystemConfig)
    agents: dict[str, AgentConfig] = Field(
        default_factory=lambda: {"claude": AgentConfig(provider="claude")}
    )
    default_agent: str | None = None
    commands: CommandsConfig = Field(default_factory=CommandsConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    messages: dict[str, str] = Field(default_factory=dict)

    @field_validator("agents")
    @classmethod
    def _agents_not_empty(cls, value: dict[str, AgentConfig]) -> dict[str, AgentConfig]:
        if not value:
            raise ValueError("at least one agent must be configured")
        return value

    @model_validator(mode="after")
    def _resolve_default_agent(self) -> "AppConfig":
        if self.default_agent is None:
            self.default_agent = next(iter(self.agents))
        elif self.default_agent not in self.agents:
            raise ValueError(
                f"default_agent '{self.default_agent}' is not one of {sorted(self.agents)}"
            )
        return self

    @property
    def projects_path(self) -> Path:
        return Path(self.system.projects_dir).expanduser().resolve()

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry.max_attempts,
            initial_delay=self.retry.initial_delay,
            backoff_multiplier=self.retry.backoff_multiplier,
            max_delay=self.retry.max_delay,
        )

    def command_timeouts(self) -> CommandTimeouts:
        timeouts = self.commands.timeouts
        return CommandTimeouts(
            default=timeouts.default,
            long=timeouts.long,
            long_commands=list(timeouts.long_commands),
        )


def load_config(path: str | Path | None = None) -> AppConfig:
    """Load config from YAML; a missing file yields defaults.

    Raises:
        ConfigError: Invalid YAML or schema violations.
    """
    config_path = Path(path) if path else Path.cwd() / DEFAULT_CONFIG_NAME
    if not config_path.exists():
        if path:
            raise ConfigError(f"Config file not found: {config_path}")
        logger.info(f"No {DEFAULT_CONFIG_NAME} found; using defaults")
        return AppConfig()

    try:
        data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping at the top level")

    try:
        return AppConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {config_path}: {e}") from e
