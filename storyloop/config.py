"""
Configuration loading and validation for Storyloop.

This module handles:
- Loading storyloop.yaml from the repo root
- Environment variable resolution (${VAR} syntax)
- Default values for every optional section
- Caching of the loaded configuration
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""
    pass


DEFAULT_CONFIG_FILE = "storyloop.yaml"


@dataclass
class ClaudeConfig:
    """Claude Code CLI configuration used by the generation capability."""
    binary: str = "claude"                     # Path to claude binary
    max_turns: int = 6                         # Maximum conversation turns
    timeout_seconds: int = 600                 # Per-call timeout in seconds


@dataclass
class RetryConfig:
    """Backoff policy for calls to the generation capability."""
    max_attempts: int = 3                      # Total attempts, first call included
    base_delay_seconds: float = 1.0            # Delay before the second attempt
    multiplier: float = 2.0                    # Growth factor per further attempt


@dataclass
class RoleConfig:
    """Per-role wall-clock ceilings."""
    default_timeout_seconds: int = 1800
    timeouts: dict[str, int] = field(default_factory=lambda: {
        "scrum-master": 3600,
    })

    def timeout_for(self, role_id: str) -> int:
        """Timeout in seconds for a role id."""
        return self.timeouts.get(role_id, self.default_timeout_seconds)


@dataclass
class DevelopmentConfig:
    """Development loop limits."""
    max_iterations: int = 100                  # Scrum invocations per loop run
    history_window: int = 30                   # Records the phase engine reads
    max_epic_retries: int = 5                  # Failed epic tests before giving up
    max_integration_retries: int = 5           # Failed integration tests before giving up
    stale_active_minutes: int = 120            # Liveness claim expiry


@dataclass
class DeploymentConfig:
    """
    Packaging, deployment and verification commands.

    Each step is skipped when target_repository is empty or its own
    command is unset.
    """
    target_repository: str = ""
    package_command: str = ""
    publish_command: str = ""
    deploy_command: str = ""
    verify_command: str = ""
    timeout_seconds: int = 900


@dataclass
class ScoringConfig:
    """Pass thresholds for review and test roles (0-100)."""
    reviewer: int = 70
    story: int = 75
    epic: int = 80
    integration: int = 85

    def threshold_for(self, scope: str) -> int:
        return {
            "story": self.story,
            "epic": self.epic,
            "integration": self.integration,
        }.get(scope, self.story)


@dataclass
class StoryloopConfig:
    """
    Main configuration for Storyloop.

    This is the top-level config loaded from storyloop.yaml.
    """
    # Paths
    repo_root: str = "."
    state_dir: str = ".storyloop"

    # Nested configurations
    claude: ClaudeConfig = field(default_factory=ClaudeConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    roles: RoleConfig = field(default_factory=RoleConfig)
    development: DevelopmentConfig = field(default_factory=DevelopmentConfig)
    deployment: DeploymentConfig = field(default_factory=DeploymentConfig)
    scoring: ScoringConfig = field(default_factory=ScoringConfig)

    def __post_init__(self) -> None:
        """Convert paths to absolute paths based on repo_root."""
        self.repo_root = str(Path(self.repo_root).absolute())

    @property
    def state_path(self) -> Path:
        """Absolute path to the .storyloop directory."""
        return Path(self.repo_root) / self.state_dir

    @property
    def history_path(self) -> Path:
        """Absolute path to execution record storage."""
        return self.state_path / "history"

    @property
    def control_path(self) -> Path:
        """Absolute path to pipeline control rows."""
        return self.state_path / "control"

    @property
    def logs_path(self) -> Path:
        """Absolute path to logs directory."""
        return self.state_path / "logs"

    @property
    def workspace_path(self) -> Path:
        """Absolute path where generated project sources are written."""
        return self.state_path / "workspace"


# Module-level cache for the loaded configuration
_config_cache: Optional[StoryloopConfig] = None


def _resolve_env_vars(value: Any) -> Any:
    """
    Resolve environment variables in a value.

    Supports ${VAR} syntax for environment variable substitution.
    Returns the original value if it's not a string.
    """
    if isinstance(value, str):
        pattern = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}')

        def replace(match: re.Match) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ConfigError(f"Environment variable ${{{var_name}}} is not set")
            return env_value

        return pattern.sub(replace, value)

    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]

    return value


def _parse_claude_config(data: dict[str, Any]) -> ClaudeConfig:
    """Parse Claude configuration from dict."""
    return ClaudeConfig(
        binary=data.get("binary", "claude"),
        max_turns=data.get("max_turns", 6),
        timeout_seconds=data.get("timeout_seconds", 600),
    )


def _parse_retry_config(data: dict[str, Any]) -> RetryConfig:
    """Parse retry configuration from dict."""
    max_attempts = data.get("max_attempts", 3)
    if max_attempts < 1:
        raise ConfigError("retry.max_attempts must be at least 1")
    return RetryConfig(
        max_attempts=max_attempts,
        base_delay_seconds=data.get("base_delay_seconds", 1.0),
        multiplier=data.get("multiplier", 2.0),
    )


def _parse_role_config(data: dict[str, Any]) -> RoleConfig:
    """Parse per-role timeouts, keeping defaults for unnamed roles."""
    defaults = RoleConfig()
    return RoleConfig(
        default_timeout_seconds=data.get("default_timeout_seconds", defaults.default_timeout_seconds),
        timeouts={**defaults.timeouts, **data.get("timeouts", {})},
    )


def _parse_development_config(data: dict[str, Any]) -> DevelopmentConfig:
    """Parse development loop configuration from dict."""
    return DevelopmentConfig(
        max_iterations=data.get("max_iterations", 100),
        history_window=data.get("history_window", 30),
        max_epic_retries=data.get("max_epic_retries", 5),
        max_integration_retries=data.get("max_integration_retries", 5),
        stale_active_minutes=data.get("stale_active_minutes", 120),
    )


def _parse_deployment_config(data: dict[str, Any]) -> DeploymentConfig:
    """Parse deployment configuration from dict."""
    return DeploymentConfig(
        target_repository=data.get("target_repository", ""),
        package_command=data.get("package_command", ""),
        publish_command=data.get("publish_command", ""),
        deploy_command=data.get("deploy_command", ""),
        verify_command=data.get("verify_command", ""),
        timeout_seconds=data.get("timeout_seconds", 900),
    )


def _parse_scoring_config(data: dict[str, Any]) -> ScoringConfig:
    """Parse scoring thresholds from dict."""
    scoring = ScoringConfig(
        reviewer=data.get("reviewer", 70),
        story=data.get("story", 75),
        epic=data.get("epic", 80),
        integration=data.get("integration", 85),
    )
    for name in ("reviewer", "story", "epic", "integration"):
        value = getattr(scoring, name)
        if not 0 <= value <= 100:
            raise ConfigError(f"scoring.{name} must be between 0 and 100, got {value}")
    return scoring


def load_config(config_path: Optional[str] = None) -> StoryloopConfig:
    """
    Load configuration from storyloop.yaml.

    Args:
        config_path: Optional path to config file. If not provided,
                     looks for storyloop.yaml in current directory.

    Returns:
        StoryloopConfig: Loaded and validated configuration.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_FILE

    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, "r") as f:
            raw_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}")

    if raw_data is None:
        raw_data = {}
    if not isinstance(raw_data, dict):
        raise ConfigError("Configuration file must contain a mapping")

    data = _resolve_env_vars(raw_data)

    return StoryloopConfig(
        repo_root=data.get("repo_root", "."),
        state_dir=data.get("state_dir", ".storyloop"),
        claude=_parse_claude_config(data.get("claude", {})),
        retry=_parse_retry_config(data.get("retry", {})),
        roles=_parse_role_config(data.get("roles", {})),
        development=_parse_development_config(data.get("development", {})),
        deployment=_parse_deployment_config(data.get("deployment", {})),
        scoring=_parse_scoring_config(data.get("scoring", {})),
    )


def get_config(config_path: Optional[str] = None, force_reload: bool = False) -> StoryloopConfig:
    """
    Get the cached configuration, loading it if necessary.

    Falls back to defaults rooted at the current directory when no config
    file exists and no explicit path was given.
    """
    global _config_cache

    if _config_cache is None or force_reload:
        if config_path is None and not Path(DEFAULT_CONFIG_FILE).exists():
            _config_cache = StoryloopConfig()
        else:
            _config_cache = load_config(config_path)

    return _config_cache


def clear_config_cache() -> None:
    """Clear the configuration cache. Useful for testing."""
    global _config_cache
    _config_cache = None
