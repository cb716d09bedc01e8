"""Configuration models for the Meta-Ralph MCP Server."""

import os
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

DEFAULT_CONFIG_FILE = "ralph.yaml"


class ProcessingOptions(BaseModel):
    """Options passed to meta-ralph for one batch."""

    model_config = ConfigDict(populate_by_name=True)

    mode: Literal["plan", "build"] = Field(default="build", description="Plan only, or plan and build")
    model: str = Field(default="sonnet", description="Model identifier passed to the agent")
    max_iterations: int = Field(
        default=10, ge=1, alias="maxIterations",
        description="Maximum agent iterations per issue",
    )
    auto_push: bool = Field(default=True, alias="autoPush", description="Push the fix branch when done")
    ci_awareness: bool = Field(
        default=False, alias="ciAwareness",
        description="Watch CI after pushing",
    )
    auto_fix_ci: bool = Field(
        default=False, alias="autoFixCi",
        description="Trigger a fix attempt when CI fails",
    )


class CIPollingConfig(BaseModel):
    """Polling loop settings for CI status."""

    interval_ms: int = Field(default=30000, ge=0, description="Delay between polls")
    max_retries: int = Field(default=20, ge=1, description="Maximum number of polls")


class Config(BaseModel):
    """Root configuration model."""

    script_path: Optional[Path] = Field(
        default=None, description="Path to the meta-ralph.sh entry script"
    )
    target_repo: Optional[Path] = Field(
        default=None, description="Repository meta-ralph works on (REPO_ROOT)"
    )
    providers: str = Field(
        default="zeropath,sentry,codecov",
        description="Comma-separated issue providers",
    )
    event_prefix: str = Field(
        default="RALPH_EVENT:", description="Sentinel prefix of structured stdout events"
    )
    max_activities: int = Field(default=500, ge=1, description="Activity history cap per session")
    cleanup_delay_ms: int = Field(
        default=300000, ge=0, description="Delay before a finished session is dropped"
    )
    parse_raw_output: bool = Field(
        default=True,
        description="Run non-event JSON lines through the stream-json parser",
    )
    github_token: Optional[str] = Field(default=None, description="GitHub API token")
    github_repo: Optional[str] = Field(default=None, description="Repository in owner/repo format")
    github_api_base: str = Field(default="https://api.github.com")
    ci: CIPollingConfig = Field(default_factory=CIPollingConfig)
    default_options: ProcessingOptions = Field(default_factory=ProcessingOptions)


# Raised by get_config() for an unreadable or invalid configuration
CONFIG_ERRORS = (ValidationError, OSError)

_ENV_OVERRIDES = {
    "META_RALPH_PATH": "script_path",
    "TARGET_REPO": "target_repo",
    "PROVIDERS": "providers",
    "GITHUB_TOKEN": "github_token",
    "GITHUB_REPO": "github_repo",
}


def find_config_file() -> Optional[Path]:
    """Find the YAML config file.

    Search order:
    1. RALPH_CONFIG_FILE environment variable
    2. ./ralph.yaml in current working directory
    """
    env_path = os.environ.get("RALPH_CONFIG_FILE")
    if env_path:
        return Path(env_path).resolve()

    local = Path.cwd() / DEFAULT_CONFIG_FILE
    if local.is_file():
        return local
    return None


def _load_yaml(config_file: Path) -> dict[str, Any]:
    from .executor.logging import get_logger

    try:
        data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
    except FileNotFoundError:
        get_logger().warning(f"Config file not found: {config_file}")
        return {}
    except yaml.YAMLError as e:
        get_logger().warning(f"Failed to parse config YAML in {config_file}: {e}")
        return {}

    if not isinstance(data, dict):
        get_logger().warning(f"Ignoring config file {config_file}: top level is not a mapping")
        return {}
    return data


def load_config(config_file: Optional[Path] = None) -> Config:
    """Load configuration from defaults, YAML file and environment.

    Args:
        config_file: Path to a YAML file. If None, will search for it.

    Returns:
        Loaded Config object.
    """
    if config_file is None:
        config_file = find_config_file()

    values: dict[str, Any] = _load_yaml(config_file) if config_file else {}

    for env_name, key in _ENV_OVERRIDES.items():
        env_value = os.environ.get(env_name)
        if env_value:
            values[key] = env_value

    return Config(**values)


def get_config() -> Config:
    """Get the configuration (always reloads from disk)."""
    return load_config()
