"""Board configuration loaded from .agentboard/config.yaml."""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from agentboard.core.errors import OrchestrationError
from agentboard.core.utils import state_dir

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.yaml"
MOCK_AGENT_ENV = "AGENTBOARD_MOCK_AGENT"

DEFAULT_ALLOWED_TOOLS = [
    "Read",
    "Write",
    "Edit",
    "Glob",
    "Grep",
    "Bash",
    "WebSearch",
    "WebFetch",
]


class ConfigError(OrchestrationError):
    """Configuration file is unreadable or invalid."""

    pass


class ProviderConfig(BaseModel):
    """Which agent CLI runs features and how."""

    name: str = "claude"
    model: str | None = None
    max_turns: int = 20
    allowed_tools: list[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_TOOLS))
    # No implicit timeout: callers decide when to stop a session
    cli_timeout: float | None = None


class BoardConfig(BaseModel):
    """Project-level settings for the orchestration engine."""

    worktrees_dir: str = ".agentboard/worktrees"
    branch_prefix: str = "feature/"
    protected_branches: list[str] = Field(default_factory=lambda: ["main", "master"])
    git_timeout: int = 30
    max_concurrency: int = Field(default=3, ge=1)
    delete_branch_on_delete: bool = True
    reclaim_on_archive: bool = False
    max_diff_chars: int = 200_000
    provider: ProviderConfig = Field(default_factory=ProviderConfig)

    @property
    def use_mock_agent(self) -> bool:
        if os.environ.get(MOCK_AGENT_ENV, "").lower() in ("1", "true", "yes"):
            return True
        return self.provider.name == "mock"


DEFAULT_CONFIG_YAML = """\
# agentboard configuration
worktrees_dir: .agentboard/worktrees
branch_prefix: feature/
protected_branches: [main, master]
git_timeout: 30
max_concurrency: 3
delete_branch_on_delete: true
reclaim_on_archive: false

provider:
  name: claude        # claude, mock, or another agent CLI on PATH
  model: null
  max_turns: 20
  allowed_tools: [Read, Write, Edit, Glob, Grep, Bash, WebSearch, WebFetch]
"""


def config_path(project_root: Path) -> Path:
    return state_dir(project_root) / CONFIG_FILENAME


def load_config(project_root: Path) -> BoardConfig:
    """Load config for a project, falling back to defaults if absent.

    Raises:
        ConfigError: If the file exists but is not valid YAML or fails validation
    """
    path = config_path(project_root)
    if not path.exists():
        return BoardConfig()

    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    if data is None:
        return BoardConfig()
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping, got {type(data).__name__}")

    try:
        config = BoardConfig.model_validate(data)
    except PydanticValidationError as e:
        raise ConfigError(f"Invalid configuration in {path}: {e}") from e

    logger.debug(f"Loaded config from {path}")
    return config


def write_default_config(project_root: Path) -> Path | None:
    """Write the default config file unless one already exists.

    Returns:
        Path written, or None if a config was already present
    """
    path = config_path(project_root)
    if path.exists():
        return None
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(DEFAULT_CONFIG_YAML)
    return path
