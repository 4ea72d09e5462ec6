"""Configuration loading for the group chat orchestrator.

Settings come from (lowest to highest priority):
1. Dataclass defaults
2. .groupchat/config.yaml (or an explicit path)
3. GROUPCHAT_DATA_DIR environment variable (data_dir only)
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from groupchat.core.output_buffer import MAX_BUFFER_SIZE

DEFAULT_DATA_DIR = ".groupchat"
CONFIG_FILENAME = "config.yaml"
DATA_DIR_ENV = "GROUPCHAT_DATA_DIR"


class ConfigError(Exception):
    """Configuration file is missing required structure or has bad values."""

    pass


@dataclass
class GroupChatConfig:
    """Runtime settings shared by the store, registry and router."""

    data_dir: Path = field(default_factory=lambda: Path(DEFAULT_DATA_DIR))
    # Working directory for moderator processes
    default_cwd: str = field(default_factory=lambda: str(Path.home()))

    # Prompt building
    history_limit: int = 20  # Log entries included in each moderator prompt
    summary_length: int = 50  # Max chars of a participant's last-response summary

    # Output limits (prevent OOM from a runaway agent)
    max_buffer_size: int = MAX_BUFFER_SIZE

    # Per-process timeout in seconds (None = no limit)
    process_timeout: float | None = None

    # Agent type -> {name, command, args}; merged over built-in definitions
    agents: dict[str, dict[str, Any]] = field(default_factory=dict)

    # Agent type -> environment overrides for spawned processes
    env: dict[str, dict[str, str]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.data_dir = Path(self.data_dir)
        if self.history_limit < 0:
            raise ConfigError(f"history_limit must be >= 0, got {self.history_limit}")
        if self.summary_length < 1:
            raise ConfigError(f"summary_length must be >= 1, got {self.summary_length}")
        if self.max_buffer_size < 1:
            raise ConfigError(f"max_buffer_size must be >= 1, got {self.max_buffer_size}")
        if self.process_timeout is not None and self.process_timeout <= 0:
            raise ConfigError(f"process_timeout must be positive, got {self.process_timeout}")

    @property
    def db_path(self) -> Path:
        return self.data_dir / "state.db"

    @property
    def chats_dir(self) -> Path:
        return self.data_dir / "chats"

    def env_for(self, agent_type: str) -> dict[str, str] | None:
        """Environment overrides for an agent type (default env provider)."""
        overrides = self.env.get(agent_type)
        return dict(overrides) if overrides else None


def load_config(path: str | Path | None = None) -> GroupChatConfig:
    """Load configuration from YAML.

    With no path, reads .groupchat/config.yaml if present and falls back to
    defaults otherwise. An explicit path must exist.

    Raises:
        ConfigError: If the file is unreadable, malformed, or has unknown keys
    """
    if path is None:
        config_path = Path(os.environ.get(DATA_DIR_ENV, DEFAULT_DATA_DIR)) / CONFIG_FILENAME
        required = False
    else:
        config_path = Path(path)
        required = True

    data: dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path, encoding="utf-8") as f:
                loaded = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
        if loaded is not None:
            if not isinstance(loaded, dict):
                raise ConfigError(f"{config_path} must contain a mapping at the top level")
            data = loaded
    elif required:
        raise ConfigError(f"Config file not found: {config_path}")

    known = {f.name for f in fields(GroupChatConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown config keys in {config_path}: {', '.join(unknown)}")

    env_data_dir = os.environ.get(DATA_DIR_ENV)
    if env_data_dir:
        data["data_dir"] = env_data_dir

    try:
        return GroupChatConfig(**data)
    except TypeError as e:
        raise ConfigError(f"Invalid config in {config_path}: {e}") from e
