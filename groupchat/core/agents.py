"""Agent type resolution.

Maps an agent type (e.g. "claude-code") to the command that runs it and
reports whether that command is installed. Built-in definitions ship in
groupchat/defaults/agents.yaml; project config can add or override entries.
"""

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import yaml

from groupchat.core.models import AgentConfig

logger = logging.getLogger(__name__)


class AgentResolver(Protocol):
    """Anything that can resolve an agent type to a runnable command."""

    def get_agent(self, agent_type: str) -> AgentConfig | None: ...


@dataclass
class AgentDetector:
    """Resolve agent types from YAML definitions and the PATH.

    Lookups are cached; call refresh() after installing a CLI.
    """

    overrides: dict[str, dict[str, Any]] = field(default_factory=dict)
    defaults_path: Path = field(
        default_factory=lambda: Path(__file__).parent.parent / "defaults" / "agents.yaml"
    )

    _definitions: dict[str, dict[str, Any]] = field(default_factory=dict, init=False, repr=False)
    _cache: dict[str, AgentConfig] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        self._definitions = self._load_definitions()

    def _load_definitions(self) -> dict[str, dict[str, Any]]:
        definitions: dict[str, dict[str, Any]] = {}
        try:
            with open(self.defaults_path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            definitions.update(data.get("agents", {}))
        except FileNotFoundError:
            logger.warning(f"Built-in agent definitions not found at {self.defaults_path}")

        # Overlay: keys merge into the built-in entry, new types are added
        for agent_type, override in self.overrides.items():
            merged = dict(definitions.get(agent_type, {}))
            merged.update(override or {})
            definitions[agent_type] = merged
        return definitions

    def list_agent_types(self) -> list[str]:
        return sorted(self._definitions)

    def get_agent(self, agent_type: str) -> AgentConfig | None:
        """Resolve an agent type, or None if no definition exists."""
        if agent_type in self._cache:
            return self._cache[agent_type]

        definition = self._definitions.get(agent_type)
        if definition is None:
            return None

        command = definition.get("command") or agent_type
        path = shutil.which(command)
        agent = AgentConfig(
            id=agent_type,
            name=definition.get("name", agent_type),
            command=command,
            path=path,
            args=[str(arg) for arg in definition.get("args", [])],
            available=path is not None,
            interactive=bool(definition.get("interactive", False)),
        )
        if not agent.available:
            logger.debug(f"Agent '{agent_type}' command '{command}' not found on PATH")
        self._cache[agent_type] = agent
        return agent

    def get_all_agents(self) -> list[AgentConfig]:
        agents = []
        for agent_type in self.list_agent_types():
            agent = self.get_agent(agent_type)
            if agent is not None:
                agents.append(agent)
        return agents

    def refresh(self) -> None:
        self._cache.clear()
