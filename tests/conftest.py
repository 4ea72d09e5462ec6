# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the groupchat test suite.

This module provides foundational fixtures used across all test modules:
- Temporary data directories and conversation stores
- A recording fake process manager (no real processes)
- A fake agent resolver
- A fully wired router

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    All fixtures in this file are automatically available in test modules.
"""

from __future__ import annotations

import itertools
from pathlib import Path

import pytest

from groupchat.core.config import GroupChatConfig
from groupchat.core.events import ChatEvent, EventEmitter
from groupchat.core.models import AgentConfig, Conversation, SessionInfo, SpawnConfig, SpawnResult
from groupchat.core.router import MessageRouter
from groupchat.core.sessions import SessionRegistry
from groupchat.core.storage import ConversationStore


# =============================================================================
# Test Doubles
# =============================================================================


class FakeProcessManager:
    """Process manager that records calls instead of starting processes.

    Attributes:
        spawned: Every SpawnConfig passed to spawn(), in order
        writes: (session_id, data) for every successful write
        killed: Session ids passed to kill()
        fail_spawn_for: Agent types whose spawn reports success=False
        raise_on_write: Session id substrings whose write raises OSError
        reject_write: Session id substrings whose write returns False
    """

    def __init__(self) -> None:
        self.spawned: list[SpawnConfig] = []
        self.writes: list[tuple[str, str]] = []
        self.killed: list[str] = []
        self.fail_spawn_for: set[str] = set()
        self.raise_on_write: set[str] = set()
        self.reject_write: set[str] = set()
        self._pids = itertools.count(1000)

    def spawn(self, config: SpawnConfig) -> SpawnResult:
        self.spawned.append(config)
        if config.agent_type in self.fail_spawn_for:
            return SpawnResult(pid=-1, success=False)
        return SpawnResult(pid=next(self._pids), success=True)

    def write(self, session_id: str, data: str) -> bool:
        if any(marker in session_id for marker in self.raise_on_write):
            raise OSError(f"broken pipe for {session_id}")
        if any(marker in session_id for marker in self.reject_write):
            return False
        self.writes.append((session_id, data))
        return True

    def kill(self, session_id: str) -> bool:
        self.killed.append(session_id)
        return True

    def writes_to(self, fragment: str) -> list[str]:
        """Data written to sessions whose id contains fragment."""
        return [data for session_id, data in self.writes if fragment in session_id]


class FakeResolver:
    """Resolves every agent type to an installed command of the same name."""

    def __init__(self, unavailable: set[str] | None = None) -> None:
        self.unavailable = unavailable or set()
        self.lookups: list[str] = []

    def get_agent(self, agent_type: str) -> AgentConfig | None:
        self.lookups.append(agent_type)
        if agent_type == "missing":
            return None
        available = agent_type not in self.unavailable
        return AgentConfig(
            id=agent_type,
            name=agent_type.title(),
            command=agent_type,
            path=f"/usr/bin/{agent_type}" if available else None,
            args=["--batch"],
            available=available,
        )


class EventRecorder:
    """Collects emitted events as (event, args) tuples."""

    def __init__(self, events: EventEmitter) -> None:
        self.received: list[tuple[ChatEvent, tuple]] = []
        for event in ChatEvent:
            events.on(event, lambda *args, _event=event: self.received.append((_event, args)))

    def of(self, event: ChatEvent) -> list[tuple]:
        return [args for kind, args in self.received if kind == event]


# =============================================================================
# Storage Fixtures
# =============================================================================


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Empty data directory for a store."""
    return tmp_path / "data"


@pytest.fixture
def store(data_dir: Path) -> ConversationStore:
    """Create a fresh conversation store in a temporary directory.

    Example:
        def test_create(store):
            conversation = store.create_conversation("Review", "claude-code")
            assert store.load_conversation(conversation.id) is not None
    """
    return ConversationStore(data_dir)


@pytest.fixture
def conversation(store: ConversationStore) -> Conversation:
    """A conversation with no participants and no moderator session."""
    return store.create_conversation("Design Review", "claude-code", conversation_id="chat1")


@pytest.fixture
def config(data_dir: Path, tmp_path: Path) -> GroupChatConfig:
    """Config pointing at the temporary data directory."""
    return GroupChatConfig(data_dir=data_dir, default_cwd=str(tmp_path))


# =============================================================================
# Orchestration Fixtures
# =============================================================================


@pytest.fixture
def process_manager() -> FakeProcessManager:
    return FakeProcessManager()


@pytest.fixture
def resolver() -> FakeResolver:
    return FakeResolver()


@pytest.fixture
def registry(store: ConversationStore, tmp_path: Path) -> SessionRegistry:
    return SessionRegistry(store, default_cwd=str(tmp_path))


@pytest.fixture
def events() -> EventEmitter:
    return EventEmitter()


@pytest.fixture
def recorder(events: EventEmitter) -> EventRecorder:
    return EventRecorder(events)


@pytest.fixture
def available_sessions() -> list[SessionInfo]:
    """Mutable list backing the router's sessions provider."""
    return []


@pytest.fixture
def router(
    store: ConversationStore,
    registry: SessionRegistry,
    events: EventEmitter,
    config: GroupChatConfig,
    available_sessions: list[SessionInfo],
) -> MessageRouter:
    """Router wired to the fake-friendly registry and a sessions provider."""
    return MessageRouter(
        store,
        registry,
        events=events,
        config=config,
        sessions_provider=lambda: list(available_sessions),
    )


@pytest.fixture
def moderated(
    conversation: Conversation,
    registry: SessionRegistry,
    process_manager: FakeProcessManager,
    resolver: FakeResolver,
) -> Conversation:
    """The conversation with a running moderator."""
    registry.spawn_moderator(conversation, process_manager, agent_resolver=resolver)
    return conversation


# =============================================================================
# Pytest Configuration
# =============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
