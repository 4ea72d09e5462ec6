"""Data models for the group chat orchestrator.

Uses Pydantic for everything persisted or passed across the process boundary.
"""

from datetime import UTC, datetime

from pydantic import BaseModel, Field

# Senders reserved by the log format (participants may not use these names)
USER_SENDER = "user"
MODERATOR_SENDER = "moderator"
RESERVED_SENDERS = frozenset({USER_SENDER, MODERATOR_SENDER})

# Session kind that can never be auto-admitted (raw shells, not agents)
TERMINAL_AGENT_TYPE = "terminal"


def utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


# --- Conversation Models ---


class Participant(BaseModel):
    """An agent admitted to a conversation, addressable by @mention."""

    name: str
    agent_type: str
    session_id: str  # Internal process session ID (used for routing)
    agent_session_id: str | None = None  # Agent-native session GUID, if reported
    added_at: datetime = Field(default_factory=utc_now)
    last_activity: datetime | None = None
    last_summary: str | None = None
    message_count: int = 0
    # Telemetry (optional, depends on provider)
    token_count: int | None = None
    total_cost: float | None = None
    context_usage: int | None = None  # Percent of context window


class Conversation(BaseModel):
    """A shared multi-agent session with one moderator."""

    id: str
    name: str
    moderator_agent_type: str
    log_path: str
    attachments_dir: str
    moderator_session_id: str | None = None
    participants: list[Participant] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def get_participant(self, name: str) -> Participant | None:
        """Exact-name lookup (mention matching lives in mentions.py)."""
        for participant in self.participants:
            if participant.name == name:
                return participant
        return None


class LogEntry(BaseModel):
    """A single message from the conversation log."""

    timestamp: str  # ISO 8601, kept as written
    sender: str
    content: str
    read_only: bool = False


class SessionInfo(BaseModel):
    """An externally running session that may be auto-admitted."""

    id: str
    name: str
    agent_type: str
    cwd: str


class UsageStats(BaseModel):
    """Token/cost usage reported by an agent process."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_input_tokens: int = 0
    cache_creation_input_tokens: int = 0
    total_cost_usd: float = 0.0
    context_window: int = 0

    @property
    def context_tokens(self) -> int:
        """Tokens occupying the context window for this turn."""
        return (
            self.input_tokens + self.cache_read_input_tokens + self.cache_creation_input_tokens
        )

    @property
    def context_usage(self) -> int:
        if self.context_window <= 0:
            return 0
        return round(self.context_tokens / self.context_window * 100)


# --- Process Boundary Models ---


class AgentConfig(BaseModel):
    """Resolved agent definition: how to launch an agent type."""

    id: str
    name: str
    command: str
    path: str | None = None  # Absolute path when found on PATH
    args: list[str] = Field(default_factory=list)
    available: bool = False
    # False: the CLI answers once its stdin hits EOF (claude --print, codex exec)
    interactive: bool = False

    @property
    def executable(self) -> str:
        return self.path or self.command


class SpawnConfig(BaseModel):
    """Request to start an agent process."""

    session_id: str
    agent_type: str
    cwd: str
    command: str
    args: list[str] = Field(default_factory=list)
    read_only_mode: bool = False
    prompt: str | None = None
    env: dict[str, str] | None = None
    # Interactive spawns only: close stdin after the first write
    close_stdin_after_write: bool = False


class SpawnResult(BaseModel):
    """Outcome of a spawn request."""

    pid: int
    success: bool


# --- Error Models ---


class GroupChatError(Exception):
    """Base error for group chat orchestration."""

    pass


class NotFoundError(GroupChatError):
    """A conversation, participant, or moderator is missing."""

    pass


class ConversationNotFoundError(NotFoundError):
    def __init__(self, conversation_id: str):
        super().__init__(f"Group chat not found: {conversation_id}")
        self.conversation_id = conversation_id


class ParticipantNotFoundError(NotFoundError):
    def __init__(self, conversation_id: str, name: str):
        super().__init__(f"Participant '{name}' not found in group chat {conversation_id}")
        self.conversation_id = conversation_id
        self.name = name


class ModeratorNotActiveError(NotFoundError):
    def __init__(self, conversation_id: str):
        super().__init__(f"Moderator is not active for group chat: {conversation_id}")
        self.conversation_id = conversation_id


class AgentUnavailableError(GroupChatError):
    """Agent type cannot be resolved to a runnable command."""

    pass


class SpawnError(GroupChatError):
    """The process manager failed to start an agent process."""

    pass


class DuplicateParticipantError(GroupChatError):
    """A participant with this name already exists in the conversation."""

    pass
