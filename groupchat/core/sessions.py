"""Session registry for moderator and participant processes.

Tracks which process session belongs to which conversation:
- conversation id -> moderator session id
- (conversation id, participant name) -> participant session id

Session ids encode their owner so process output can be attributed without
a lookup:
- group-chat-{conversation_id}-moderator-{uuid}
- group-chat-{conversation_id}-moderator-{uuid}-{millis}   (one-shot batch turn)
- group-chat-{conversation_id}-participant-{name}-{uuid|millis}
"""

import logging
import re
import threading
import uuid
from pathlib import Path
from typing import Any

from groupchat.core.agents import AgentResolver
from groupchat.core.models import (
    AgentConfig,
    AgentUnavailableError,
    Conversation,
    ConversationNotFoundError,
    DuplicateParticipantError,
    GroupChatError,
    Participant,
    SpawnConfig,
    SpawnError,
)
from groupchat.core.process import ProcessManager
from groupchat.core.storage import ConversationStore

logger = logging.getLogger(__name__)

MODERATOR_SYSTEM_PROMPT = """You are a Group Chat Moderator. Your role is to:

1. Coordinate conversations between multiple AI agents
2. Route messages to the appropriate participants using @mentions
3. Summarize and aggregate responses from agents
4. Ensure all participants have the context they need
5. Keep the conversation focused and productive

When addressing agents, use @AgentName format. Available commands:
- @AgentName: message - Send a message to a specific agent
- Review the chat log for conversation history

Be concise, professional, and ensure smooth collaboration between agents."""

_UUID = r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"
_MILLIS = r"\d{13,}"

_MODERATOR_SESSION = re.compile(
    rf"^group-chat-(?P<conversation>.+?)-moderator-(?:{_UUID}|{_MILLIS})(?:-{_MILLIS})?$"
)
_PARTICIPANT_SESSION = re.compile(
    rf"^group-chat-(?P<conversation>.+?)-participant-(?P<name>.+)-(?:{_UUID}|{_MILLIS})$"
)


def moderator_session_id(conversation_id: str) -> str:
    return f"group-chat-{conversation_id}-moderator-{uuid.uuid4()}"


def participant_session_id(conversation_id: str, name: str) -> str:
    return f"group-chat-{conversation_id}-participant-{name}-{uuid.uuid4()}"


def parse_moderator_session_id(session_id: str) -> str | None:
    """Return the conversation id of a moderator session id, or None."""
    match = _MODERATOR_SESSION.match(session_id)
    return match.group("conversation") if match else None


def parse_participant_session_id(session_id: str) -> tuple[str, str] | None:
    """Return (conversation_id, participant_name) for a participant session id, or None."""
    match = _PARTICIPANT_SESSION.match(session_id)
    if not match:
        return None
    return match.group("conversation"), match.group("name")


class SessionRegistry:
    """Owns process-session bindings for every conversation.

    Construct one per host and pass it to the router; nothing here is global.
    The RLock serializes map access when process callbacks arrive on other
    threads.
    """

    def __init__(self, store: ConversationStore, default_cwd: str | None = None):
        self.store = store
        self.default_cwd = default_cwd or str(Path.home())
        self._moderators: dict[str, str] = {}
        self._participants: dict[tuple[str, str], str] = {}
        self._lock = threading.RLock()

    # --- Moderator ---

    def spawn_moderator(
        self,
        conversation: Conversation,
        process_manager: ProcessManager,
        cwd: str | None = None,
        agent_resolver: AgentResolver | None = None,
    ) -> str:
        """Start the moderator for a conversation and return its session id.

        An already running moderator is killed first, so a conversation never
        has two live moderators.

        Raises:
            AgentUnavailableError: If a resolver is given and the agent is unavailable
            SpawnError: If the process manager reports failure
        """
        if self.is_moderator_active(conversation.id):
            logger.info(f"Restarting moderator for group chat {conversation.id}")
            self.kill_moderator(conversation.id, process_manager)

        agent = self._resolve_agent(conversation.moderator_agent_type, agent_resolver)
        session_id = moderator_session_id(conversation.id)

        result = process_manager.spawn(
            SpawnConfig(
                session_id=session_id,
                agent_type=conversation.moderator_agent_type,
                cwd=cwd or self.default_cwd,
                command=agent.executable,
                args=list(agent.args),
                read_only_mode=True,
                prompt=MODERATOR_SYSTEM_PROMPT,
            )
        )
        if not result.success:
            raise SpawnError(f"Failed to spawn moderator for group chat {conversation.id}")

        with self._lock:
            self._moderators[conversation.id] = session_id
        self.store.update_conversation(conversation.id, moderator_session_id=session_id)
        logger.info(f"Moderator started for group chat {conversation.id} ({session_id})")
        return session_id

    def kill_moderator(
        self,
        conversation_id: str,
        process_manager: ProcessManager | None = None,
    ) -> None:
        """Stop the moderator and forget its session."""
        with self._lock:
            session_id = self._moderators.pop(conversation_id, None)

        if session_id and process_manager:
            process_manager.kill(session_id)

        try:
            self.store.update_conversation(conversation_id, moderator_session_id=None)
        except ConversationNotFoundError:
            logger.debug(f"Group chat {conversation_id} already deleted; nothing to clear")

    def is_moderator_active(self, conversation_id: str) -> bool:
        with self._lock:
            return conversation_id in self._moderators

    def get_moderator_session_id(self, conversation_id: str) -> str | None:
        with self._lock:
            return self._moderators.get(conversation_id)

    # --- Participants ---

    def add_participant(
        self,
        conversation_id: str,
        name: str,
        agent_type: str,
        process_manager: ProcessManager,
        cwd: str | None = None,
        agent_resolver: AgentResolver | None = None,
        env_overrides: dict[str, str] | None = None,
    ) -> Participant:
        """Spawn a participant agent and add it to the conversation roster.

        Forwarded messages arrive on the participant's stdin. Unless the agent
        is interactive, stdin is closed after the first message, so the
        participant answers once and exits.

        Raises:
            ConversationNotFoundError: If the conversation does not exist
            DuplicateParticipantError: If the name is already taken
            AgentUnavailableError: If the agent type cannot be resolved
            SpawnError: If the process manager reports failure
        """
        conversation = self.store.require_conversation(conversation_id)
        if conversation.get_participant(name) is not None:
            raise DuplicateParticipantError(
                f"Participant '{name}' already exists in group chat {conversation_id}"
            )

        agent = self._resolve_agent(agent_type, agent_resolver)
        session_id = participant_session_id(conversation_id, name)

        result = process_manager.spawn(
            SpawnConfig(
                session_id=session_id,
                agent_type=agent_type,
                cwd=cwd or self.default_cwd,
                command=agent.executable,
                args=list(agent.args),
                read_only_mode=False,
                env=env_overrides,
                close_stdin_after_write=not agent.interactive,
            )
        )
        if not result.success:
            raise SpawnError(
                f"Failed to spawn participant '{name}' for group chat {conversation_id}"
            )

        participant = Participant(name=name, agent_type=agent_type, session_id=session_id)
        try:
            self.store.add_participant(conversation_id, participant)
        except GroupChatError:
            # Roster rejected it; don't leave an orphaned process behind
            process_manager.kill(session_id)
            raise

        with self._lock:
            self._participants[(conversation_id, name)] = session_id
        logger.info(f"Participant @{name} ({agent_type}) joined group chat {conversation_id}")
        return participant

    def is_participant_active(self, conversation_id: str, name: str) -> bool:
        with self._lock:
            return (conversation_id, name) in self._participants

    def get_participant_session_id(self, conversation_id: str, name: str) -> str | None:
        with self._lock:
            return self._participants.get((conversation_id, name))

    def update_participant_stats(self, conversation_id: str, name: str, **stats: Any) -> bool:
        """Merge partial stats into a participant. Best-effort.

        Accepts last_activity, last_summary, message_count, token_count,
        total_cost, context_usage and agent_session_id. Returns False (after
        logging) if the update could not be persisted.
        """
        try:
            self.store.update_participant(conversation_id, name, **stats)
        except Exception as e:
            logger.error(f"Failed to update participant stats for {name} in {conversation_id}: {e}")
            return False
        return True

    def mark_participant_exited(self, conversation_id: str, name: str) -> None:
        """Forget a participant's session after its process ends."""
        with self._lock:
            self._participants.pop((conversation_id, name), None)

    # --- Teardown ---

    def clear_conversation(
        self,
        conversation_id: str,
        process_manager: ProcessManager | None = None,
    ) -> None:
        """Stop every session of a conversation (used when it is deleted)."""
        with self._lock:
            owned = [key for key in self._participants if key[0] == conversation_id]
            sessions = [self._participants.pop(key) for key in owned]

        if process_manager:
            for session_id in sessions:
                process_manager.kill(session_id)
        self.kill_moderator(conversation_id, process_manager)

    def clear_all(self) -> None:
        """Forget every binding (shutdown or tests)."""
        with self._lock:
            self._moderators.clear()
            self._participants.clear()

    # --- Helpers ---

    def _resolve_agent(
        self,
        agent_type: str,
        agent_resolver: AgentResolver | None,
    ) -> AgentConfig:
        """Resolve how to launch an agent type.

        Without a resolver the agent type itself is used as the command, and
        the agent is treated as interactive.
        """
        if agent_resolver is None:
            return AgentConfig(
                id=agent_type,
                name=agent_type,
                command=agent_type,
                available=True,
                interactive=True,
            )
        agent = agent_resolver.get_agent(agent_type)
        if agent is None or not agent.available:
            raise AgentUnavailableError(f"Agent '{agent_type}' is not available")
        return agent
