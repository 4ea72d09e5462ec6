"""Message routing for group chats.

Routes messages between:
- User -> Moderator (one-shot batch turn with chat history in the prompt)
- Moderator -> Participants (via @mentions)
- Participants -> Moderator

Every entry point logs first. The log is the authoritative record, so a
later failure (spawn, delivery, stats) never rolls a logged message back.

Routing calls for the same conversation are serialized by a per-conversation
lock: auto-admission reads the roster and then writes to it, and two
interleaved passes could admit the same session twice.
"""

import logging
import threading
import time
from collections.abc import Callable

from groupchat.core.agents import AgentResolver
from groupchat.core.chat_log import append_to_log, format_history, read_log
from groupchat.core.config import GroupChatConfig
from groupchat.core.events import ChatEvent, EventEmitter
from groupchat.core.mentions import (
    extract_all_mentions,
    extract_mentions,
    find_matching_name,
    mention_matches_name,
)
from groupchat.core.models import (
    MODERATOR_SENDER,
    TERMINAL_AGENT_TYPE,
    USER_SENDER,
    AgentUnavailableError,
    Conversation,
    ModeratorNotActiveError,
    Participant,
    ParticipantNotFoundError,
    SessionInfo,
    SpawnConfig,
    SpawnError,
    utc_now,
)
from groupchat.core.process import ProcessManager
from groupchat.core.sessions import MODERATOR_SYSTEM_PROMPT, SessionRegistry
from groupchat.core.storage import ConversationStore

logger = logging.getLogger(__name__)

SessionsProvider = Callable[[], list[SessionInfo]]
EnvProvider = Callable[[str], dict[str, str] | None]

READ_ONLY_NOTE = " (READ-ONLY MODE - do not make changes)"
NO_PARTICIPANTS_NOTE = "(No agents currently in this group chat)"


def summarize(message: str, length: int = 50) -> str:
    """Brief summary of a response: the first `length` chars, marked if clipped."""
    return message if len(message) <= length else message[:length] + "..."


class MessageRouter:
    """Routes messages between the user, the moderator and participants.

    Collaborators are injected: the store and registry are owned by the host,
    sessions_provider lists externally running sessions that may be
    auto-admitted, and env_provider maps an agent type to environment
    overrides (defaults to the config's `env` section).
    """

    def __init__(
        self,
        store: ConversationStore,
        registry: SessionRegistry,
        events: EventEmitter | None = None,
        config: GroupChatConfig | None = None,
        sessions_provider: SessionsProvider | None = None,
        env_provider: EnvProvider | None = None,
    ):
        self.store = store
        self.registry = registry
        self.events = events or EventEmitter()
        self.config = config or GroupChatConfig(data_dir=store.data_dir)
        self.sessions_provider = sessions_provider
        self.env_provider = env_provider or self.config.env_for

        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def _conversation_lock(self, conversation_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(conversation_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[conversation_id] = lock
            return lock

    # --- Entry points ---

    def route_user_message(
        self,
        conversation_id: str,
        message: str,
        process_manager: ProcessManager | None = None,
        agent_resolver: AgentResolver | None = None,
        read_only: bool = False,
    ) -> str | None:
        """Log a user message and dispatch a moderator turn for it.

        Returns the batch session id of the spawned moderator turn, or None
        when no process manager was given.

        Raises:
            ConversationNotFoundError: If the conversation does not exist
            ModeratorNotActiveError: If no moderator has been started
            AgentUnavailableError: If the moderator agent cannot be resolved
            SpawnError: If the moderator turn cannot be started
        """
        with self._conversation_lock(conversation_id):
            conversation = self.store.require_conversation(conversation_id)

            if not self.registry.is_moderator_active(conversation_id):
                raise ModeratorNotActiveError(conversation_id)

            if process_manager and agent_resolver and self.sessions_provider:
                self._auto_admit(
                    conversation,
                    extract_all_mentions(message),
                    process_manager,
                    agent_resolver,
                    source="user",
                )
                conversation = self.store.require_conversation(conversation_id)

            entry = append_to_log(conversation.log_path, USER_SENDER, message)
            entry.read_only = read_only
            self.events.emit(ChatEvent.MESSAGE, conversation_id, entry)

            if process_manager is None:
                return None
            if agent_resolver is None:
                logger.error("Agent resolver not available, cannot spawn moderator")
                raise AgentUnavailableError("Agent resolver not available")

            return self._spawn_moderator_turn(
                conversation, message, process_manager, agent_resolver, read_only
            )

    def route_moderator_response(
        self,
        conversation_id: str,
        message: str,
        process_manager: ProcessManager | None = None,
        agent_resolver: AgentResolver | None = None,
    ) -> list[str]:
        """Log a moderator response and forward it to mentioned participants.

        Returns the names of participants the message was delivered to.
        """
        with self._conversation_lock(conversation_id):
            conversation = self.store.require_conversation(conversation_id)

            entry = append_to_log(conversation.log_path, MODERATOR_SENDER, message)
            self.events.emit(ChatEvent.MESSAGE, conversation_id, entry)

            if process_manager and self.sessions_provider:
                self._auto_admit(
                    conversation,
                    extract_all_mentions(message),
                    process_manager,
                    agent_resolver,
                    source="moderator",
                )

            # Reload so newly admitted participants receive this message too
            updated = self.store.load_conversation(conversation_id)
            if updated is None or process_manager is None:
                return []

            delivered: list[str] = []
            for name in extract_mentions(message, updated.participants):
                session_id = self.registry.get_participant_session_id(conversation_id, name)
                if session_id is None:
                    continue
                try:
                    ok = process_manager.write(session_id, message + "\n")
                except Exception as e:
                    logger.error(f"Failed to write to participant {name}: {e}")
                    continue
                if ok:
                    delivered.append(name)
                else:
                    logger.error(f"Failed to write to participant {name}: session not writable")
            return delivered

    def route_agent_response(
        self,
        conversation_id: str,
        participant_name: str,
        message: str,
        process_manager: ProcessManager | None = None,
        agent_resolver: AgentResolver | None = None,
    ) -> None:
        """Log a participant's response, update its stats and notify the moderator.

        The response is written to the moderator's session. A batch moderator
        cannot take input, so when the write is refused and a resolver is
        given, a new moderator turn is dispatched with the response instead.

        Raises:
            ConversationNotFoundError: If the conversation does not exist
            ParticipantNotFoundError: If the participant is not in the conversation
        """
        with self._conversation_lock(conversation_id):
            conversation = self.store.require_conversation(conversation_id)
            participant = conversation.get_participant(participant_name)
            if participant is None:
                raise ParticipantNotFoundError(conversation_id, participant_name)

            entry = append_to_log(conversation.log_path, participant_name, message)
            self.events.emit(ChatEvent.MESSAGE, conversation_id, entry)

            updated = self.registry.update_participant_stats(
                conversation_id,
                participant_name,
                last_activity=utc_now(),
                last_summary=summarize(message, self.config.summary_length),
                message_count=participant.message_count + 1,
            )
            if updated:
                self.emit_participants_changed(conversation_id)

            if process_manager is None or not self.registry.is_moderator_active(conversation_id):
                return
            session_id = self.registry.get_moderator_session_id(conversation_id)
            if session_id is None:
                return
            notification = f"[{participant_name}]: {message}"
            try:
                if process_manager.write(session_id, notification + "\n"):
                    return
            except Exception as e:
                # Already logged; the moderator sees it in history on its next turn
                logger.error(f"Failed to notify moderator from {participant_name}: {e}")
                return

            if agent_resolver is None:
                logger.warning(
                    f"Moderator for {conversation_id} did not accept response "
                    f"from {participant_name}"
                )
                return
            try:
                self._spawn_moderator_turn(
                    conversation,
                    notification,
                    process_manager,
                    agent_resolver,
                    read_only=False,
                    sender=participant_name,
                )
            except Exception as e:
                logger.error(
                    f"Failed to start moderator turn for response from {participant_name}: {e}"
                )

    def add_participant(
        self,
        conversation_id: str,
        name: str,
        agent_type: str,
        process_manager: ProcessManager,
        cwd: str | None = None,
        agent_resolver: AgentResolver | None = None,
    ) -> Participant:
        """Explicitly admit a participant and announce the roster change."""
        with self._conversation_lock(conversation_id):
            participant = self.registry.add_participant(
                conversation_id,
                name,
                agent_type,
                process_manager,
                cwd=cwd,
                agent_resolver=agent_resolver,
                env_overrides=self.env_provider(agent_type),
            )
            self.emit_participants_changed(conversation_id)
            return participant

    # --- Prompt building ---

    def available_sessions(self, conversation: Conversation) -> list[SessionInfo]:
        """External sessions that could still be added via @mention."""
        if self.sessions_provider is None:
            return []
        joined = {participant.name for participant in conversation.participants}
        return [
            session
            for session in self.sessions_provider()
            if session.agent_type != TERMINAL_AGENT_TYPE and session.name not in joined
        ]

    def build_moderator_prompt(
        self,
        conversation: Conversation,
        message: str,
        read_only: bool = False,
        sender: str = USER_SENDER,
    ) -> str:
        """Moderator turn prompt: roster, available sessions, history, then the request.

        The request section is headed by who sent it: the user, or a
        participant whose response the moderator should act on.
        """
        if conversation.participants:
            participant_context = "\n".join(
                f"- @{p.name} ({p.agent_type} session)" for p in conversation.participants
            )
        else:
            participant_context = NO_PARTICIPANTS_NOTE

        available = self.available_sessions(conversation)
        available_context = ""
        if available:
            lines = "\n".join(f"- @{s.name} ({s.agent_type})" for s in available)
            available_context = (
                f"\n\n## Available Sessions (can be added via @mention):\n{lines}"
            )

        history = format_history(read_log(conversation.log_path), self.config.history_limit)
        if sender == USER_SENDER:
            request_header = "## User Request"
        else:
            request_header = f"## Response from @{sender}"
        if read_only:
            request_header += READ_ONLY_NOTE

        return (
            f"{MODERATOR_SYSTEM_PROMPT}\n\n"
            f"## Current Participants:\n{participant_context}{available_context}\n\n"
            f"## Chat History:\n{history}\n\n"
            f"{request_header}:\n{message}"
        )

    # --- Internals ---

    def _spawn_moderator_turn(
        self,
        conversation: Conversation,
        message: str,
        process_manager: ProcessManager,
        agent_resolver: AgentResolver,
        read_only: bool,
        sender: str = USER_SENDER,
    ) -> str | None:
        session_prefix = self.registry.get_moderator_session_id(conversation.id)
        if session_prefix is None:
            return None

        agent = agent_resolver.get_agent(conversation.moderator_agent_type)
        if agent is None or not agent.available:
            raise AgentUnavailableError(
                f"Agent '{conversation.moderator_agent_type}' is not available"
            )

        session_id = f"{session_prefix}-{int(time.time() * 1000)}"
        prompt = self.build_moderator_prompt(conversation, message, read_only, sender)
        try:
            result = process_manager.spawn(
                SpawnConfig(
                    session_id=session_id,
                    agent_type=conversation.moderator_agent_type,
                    cwd=self.config.default_cwd,
                    command=agent.executable,
                    args=list(agent.args),
                    read_only_mode=True,
                    prompt=prompt,
                )
            )
        except Exception as e:
            logger.error(f"Failed to spawn moderator for {conversation.id}: {e}")
            raise SpawnError(f"Failed to spawn moderator: {e}") from e
        if not result.success:
            raise SpawnError(f"Failed to spawn moderator for group chat {conversation.id}")

        logger.debug(f"Dispatched moderator turn {session_id} (pid={result.pid})")
        return session_id

    def _auto_admit(
        self,
        conversation: Conversation,
        mentions: list[str],
        process_manager: ProcessManager,
        agent_resolver: AgentResolver | None,
        source: str,
    ) -> list[str]:
        """Admit mentioned sessions that are not yet participants.

        A mention matching an existing participant (or one admitted earlier
        in this pass) is skipped. A match is admitted under the session's own
        name, not the mention's spelling. Failures are logged per candidate.
        """
        if not mentions or self.sessions_provider is None:
            return []

        sessions = [s for s in self.sessions_provider() if s.agent_type != TERMINAL_AGENT_TYPE]
        known_names = [p.name for p in conversation.participants]
        admitted: list[str] = []

        for mentioned in mentions:
            if find_matching_name(mentioned, known_names) is not None:
                continue

            session = next((s for s in sessions if mention_matches_name(mentioned, s.name)), None)
            if session is None:
                continue

            logger.info(
                f"Auto-adding participant @{session.name} from {source} mention "
                f"@{mentioned} (session {session.id})"
            )
            try:
                self.registry.add_participant(
                    conversation.id,
                    session.name,
                    session.agent_type,
                    process_manager,
                    cwd=session.cwd,
                    agent_resolver=agent_resolver,
                    env_overrides=self.env_provider(session.agent_type),
                )
            except Exception as e:
                logger.error(
                    f"Failed to auto-add participant {mentioned} from {source} mention: {e}"
                )
                continue
            known_names.append(session.name)
            admitted.append(session.name)

        if admitted:
            self.emit_participants_changed(conversation.id)
        return admitted

    def emit_participants_changed(self, conversation_id: str) -> None:
        conversation = self.store.load_conversation(conversation_id)
        if conversation is not None:
            self.events.emit(
                ChatEvent.PARTICIPANTS_CHANGED, conversation_id, conversation.participants
            )
