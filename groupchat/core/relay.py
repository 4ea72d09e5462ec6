"""Process output relay.

Connects a process manager's callbacks to the router:
- on data: moderator and participant output is buffered by session id
- on exit: the buffer is drained, cleared, and the completed text routed
  (moderator text to route_moderator_response, participant text to
  route_agent_response)
- usage and agent session ids found in JSON output update participant
  records (see output_parser.py)

Callbacks run on process reader threads, so routing failures are logged
here instead of propagating into the process manager.
"""

import logging

from groupchat.core.agents import AgentResolver
from groupchat.core.events import ChatEvent
from groupchat.core.models import GroupChatError, UsageStats
from groupchat.core.output_buffer import OutputBufferRegistry
from groupchat.core.output_parser import parse_agent_output
from groupchat.core.process import ProcessManager
from groupchat.core.router import MessageRouter
from groupchat.core.sessions import parse_moderator_session_id, parse_participant_session_id

logger = logging.getLogger(__name__)


class OutputRelay:
    """Buffer agent output and route it once each response is complete."""

    def __init__(
        self,
        router: MessageRouter,
        buffers: OutputBufferRegistry | None = None,
        process_manager: ProcessManager | None = None,
        agent_resolver: AgentResolver | None = None,
    ):
        self.router = router
        self.buffers = buffers or OutputBufferRegistry(router.config.max_buffer_size)
        self.process_manager = process_manager
        self.agent_resolver = agent_resolver

    @staticmethod
    def is_group_chat_session(session_id: str) -> bool:
        return (
            parse_moderator_session_id(session_id) is not None
            or parse_participant_session_id(session_id) is not None
        )

    def handle_data(self, session_id: str, data: str) -> bool:
        """Buffer output for a group chat session.

        Returns False for sessions that don't belong to a group chat, so the
        host can pass them on to its own handlers.
        """
        if not self.is_group_chat_session(session_id):
            return False
        total = self.buffers.append(session_id, data)
        logger.debug(f"Buffered {len(data)} chars for {session_id} (total {total})")
        return True

    def handle_exit(self, session_id: str, returncode: int = 0) -> bool:
        """Route a finished session's buffered output. Returns True if routed."""
        if not self.is_group_chat_session(session_id):
            return False
        routed = self.flush(session_id)

        participant = parse_participant_session_id(session_id)
        if participant is not None:
            conversation_id, name = participant
            self.router.registry.mark_participant_exited(conversation_id, name)
            logger.info(
                f"Participant @{name} in {conversation_id} exited with code {returncode}"
            )
        return routed

    def flush(self, session_id: str) -> bool:
        """Drain a session's buffer and route its text without waiting for exit."""
        output = self.buffers.read_and_join(session_id)
        truncated = self.buffers.is_truncated(session_id)
        self.buffers.clear(session_id)

        if output is None or not output.strip():
            logger.debug(f"No output to route for {session_id}")
            return False
        if truncated:
            logger.warning(f"Routing truncated output for {session_id}")

        parsed = parse_agent_output(output)
        if parsed.agent_session_id:
            self.handle_agent_session_id(session_id, parsed.agent_session_id)
        if parsed.usage is not None:
            self.handle_usage(session_id, parsed.usage)

        text = parsed.text.strip()
        if not text:
            logger.debug(f"No response text in output from {session_id}")
            return False
        try:
            conversation_id = parse_moderator_session_id(session_id)
            if conversation_id is not None:
                self.router.route_moderator_response(
                    conversation_id, text, self.process_manager, self.agent_resolver
                )
                return True

            participant = parse_participant_session_id(session_id)
            if participant is not None:
                conversation_id, name = participant
                self.router.route_agent_response(
                    conversation_id, name, text, self.process_manager, self.agent_resolver
                )
                return True
        except GroupChatError as e:
            logger.error(f"Failed to route output from {session_id}: {e}")
        return False

    def handle_usage(self, session_id: str, usage: UsageStats) -> None:
        """Apply token/cost usage to a participant or announce moderator usage."""
        participant = parse_participant_session_id(session_id)
        if participant is not None:
            conversation_id, name = participant
            updated = self.router.registry.update_participant_stats(
                conversation_id,
                name,
                context_usage=usage.context_usage,
                token_count=usage.context_tokens,
                total_cost=usage.total_cost_usd,
            )
            if updated:
                self.router.emit_participants_changed(conversation_id)
            return

        conversation_id = parse_moderator_session_id(session_id)
        if conversation_id is not None:
            self.router.events.emit(
                ChatEvent.MODERATOR_USAGE,
                conversation_id,
                {
                    "context_usage": usage.context_usage,
                    "total_cost": usage.total_cost_usd,
                    "token_count": usage.context_tokens,
                },
            )

    def handle_agent_session_id(self, session_id: str, agent_session_id: str) -> None:
        """Record the agent-native session id reported by a participant process."""
        participant = parse_participant_session_id(session_id)
        if participant is None:
            return
        conversation_id, name = participant
        if self.router.registry.update_participant_stats(
            conversation_id, name, agent_session_id=agent_session_id
        ):
            self.router.emit_participants_changed(conversation_id)
