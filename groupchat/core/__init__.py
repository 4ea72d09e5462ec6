"""Core modules for the group chat orchestrator."""

from groupchat.core.models import (
    Conversation,
    LogEntry,
    Participant,
    SessionInfo,
)
from groupchat.core.output_buffer import OutputBufferRegistry
from groupchat.core.router import MessageRouter
from groupchat.core.sessions import SessionRegistry
from groupchat.core.storage import ConversationStore

__all__ = [
    "Conversation",
    "ConversationStore",
    "LogEntry",
    "MessageRouter",
    "OutputBufferRegistry",
    "Participant",
    "SessionInfo",
    "SessionRegistry",
]
