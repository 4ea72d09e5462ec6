"""Outbound events for UI layers.

The router emits; whatever presents the conversation subscribes. A failing
subscriber is logged and never breaks message routing.
"""

import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

Handler = Callable[..., None]


class ChatEvent(str, Enum):
    """Events emitted by the orchestrator.

    MESSAGE: (conversation_id, LogEntry)
    PARTICIPANTS_CHANGED: (conversation_id, list[Participant])
    MODERATOR_USAGE: (conversation_id, dict with context_usage/total_cost/token_count)
    """

    MESSAGE = "message"
    PARTICIPANTS_CHANGED = "participants_changed"
    MODERATOR_USAGE = "moderator_usage"


class EventEmitter:
    """Thread-safe publish/subscribe registry."""

    def __init__(self) -> None:
        self._handlers: dict[ChatEvent, list[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def on(self, event: ChatEvent, handler: Handler) -> Callable[[], None]:
        """Subscribe a handler. Returns a callable that unsubscribes it."""
        with self._lock:
            self._handlers[event].append(handler)

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers[event]:
                    self._handlers[event].remove(handler)

        return unsubscribe

    def emit(self, event: ChatEvent, *args: Any) -> None:
        with self._lock:
            handlers = list(self._handlers[event])
        for handler in handlers:
            try:
                handler(*args)
            except Exception as e:
                logger.error(f"Handler for '{event.value}' event failed: {e}")
