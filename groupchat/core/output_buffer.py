"""Bounded buffering of streamed agent output.

Moderator and participant output is buffered per session and only routed
when the process exits, so streaming chunks never produce duplicate
messages. Chunks are kept in a list (O(1) append, joined once on read)
and the running length is tracked incrementally.
"""

import logging
import threading
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

MAX_BUFFER_SIZE = 10 * 1024 * 1024  # 10 MiB of text per session
TRUNCATION_MARKER = "\n\n[OUTPUT TRUNCATED - exceeded buffer limit]"


@dataclass
class _SessionBuffer:
    chunks: list[str] = field(default_factory=list)
    total_length: int = 0
    truncated: bool = False


class OutputBufferRegistry:
    """Per-session output buffers with a hard size cap.

    Once a session's buffer would exceed the cap, the marker is appended
    exactly once and every later chunk is dropped. The marker does not
    count toward the reported length.

    Appends for one session must arrive in order from the stream that owns
    it; the lock only protects the session map.
    """

    def __init__(self, max_size: int = MAX_BUFFER_SIZE):
        self.max_size = max_size
        self._buffers: dict[str, _SessionBuffer] = {}
        self._lock = threading.Lock()

    def _get_or_create(self, session_id: str) -> _SessionBuffer:
        with self._lock:
            buffer = self._buffers.get(session_id)
            if buffer is None:
                buffer = _SessionBuffer()
                self._buffers[session_id] = buffer
            return buffer

    def append(self, session_id: str, chunk: str) -> int:
        """Append a chunk and return the cumulative buffered length."""
        buffer = self._get_or_create(session_id)

        if buffer.truncated:
            return buffer.total_length

        if buffer.total_length + len(chunk) > self.max_size:
            buffer.truncated = True
            buffer.chunks.append(TRUNCATION_MARKER)
            logger.warning(
                f"Output for session {session_id} exceeded {self.max_size} chars; "
                "further output is dropped"
            )
            return buffer.total_length

        buffer.chunks.append(chunk)
        buffer.total_length += len(chunk)
        return buffer.total_length

    def read_and_join(self, session_id: str) -> str | None:
        """Return the buffered output, or None if nothing was ever appended."""
        with self._lock:
            buffer = self._buffers.get(session_id)
        if buffer is None or not buffer.chunks:
            return None
        return "".join(buffer.chunks)

    def clear(self, session_id: str) -> None:
        """Discard a session's buffer. Safe to call more than once."""
        with self._lock:
            self._buffers.pop(session_id, None)

    def has(self, session_id: str) -> bool:
        with self._lock:
            buffer = self._buffers.get(session_id)
        return buffer is not None and len(buffer.chunks) > 0

    def is_truncated(self, session_id: str) -> bool:
        with self._lock:
            buffer = self._buffers.get(session_id)
        return buffer is not None and buffer.truncated

    def length(self, session_id: str) -> int:
        """Buffered length for a session (0 when absent)."""
        with self._lock:
            buffer = self._buffers.get(session_id)
        return buffer.total_length if buffer else 0

    def clear_all(self) -> None:
        with self._lock:
            self._buffers.clear()
