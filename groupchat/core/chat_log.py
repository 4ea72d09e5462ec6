"""Pipe-delimited, append-only conversation log.

Log format: TIMESTAMP|SENDER|CONTENT (one record per line)
- TIMESTAMP: ISO 8601 UTC (e.g. 2024-01-15T10:30:00.000000+00:00)
- SENDER: "user", "moderator", or a participant name
- CONTENT: message text with backslashes, pipes and newlines escaped

Escaping is applied in a fixed order on write (backslash, then pipe, then
newline) and reversed with a single left-to-right scan that consumes each
two-character token atomically. Sequential replace() calls are NOT
equivalent: content holding a literal backslash followed by "n" would be
read back as a newline.
"""

import re
import uuid
from collections.abc import Sequence
from pathlib import Path

from groupchat.core.models import LogEntry, utc_now

DELIMITER = "|"
DEFAULT_ATTACHMENT_EXTENSION = ".png"

_UNESCAPE_PATTERN = re.compile(r"\\(\\|\||n)")
_UNESCAPE_MAP = {"\\": "\\", "|": "|", "n": "\n"}


def escape_content(content: str) -> str:
    """Escape content for storage on a single log line."""
    return content.replace("\\", "\\\\").replace("|", "\\|").replace("\n", "\\n")


def unescape_content(escaped: str) -> str:
    """Restore original content from its escaped log form."""
    return _UNESCAPE_PATTERN.sub(lambda m: _UNESCAPE_MAP[m.group(1)], escaped)


def _find_unescaped_delimiters(line: str, count: int = 2) -> list[int]:
    """Return positions of the first `count` delimiters not escaped by a backslash.

    A delimiter is escaped when preceded by an odd run of backslashes
    ("\\|" is an escaped backslash followed by a real delimiter).
    """
    positions: list[int] = []
    backslashes = 0
    for i, char in enumerate(line):
        if char == "\\":
            backslashes += 1
            continue
        if char == DELIMITER and backslashes % 2 == 0:
            positions.append(i)
            if len(positions) == count:
                break
        backslashes = 0
    return positions


def parse_line(line: str) -> LogEntry | None:
    """Parse one log line, or None if it lacks two unescaped delimiters."""
    positions = _find_unescaped_delimiters(line)
    if len(positions) < 2:
        return None
    first, second = positions
    return LogEntry(
        timestamp=line[:first],
        sender=unescape_content(line[first + 1 : second]),
        content=unescape_content(line[second + 1 :]),
    )


def append_to_log(log_path: str | Path, sender: str, content: str) -> LogEntry:
    """Append one message to the log, creating parent directories as needed.

    Returns the entry as written so callers can emit it without re-reading.
    """
    path = Path(log_path)
    timestamp = utc_now().isoformat()
    line = f"{timestamp}{DELIMITER}{escape_content(sender)}{DELIMITER}{escape_content(content)}\n"

    path.parent.mkdir(parents=True, exist_ok=True)
    # newline="" keeps "\n" as-is on every platform
    with open(path, "a", encoding="utf-8", newline="") as f:
        f.write(line)

    return LogEntry(timestamp=timestamp, sender=sender, content=content)


def read_log(log_path: str | Path) -> list[LogEntry]:
    """Read and parse every entry in the log.

    A missing file is an empty conversation, not an error. Other I/O
    errors propagate.
    """
    try:
        with open(log_path, encoding="utf-8", newline="") as f:
            text = f.read()
    except FileNotFoundError:
        return []

    entries: list[LogEntry] = []
    for line in text.split("\n"):
        if not line.strip():
            continue
        entry = parse_line(line)
        if entry is not None:
            entries.append(entry)
    return entries


def format_history(entries: Sequence[LogEntry], limit: int = 20) -> str:
    """Render the most recent entries as "[sender]: content" lines."""
    recent = entries[-limit:] if limit > 0 else []
    return "\n".join(f"[{entry.sender}]: {entry.content}" for entry in recent)


def save_attachment(
    directory: str | Path,
    data: bytes,
    original_filename: str | None = None,
) -> str:
    """Write an attachment under a unique name and return that filename.

    The caller embeds the returned filename in message content by reference;
    the log itself never holds binary data.
    """
    suffix = Path(original_filename).suffix if original_filename else ""
    extension = suffix.lower() if suffix else DEFAULT_ATTACHMENT_EXTENSION

    target_dir = Path(directory)
    target_dir.mkdir(parents=True, exist_ok=True)

    filename = f"image-{utc_now().strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:8]}{extension}"
    (target_dir / filename).write_bytes(data)
    return filename
