"""Tests for the pipe-delimited conversation log.

Tests cover:
- Escaping: backslash, pipe and newline survive a write/read cycle
- Parsing: escaped delimiters, malformed lines, blank lines
- Appending and reading: ordering, missing files, directory creation
- History formatting for moderator prompts
- Attachment naming
"""

from __future__ import annotations

import re
from pathlib import Path

import pytest

from groupchat.core.chat_log import (
    append_to_log,
    escape_content,
    format_history,
    parse_line,
    read_log,
    save_attachment,
    unescape_content,
)
from groupchat.core.models import LogEntry


# =============================================================================
# Escaping Tests
# =============================================================================


class TestEscaping:
    """Tests for escape_content / unescape_content."""

    @pytest.mark.parametrize(
        "content",
        [
            "plain text",
            "a|b|c",
            "line one\nline two",
            "C:\\path\\to\\file",
            "literal backslash-n: \\n",
            "backslash before pipe: \\|",
            "\\\\|\n|\\",
            "",
        ],
    )
    def test_escape_is_lossless(self, content):
        """Unescaping an escaped string yields the original."""
        assert unescape_content(escape_content(content)) == content

    def test_escaped_content_has_no_raw_newlines(self):
        """Escaped content fits on one line."""
        assert "\n" not in escape_content("one\ntwo\nthree")

    def test_escape_order(self):
        """Backslashes are doubled before pipes and newlines are escaped."""
        assert escape_content("a\\b|c\nd") == "a\\\\b\\|c\\nd"

    def test_literal_backslash_n_is_not_a_newline(self):
        """A backslash followed by 'n' reads back as two characters."""
        escaped = escape_content("\\n")
        assert escaped == "\\\\n"
        assert unescape_content(escaped) == "\\n"


# =============================================================================
# Parsing Tests
# =============================================================================


class TestParseLine:
    """Tests for parse_line."""

    def test_parse_simple_line(self):
        entry = parse_line("2024-01-15T10:30:00+00:00|user|Hello")
        assert entry == LogEntry(
            timestamp="2024-01-15T10:30:00+00:00", sender="user", content="Hello"
        )

    def test_escaped_pipe_in_content(self):
        entry = parse_line("2024-01-15T10:30:00+00:00|user|a\\|b")
        assert entry is not None
        assert entry.content == "a|b"

    def test_pipes_after_second_delimiter_belong_to_content(self):
        """Only the first two unescaped delimiters split fields."""
        entry = parse_line("ts|moderator|x\\|y\\|z")
        assert entry is not None
        assert entry.sender == "moderator"
        assert entry.content == "x|y|z"

    def test_escaped_backslash_before_delimiter(self):
        """An even run of backslashes leaves the following pipe unescaped."""
        entry = parse_line("ts|we\\\\|ird|content")
        assert entry is not None
        assert entry.sender == "we\\"
        assert entry.content == "ird|content"

    def test_line_without_two_delimiters_is_invalid(self):
        assert parse_line("no delimiters here") is None
        assert parse_line("ts|only-one") is None
        assert parse_line("ts|sender\\|escaped") is None


# =============================================================================
# Append / Read Tests
# =============================================================================


class TestAppendAndRead:
    """Tests for append_to_log and read_log."""

    def test_read_missing_log_returns_empty(self, tmp_path):
        """A log that was never written is an empty conversation."""
        assert read_log(tmp_path / "nope" / "chat.log") == []

    def test_append_creates_parent_directories(self, tmp_path):
        log_path = tmp_path / "chats" / "abc" / "chat.log"
        append_to_log(log_path, "user", "hi")
        assert log_path.exists()

    def test_entries_read_back_in_order(self, tmp_path):
        """N appends yield N entries with original sender and content."""
        log_path = tmp_path / "chat.log"
        messages = [
            ("user", "Hello @Reviewer"),
            ("moderator", "@Reviewer: please look\nat line 3 | 4"),
            ("Reviewer", "C:\\temp\\new is fine"),
            ("user", ""),
        ]
        for sender, content in messages:
            append_to_log(log_path, sender, content)

        entries = read_log(log_path)
        assert [(e.sender, e.content) for e in entries] == messages

    def test_one_line_per_message(self, tmp_path):
        log_path = tmp_path / "chat.log"
        append_to_log(log_path, "user", "multi\nline\nmessage")
        append_to_log(log_path, "moderator", "ok")
        lines = Path(log_path).read_text(encoding="utf-8").splitlines()
        assert len(lines) == 2

    def test_append_returns_written_entry(self, tmp_path):
        entry = append_to_log(tmp_path / "chat.log", "moderator", "done")
        assert entry.sender == "moderator"
        assert entry.content == "done"
        assert read_log(tmp_path / "chat.log")[0].timestamp == entry.timestamp

    def test_sender_with_pipe_is_escaped(self, tmp_path):
        log_path = tmp_path / "chat.log"
        append_to_log(log_path, "odd|name", "content")
        entries = read_log(log_path)
        assert entries[0].sender == "odd|name"
        assert entries[0].content == "content"

    def test_blank_and_malformed_lines_are_skipped(self, tmp_path):
        log_path = tmp_path / "chat.log"
        log_path.write_text(
            "2024-01-01T00:00:00+00:00|user|first\n"
            "\n"
            "garbage line\n"
            "2024-01-01T00:00:01+00:00|moderator|second\n",
            encoding="utf-8",
        )
        entries = read_log(log_path)
        assert [e.content for e in entries] == ["first", "second"]

    def test_timestamps_are_iso_8601(self, tmp_path):
        entry = append_to_log(tmp_path / "chat.log", "user", "x")
        assert re.match(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}", entry.timestamp)


# =============================================================================
# History Formatting Tests
# =============================================================================


class TestFormatHistory:
    """Tests for format_history."""

    def _entries(self, count: int) -> list[LogEntry]:
        return [LogEntry(timestamp="ts", sender="user", content=f"m{i}") for i in range(count)]

    def test_format(self):
        entries = [
            LogEntry(timestamp="ts", sender="user", content="hi"),
            LogEntry(timestamp="ts", sender="moderator", content="hello"),
        ]
        assert format_history(entries) == "[user]: hi\n[moderator]: hello"

    def test_limit_keeps_most_recent(self):
        history = format_history(self._entries(30), limit=20)
        lines = history.splitlines()
        assert len(lines) == 20
        assert lines[0] == "[user]: m10"
        assert lines[-1] == "[user]: m29"

    def test_zero_limit_is_empty(self):
        assert format_history(self._entries(3), limit=0) == ""


# =============================================================================
# Attachment Tests
# =============================================================================


class TestSaveAttachment:
    """Tests for save_attachment."""

    def test_keeps_original_extension(self, tmp_path):
        filename = save_attachment(tmp_path / "images", b"\x89PNG", "Screen Shot.JPG")
        assert filename.endswith(".jpg")
        assert (tmp_path / "images" / filename).read_bytes() == b"\x89PNG"

    def test_defaults_to_png(self, tmp_path):
        filename = save_attachment(tmp_path, b"data")
        assert re.match(r"^image-\d{14}-[0-9a-f]{8}\.png$", filename)

    def test_names_are_unique(self, tmp_path):
        names = {save_attachment(tmp_path, b"x", "a.png") for _ in range(5)}
        assert len(names) == 5
