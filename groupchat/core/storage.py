"""SQLite storage for conversation and participant metadata.

The chat log itself is a plain text file per conversation (see chat_log.py);
this database only holds what the router needs to look up: moderator
settings, file locations and the participant roster with its stats.

Layout under data_dir:
    state.db
    chats/{conversation_id}/chat.log
    chats/{conversation_id}/images/
"""

import logging
import shutil
import sqlite3
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from groupchat.core.models import (
    RESERVED_SENDERS,
    Conversation,
    ConversationNotFoundError,
    DuplicateParticipantError,
    Participant,
    ParticipantNotFoundError,
    utc_now,
)

logger = logging.getLogger(__name__)

LOG_FILENAME = "chat.log"
ATTACHMENTS_DIRNAME = "images"

_CONVERSATION_FIELDS = frozenset({"name", "moderator_agent_type", "moderator_session_id"})
_PARTICIPANT_FIELDS = frozenset(
    {
        "session_id",
        "agent_session_id",
        "last_activity",
        "last_summary",
        "message_count",
        "token_count",
        "total_cost",
        "context_usage",
    }
)


def _to_db(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _from_db_time(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class ConversationStore:
    """Conversation metadata backed by SQLite."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS conversations (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        moderator_agent_type TEXT NOT NULL,
        moderator_session_id TEXT,
        log_path TEXT NOT NULL,
        attachments_dir TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    );

    -- Roster order is insertion order (position)
    CREATE TABLE IF NOT EXISTS participants (
        position INTEGER PRIMARY KEY AUTOINCREMENT,
        conversation_id TEXT NOT NULL,
        name TEXT NOT NULL,
        agent_type TEXT NOT NULL,
        session_id TEXT NOT NULL,
        agent_session_id TEXT,
        added_at TIMESTAMP NOT NULL,
        last_activity TIMESTAMP,
        last_summary TEXT,
        message_count INTEGER DEFAULT 0,
        token_count INTEGER,
        total_cost REAL,
        context_usage INTEGER,
        UNIQUE(conversation_id, name),
        FOREIGN KEY (conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
    );

    CREATE INDEX IF NOT EXISTS idx_participants_conversation ON participants(conversation_id);
    """

    def __init__(self, data_dir: str | Path = ".groupchat"):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.db_path = self.data_dir / "state.db"
        self.chats_dir = self.data_dir / "chats"
        self._init_db()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections.

        Uses a 30-second busy timeout so a concurrent writer waits instead of
        failing immediately with "database is locked".
        """
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 30000")
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # --- Conversations ---

    def create_conversation(
        self,
        name: str,
        moderator_agent_type: str,
        conversation_id: str | None = None,
    ) -> Conversation:
        """Create a conversation and allocate its log path and attachment dir."""
        conversation_id = conversation_id or uuid.uuid4().hex[:12]
        chat_dir = self.chats_dir / conversation_id
        attachments_dir = chat_dir / ATTACHMENTS_DIRNAME
        attachments_dir.mkdir(parents=True, exist_ok=True)

        now = utc_now()
        conversation = Conversation(
            id=conversation_id,
            name=name,
            moderator_agent_type=moderator_agent_type,
            log_path=str(chat_dir / LOG_FILENAME),
            attachments_dir=str(attachments_dir),
            created_at=now,
            updated_at=now,
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO conversations (
                    id, name, moderator_agent_type, moderator_session_id,
                    log_path, attachments_dir, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    conversation.id,
                    conversation.name,
                    conversation.moderator_agent_type,
                    None,
                    conversation.log_path,
                    conversation.attachments_dir,
                    now.isoformat(),
                    now.isoformat(),
                ),
            )
        logger.info(f"Created group chat {conversation_id} ({name})")
        return conversation

    def load_conversation(self, conversation_id: str) -> Conversation | None:
        """Load a conversation with its participants, or None if absent."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
            if not row:
                return None
            participant_rows = conn.execute(
                "SELECT * FROM participants WHERE conversation_id = ? ORDER BY position",
                (conversation_id,),
            ).fetchall()
        return self._row_to_conversation(row, participant_rows)

    def require_conversation(self, conversation_id: str) -> Conversation:
        """Load a conversation or raise ConversationNotFoundError."""
        conversation = self.load_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    def list_conversations(self) -> list[Conversation]:
        with self._connect() as conn:
            ids = [
                row["id"]
                for row in conn.execute(
                    "SELECT id FROM conversations ORDER BY created_at, rowid"
                ).fetchall()
            ]
        conversations = []
        for conversation_id in ids:
            conversation = self.load_conversation(conversation_id)
            if conversation is not None:
                conversations.append(conversation)
        return conversations

    def update_conversation(self, conversation_id: str, **changes: Any) -> None:
        """Update conversation columns (name, moderator_agent_type, moderator_session_id).

        Raises:
            ValueError: If an unknown field is given
            ConversationNotFoundError: If the conversation does not exist
        """
        unknown = set(changes) - _CONVERSATION_FIELDS
        if unknown:
            raise ValueError(f"Cannot update conversation fields: {sorted(unknown)}")
        if not changes:
            return

        # Column names come from the allowlist above, never from callers
        assignments = ", ".join(f"{key} = ?" for key in changes)
        params = [_to_db(value) for value in changes.values()]
        params += [utc_now().isoformat(), conversation_id]
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE conversations SET {assignments}, updated_at = ? WHERE id = ?",
                params,
            )
            if cursor.rowcount == 0:
                raise ConversationNotFoundError(conversation_id)

    def delete_conversation(self, conversation_id: str) -> bool:
        """Delete a conversation, its roster, its log and its attachments.

        Returns False if the conversation did not exist.
        """
        conversation = self.load_conversation(conversation_id)
        if conversation is None:
            return False
        with self._connect() as conn:
            conn.execute("DELETE FROM participants WHERE conversation_id = ?", (conversation_id,))
            conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))

        chat_dir = Path(conversation.log_path).parent
        if chat_dir.exists():
            shutil.rmtree(chat_dir)
        logger.info(f"Deleted group chat {conversation_id}")
        return True

    # --- Participants ---

    def add_participant(self, conversation_id: str, participant: Participant) -> None:
        """Append a participant to the roster.

        Raises:
            ConversationNotFoundError: If the conversation does not exist
            DuplicateParticipantError: If the name is taken or reserved
        """
        if participant.name.lower() in RESERVED_SENDERS:
            raise DuplicateParticipantError(
                f"Participant name '{participant.name}' is reserved"
            )
        with self._connect() as conn:
            exists = conn.execute(
                "SELECT 1 FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
            if not exists:
                raise ConversationNotFoundError(conversation_id)
            try:
                conn.execute(
                    """
                    INSERT INTO participants (
                        conversation_id, name, agent_type, session_id, agent_session_id,
                        added_at, last_activity, last_summary, message_count,
                        token_count, total_cost, context_usage
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        conversation_id,
                        participant.name,
                        participant.agent_type,
                        participant.session_id,
                        participant.agent_session_id,
                        participant.added_at.isoformat(),
                        _to_db(participant.last_activity),
                        participant.last_summary,
                        participant.message_count,
                        participant.token_count,
                        participant.total_cost,
                        participant.context_usage,
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise DuplicateParticipantError(
                    f"Participant '{participant.name}' already exists in group chat "
                    f"{conversation_id}"
                ) from e
            conn.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (utc_now().isoformat(), conversation_id),
            )

    def update_participant(self, conversation_id: str, name: str, **changes: Any) -> None:
        """Merge partial changes into a participant's row.

        Raises:
            ValueError: If an unknown field is given
            ParticipantNotFoundError: If the participant does not exist
        """
        unknown = set(changes) - _PARTICIPANT_FIELDS
        if unknown:
            raise ValueError(f"Cannot update participant fields: {sorted(unknown)}")
        if not changes:
            return

        assignments = ", ".join(f"{key} = ?" for key in changes)
        params = [_to_db(value) for value in changes.values()]
        params += [conversation_id, name]
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE participants SET {assignments} WHERE conversation_id = ? AND name = ?",
                params,
            )
            if cursor.rowcount == 0:
                raise ParticipantNotFoundError(conversation_id, name)

    # --- Row mapping ---

    def _row_to_conversation(
        self, row: sqlite3.Row, participant_rows: list[sqlite3.Row]
    ) -> Conversation:
        return Conversation(
            id=row["id"],
            name=row["name"],
            moderator_agent_type=row["moderator_agent_type"],
            moderator_session_id=row["moderator_session_id"] or None,
            log_path=row["log_path"],
            attachments_dir=row["attachments_dir"],
            participants=[self._row_to_participant(p) for p in participant_rows],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def _row_to_participant(self, row: sqlite3.Row) -> Participant:
        return Participant(
            name=row["name"],
            agent_type=row["agent_type"],
            session_id=row["session_id"],
            agent_session_id=row["agent_session_id"],
            added_at=datetime.fromisoformat(row["added_at"]),
            last_activity=_from_db_time(row["last_activity"]),
            last_summary=row["last_summary"],
            message_count=row["message_count"] or 0,
            token_count=row["token_count"],
            total_cost=row["total_cost"],
            context_usage=row["context_usage"],
        )
