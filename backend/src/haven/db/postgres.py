"""PostgreSQL store for conversations, messages and journals."""

import json
import asyncpg
from datetime import datetime, timezone
from typing import Any
from contextlib import asynccontextmanager

from haven_models import (
    AdminAlert,
    Conversation,
    ConversationStatus,
    ConversationType,
    JournalAnalysis,
    JournalEntry,
    Message,
    MessageMetadata,
    MessageRole,
    MessageStatus,
    RiskLevel,
    StreamingState,
    User,
)
from haven.config import settings


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    name TEXT,
    email TEXT,
    role TEXT NOT NULL DEFAULT 'user',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_users_role ON users(role);

CREATE TABLE IF NOT EXISTS journal_entries (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    content TEXT NOT NULL,
    mood INTEGER,
    tags TEXT[] DEFAULT '{}',
    ai_analysis JSONB,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    deleted_at TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS idx_journal_entries_user ON journal_entries(user_id, created_at DESC);

CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    type TEXT NOT NULL DEFAULT 'general-chat',
    status TEXT NOT NULL DEFAULT 'active',
    title TEXT,
    journal_entry_id TEXT,
    message_count INTEGER NOT NULL DEFAULT 0,
    crisis_detected BOOLEAN NOT NULL DEFAULT FALSE,
    crisis_level TEXT,
    crisis_timestamp TIMESTAMPTZ,
    last_message_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_conversations_user_id ON conversations(user_id);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL REFERENCES conversations(id),
    role TEXT NOT NULL,
    content TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'delivered',
    error_message TEXT,
    metadata JSONB DEFAULT '{}',
    streaming JSONB,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, created_at);

CREATE TABLE IF NOT EXISTS notifications (
    id BIGSERIAL PRIMARY KEY,
    user_id TEXT NOT NULL,
    type TEXT NOT NULL,
    title TEXT NOT NULL,
    priority TEXT NOT NULL DEFAULT 'normal',
    metadata JSONB DEFAULT '{}',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS analytics_events (
    id BIGSERIAL PRIMARY KEY,
    user_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    event_data JSONB DEFAULT '{}',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""

# Keeps the stored level when it is already higher than the incoming one
_ESCALATE_LEVEL_SQL = """
CASE
    WHEN crisis_level = 'high' THEN 'high'
    WHEN crisis_level = 'medium' AND $2::text = 'low' THEN 'medium'
    ELSE $2::text
END
"""


def _json(value: Any) -> Any:
    if value is None or isinstance(value, (dict, list)):
        return value
    return json.loads(value)


class Database:
    """PostgreSQL implementation of the store contract."""

    def __init__(self, database_url: str | None = None):
        self._database_url = database_url or settings.database_url
        self._pool: asyncpg.Pool | None = None

    async def connect(self):
        """Create connection pool."""
        if not self._database_url:
            return
        self._pool = await asyncpg.create_pool(
            self._database_url,
            min_size=2,
            max_size=10,
        )

    async def disconnect(self):
        """Close connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def connection(self):
        """Get a connection from the pool."""
        if not self._pool:
            raise RuntimeError("Database not connected")
        async with self._pool.acquire() as conn:
            yield conn

    async def ensure_tables_exist(self):
        """Create tables if they don't exist."""
        if not self._pool:
            return
        async with self.connection() as conn:
            await conn.execute(SCHEMA_SQL)

    # ============= Conversation Operations =============

    async def create_conversation(
        self,
        user_id: str,
        type: ConversationType = ConversationType.GENERAL_CHAT,
        title: str | None = None,
        journal_entry_id: str | None = None,
    ) -> Conversation:
        """Create a new conversation."""
        conversation = Conversation(
            user_id=user_id,
            type=type,
            title=title or "New Conversation",
            journal_entry_id=journal_entry_id,
        )
        async with self.connection() as conn:
            await conn.execute(
                """
                INSERT INTO conversations
                    (id, user_id, type, status, title, journal_entry_id, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                conversation.id,
                conversation.user_id,
                conversation.type.value,
                conversation.status.value,
                conversation.title,
                conversation.journal_entry_id,
                conversation.created_at,
                conversation.updated_at,
            )
        return conversation

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        """Get a conversation by ID."""
        async with self.connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM conversations WHERE id = $1", conversation_id
            )
        return self._row_to_conversation(row) if row else None

    async def list_conversations(self, user_id: str, limit: int = 50) -> list[Conversation]:
        """List conversations for a user."""
        async with self.connection() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM conversations
                WHERE user_id = $1
                ORDER BY updated_at DESC
                LIMIT $2
                """,
                user_id,
                limit,
            )
        return [self._row_to_conversation(row) for row in rows]

    async def mark_crisis(self, conversation_id: str, level: RiskLevel) -> None:
        """Flip a conversation into crisis status."""
        now = datetime.now(timezone.utc)
        async with self.connection() as conn:
            await conn.execute(
                f"""
                UPDATE conversations
                SET status = 'crisis',
                    crisis_detected = TRUE,
                    crisis_level = {_ESCALATE_LEVEL_SQL},
                    crisis_timestamp = $3,
                    updated_at = $3
                WHERE id = $1
                """,
                conversation_id,
                level.value,
                now,
            )

    async def increment_message_count(self, conversation_id: str, by: int = 1) -> int:
        """Atomically increment the message counter."""
        now = datetime.now(timezone.utc)
        async with self.connection() as conn:
            count = await conn.fetchval(
                """
                UPDATE conversations
                SET message_count = message_count + $2,
                    last_message_at = $3,
                    updated_at = $3
                WHERE id = $1
                RETURNING message_count
                """,
                conversation_id,
                by,
                now,
            )
        return count or 0

    def _row_to_conversation(self, row: asyncpg.Record) -> Conversation:
        return Conversation(
            id=row["id"],
            user_id=row["user_id"],
            type=ConversationType(row["type"]),
            status=ConversationStatus(row["status"]),
            title=row["title"],
            journal_entry_id=row["journal_entry_id"],
            message_count=row["message_count"],
            crisis_detected=row["crisis_detected"],
            crisis_level=RiskLevel(row["crisis_level"]) if row["crisis_level"] else None,
            crisis_timestamp=row["crisis_timestamp"],
            last_message_at=row["last_message_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # ============= Message Operations =============

    async def create_message(self, message: Message) -> Message:
        """Insert a message and touch the parent conversation."""
        async with self.connection() as conn:
            await conn.execute(
                """
                INSERT INTO messages
                    (id, conversation_id, role, content, status, error_message, metadata, streaming, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                """,
                message.id,
                message.conversation_id,
                message.role.value,
                message.content,
                message.status.value,
                message.error_message,
                message.metadata.model_dump_json(),
                message.streaming.model_dump_json() if message.streaming else None,
                message.created_at,
            )
            await conn.execute(
                "UPDATE conversations SET updated_at = $1 WHERE id = $2",
                datetime.now(timezone.utc),
                message.conversation_id,
            )
        return message

    async def get_message(self, message_id: str) -> Message | None:
        async with self.connection() as conn:
            row = await conn.fetchrow("SELECT * FROM messages WHERE id = $1", message_id)
        return self._row_to_message(row) if row else None

    async def update_message(
        self,
        message_id: str,
        *,
        content: str | None = None,
        status: MessageStatus | None = None,
        error_message: str | None = None,
        metadata: MessageMetadata | None = None,
        streaming: StreamingState | None = None,
    ) -> None:
        """Update message fields."""
        updates = []
        params: list[Any] = []
        param_idx = 1

        for column, value in (
            ("content", content),
            ("status", status.value if status else None),
            ("error_message", error_message),
            ("metadata", metadata.model_dump_json() if metadata else None),
            ("streaming", streaming.model_dump_json() if streaming else None),
        ):
            if value is not None:
                updates.append(f"{column} = ${param_idx}")
                params.append(value)
                param_idx += 1

        params.append(message_id)

        if updates:
            async with self.connection() as conn:
                await conn.execute(
                    f"UPDATE messages SET {', '.join(updates)} WHERE id = ${param_idx}",
                    *params,
                )

    async def get_messages(self, conversation_id: str) -> list[Message]:
        """Get all messages for a conversation."""
        async with self.connection() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM messages
                WHERE conversation_id = $1
                ORDER BY created_at ASC
                """,
                conversation_id,
            )
        return [self._row_to_message(row) for row in rows]

    async def get_recent_messages(self, conversation_id: str, limit: int = 10) -> list[Message]:
        """Get the last N messages, oldest first."""
        async with self.connection() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM messages
                WHERE conversation_id = $1
                ORDER BY created_at DESC
                LIMIT $2
                """,
                conversation_id,
                limit,
            )
        return [self._row_to_message(row) for row in reversed(rows)]

    async def get_recent_user_messages(self, user_id: str, limit: int = 10) -> list[Message]:
        async with self.connection() as conn:
            rows = await conn.fetch(
                """
                SELECT m.* FROM messages m
                JOIN conversations c ON c.id = m.conversation_id
                WHERE c.user_id = $1
                ORDER BY m.created_at DESC
                LIMIT $2
                """,
                user_id,
                limit,
            )
        return [self._row_to_message(row) for row in reversed(rows)]

    async def get_latest_sending_message(self, conversation_id: str) -> Message | None:
        async with self.connection() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM messages
                WHERE conversation_id = $1 AND status = 'sending'
                ORDER BY created_at DESC
                LIMIT 1
                """,
                conversation_id,
            )
        return self._row_to_message(row) if row else None

    def _row_to_message(self, row: asyncpg.Record) -> Message:
        streaming = _json(row["streaming"])
        return Message(
            id=row["id"],
            conversation_id=row["conversation_id"],
            role=MessageRole(row["role"]),
            content=row["content"],
            status=MessageStatus(row["status"]),
            error_message=row["error_message"],
            metadata=MessageMetadata(**(_json(row["metadata"]) or {})),
            streaming=StreamingState(**streaming) if streaming else None,
            created_at=row["created_at"],
        )

    # ============= Journal Operations =============

    async def create_journal(self, entry: JournalEntry) -> JournalEntry:
        async with self.connection() as conn:
            await conn.execute(
                """
                INSERT INTO journal_entries (id, user_id, content, mood, tags, created_at)
                VALUES ($1, $2, $3, $4, $5, $6)
                """,
                entry.id,
                entry.user_id,
                entry.content,
                entry.mood,
                entry.tags,
                entry.created_at,
            )
        return entry

    async def get_journal(self, journal_id: str) -> JournalEntry | None:
        async with self.connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM journal_entries WHERE id = $1", journal_id
            )
        return self._row_to_journal(row) if row else None

    async def get_recent_journals(
        self, user_id: str, limit: int, since: datetime
    ) -> list[JournalEntry]:
        async with self.connection() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM journal_entries
                WHERE user_id = $1 AND created_at >= $2 AND deleted_at IS NULL
                ORDER BY created_at DESC
                LIMIT $3
                """,
                user_id,
                since,
                limit,
            )
        return [self._row_to_journal(row) for row in rows]

    async def save_journal_analysis(self, journal_id: str, analysis: JournalAnalysis) -> None:
        async with self.connection() as conn:
            await conn.execute(
                "UPDATE journal_entries SET ai_analysis = $1 WHERE id = $2",
                analysis.model_dump_json(),
                journal_id,
            )

    def _row_to_journal(self, row: asyncpg.Record) -> JournalEntry:
        analysis = _json(row["ai_analysis"])
        return JournalEntry(
            id=row["id"],
            user_id=row["user_id"],
            content=row["content"],
            mood=row["mood"],
            tags=list(row["tags"]) if row["tags"] else [],
            ai_analysis=JournalAnalysis(**analysis) if analysis else None,
            created_at=row["created_at"],
            deleted_at=row["deleted_at"],
        )

    # ============= User Operations =============

    async def create_user(self, user: User) -> User:
        async with self.connection() as conn:
            await conn.execute(
                """
                INSERT INTO users (id, name, email, role, created_at)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (id) DO NOTHING
                """,
                user.id,
                user.name,
                user.email,
                user.role,
                user.created_at,
            )
        return user

    async def get_user(self, user_id: str) -> User | None:
        async with self.connection() as conn:
            row = await conn.fetchrow("SELECT * FROM users WHERE id = $1", user_id)
        return User(**dict(row)) if row else None

    async def list_admins(self) -> list[User]:
        async with self.connection() as conn:
            rows = await conn.fetch("SELECT * FROM users WHERE role = 'admin'")
        return [User(**dict(row)) for row in rows]

    # ============= Notifications & Analytics =============

    async def create_notifications(self, alerts: list[AdminAlert]) -> None:
        if not alerts:
            return
        async with self.connection() as conn:
            await conn.executemany(
                """
                INSERT INTO notifications (user_id, type, title, priority, metadata, created_at)
                VALUES ($1, 'crisis_alert', $2, $3, $4, $5)
                """,
                [
                    (
                        alert.admin_id,
                        alert.title,
                        alert.priority,
                        alert.model_dump_json(exclude={"admin_id", "title", "priority"}),
                        alert.timestamp,
                    )
                    for alert in alerts
                ],
            )

    async def log_event(self, user_id: str, event_type: str, data: dict[str, Any]) -> None:
        async with self.connection() as conn:
            await conn.execute(
                """
                INSERT INTO analytics_events (user_id, event_type, event_data)
                VALUES ($1, $2, $3)
                """,
                user_id,
                event_type,
                json.dumps(data, default=str),
            )
