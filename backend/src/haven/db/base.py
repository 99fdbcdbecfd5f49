"""Store contract used by the AI pipeline.

The pipeline only needs CRUD-by-id and a few filtered queries; the
implementations live in ``memory.py`` and ``postgres.py``.
"""

from datetime import datetime
from typing import Any, Protocol

from haven_models import (
    AdminAlert,
    Conversation,
    ConversationType,
    JournalAnalysis,
    JournalEntry,
    Message,
    MessageMetadata,
    MessageStatus,
    RiskLevel,
    StreamingState,
    User,
)


class Store(Protocol):
    """Persistence collaborator for conversations, messages, journals and users."""

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def ensure_tables_exist(self) -> None: ...

    # Conversations

    async def create_conversation(
        self,
        user_id: str,
        type: ConversationType = ConversationType.GENERAL_CHAT,
        title: str | None = None,
        journal_entry_id: str | None = None,
    ) -> Conversation: ...

    async def get_conversation(self, conversation_id: str) -> Conversation | None: ...

    async def list_conversations(self, user_id: str, limit: int = 50) -> list[Conversation]: ...

    async def mark_crisis(self, conversation_id: str, level: RiskLevel) -> None:
        """Set status=crisis. Never lowers an already recorded crisis level."""
        ...

    async def increment_message_count(self, conversation_id: str, by: int = 1) -> int:
        """Atomically bump the counter and last_message_at; return the new count."""
        ...

    # Messages

    async def create_message(self, message: Message) -> Message: ...

    async def get_message(self, message_id: str) -> Message | None: ...

    async def update_message(
        self,
        message_id: str,
        *,
        content: str | None = None,
        status: MessageStatus | None = None,
        error_message: str | None = None,
        metadata: MessageMetadata | None = None,
        streaming: StreamingState | None = None,
    ) -> None: ...

    async def get_messages(self, conversation_id: str) -> list[Message]: ...

    async def get_recent_messages(self, conversation_id: str, limit: int = 10) -> list[Message]:
        """Most recent ``limit`` messages, returned in chronological order."""
        ...

    async def get_recent_user_messages(self, user_id: str, limit: int = 10) -> list[Message]:
        """Most recent messages across all of a user's conversations, chronological."""
        ...

    async def get_latest_sending_message(self, conversation_id: str) -> Message | None: ...

    # Journals

    async def create_journal(self, entry: JournalEntry) -> JournalEntry: ...

    async def get_journal(self, journal_id: str) -> JournalEntry | None: ...

    async def get_recent_journals(
        self, user_id: str, limit: int, since: datetime
    ) -> list[JournalEntry]:
        """Non-deleted entries created after ``since``, newest first."""
        ...

    async def save_journal_analysis(self, journal_id: str, analysis: JournalAnalysis) -> None: ...

    # Users

    async def create_user(self, user: User) -> User: ...

    async def get_user(self, user_id: str) -> User | None: ...

    async def list_admins(self) -> list[User]: ...

    # Notifications and analytics

    async def create_notifications(self, alerts: list[AdminAlert]) -> None: ...

    async def log_event(self, user_id: str, event_type: str, data: dict[str, Any]) -> None: ...
