"""In-process store used for local development and tests."""

import asyncio
from datetime import datetime, timezone
from typing import Any

from haven_models import (
    AdminAlert,
    Conversation,
    ConversationStatus,
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


class InMemoryStore:
    """Dict-backed implementation of the store contract.

    Mutations that the contract calls atomic run under a single lock.
    """

    def __init__(self):
        self.conversations: dict[str, Conversation] = {}
        self.messages: dict[str, Message] = {}
        self.journals: dict[str, JournalEntry] = {}
        self.users: dict[str, User] = {}
        self.notifications: list[AdminAlert] = []
        self.events: list[dict[str, Any]] = []
        self._lock = asyncio.Lock()

    # ============= Lifecycle =============

    async def connect(self):
        """Nothing to connect; present so the app treats every store alike."""

    async def disconnect(self):
        pass

    async def ensure_tables_exist(self):
        pass

    # ============= Conversation Operations =============

    async def create_conversation(
        self,
        user_id: str,
        type: ConversationType = ConversationType.GENERAL_CHAT,
        title: str | None = None,
        journal_entry_id: str | None = None,
    ) -> Conversation:
        conversation = Conversation(
            user_id=user_id,
            type=type,
            title=title or "New Conversation",
            journal_entry_id=journal_entry_id,
        )
        self.conversations[conversation.id] = conversation
        return conversation.model_copy()

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        conversation = self.conversations.get(conversation_id)
        return conversation.model_copy() if conversation else None

    async def list_conversations(self, user_id: str, limit: int = 50) -> list[Conversation]:
        owned = [c for c in self.conversations.values() if c.user_id == user_id]
        owned.sort(key=lambda c: c.updated_at, reverse=True)
        return [c.model_copy() for c in owned[:limit]]

    async def mark_crisis(self, conversation_id: str, level: RiskLevel) -> None:
        async with self._lock:
            conversation = self.conversations.get(conversation_id)
            if not conversation:
                return
            now = datetime.now(timezone.utc)
            conversation.status = ConversationStatus.CRISIS
            conversation.crisis_detected = True
            conversation.crisis_level = (
                RiskLevel.max(conversation.crisis_level, level)
                if conversation.crisis_level
                else level
            )
            conversation.crisis_timestamp = now
            conversation.updated_at = now

    async def increment_message_count(self, conversation_id: str, by: int = 1) -> int:
        async with self._lock:
            conversation = self.conversations.get(conversation_id)
            if not conversation:
                return 0
            now = datetime.now(timezone.utc)
            conversation.message_count += by
            conversation.last_message_at = now
            conversation.updated_at = now
            return conversation.message_count

    # ============= Message Operations =============

    async def create_message(self, message: Message) -> Message:
        self.messages[message.id] = message.model_copy(deep=True)
        conversation = self.conversations.get(message.conversation_id)
        if conversation:
            conversation.updated_at = datetime.now(timezone.utc)
        return message

    async def get_message(self, message_id: str) -> Message | None:
        message = self.messages.get(message_id)
        return message.model_copy(deep=True) if message else None

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
        message = self.messages.get(message_id)
        if not message:
            return
        if content is not None:
            message.content = content
        if status is not None:
            message.status = status
        if error_message is not None:
            message.error_message = error_message
        if metadata is not None:
            message.metadata = metadata.model_copy()
        if streaming is not None:
            message.streaming = streaming.model_copy()

    def _ordered(self, conversation_id: str) -> list[Message]:
        # Stable on insertion order when timestamps collide
        return sorted(
            (m for m in self.messages.values() if m.conversation_id == conversation_id),
            key=lambda m: m.created_at,
        )

    async def get_messages(self, conversation_id: str) -> list[Message]:
        return [m.model_copy(deep=True) for m in self._ordered(conversation_id)]

    async def get_recent_messages(self, conversation_id: str, limit: int = 10) -> list[Message]:
        ordered = self._ordered(conversation_id)
        return [m.model_copy(deep=True) for m in ordered[-limit:]] if limit > 0 else []

    async def get_recent_user_messages(self, user_id: str, limit: int = 10) -> list[Message]:
        conversation_ids = {c.id for c in self.conversations.values() if c.user_id == user_id}
        owned = sorted(
            (m for m in self.messages.values() if m.conversation_id in conversation_ids),
            key=lambda m: m.created_at,
        )
        return [m.model_copy(deep=True) for m in owned[-limit:]] if limit > 0 else []

    async def get_latest_sending_message(self, conversation_id: str) -> Message | None:
        for message in reversed(self._ordered(conversation_id)):
            if message.status == MessageStatus.SENDING:
                return message.model_copy(deep=True)
        return None

    # ============= Journal Operations =============

    async def create_journal(self, entry: JournalEntry) -> JournalEntry:
        self.journals[entry.id] = entry.model_copy(deep=True)
        return entry

    async def get_journal(self, journal_id: str) -> JournalEntry | None:
        entry = self.journals.get(journal_id)
        return entry.model_copy(deep=True) if entry else None

    async def get_recent_journals(
        self, user_id: str, limit: int, since: datetime
    ) -> list[JournalEntry]:
        entries = [
            j
            for j in self.journals.values()
            if j.user_id == user_id and j.deleted_at is None and j.created_at >= since
        ]
        entries.sort(key=lambda j: j.created_at, reverse=True)
        return [j.model_copy(deep=True) for j in entries[:limit]]

    async def save_journal_analysis(self, journal_id: str, analysis: JournalAnalysis) -> None:
        entry = self.journals.get(journal_id)
        if entry:
            entry.ai_analysis = analysis.model_copy(deep=True)

    # ============= User Operations =============

    async def create_user(self, user: User) -> User:
        self.users[user.id] = user
        return user

    async def get_user(self, user_id: str) -> User | None:
        return self.users.get(user_id)

    async def list_admins(self) -> list[User]:
        return [u for u in self.users.values() if u.role == "admin"]

    # ============= Notifications & Analytics =============

    async def create_notifications(self, alerts: list[AdminAlert]) -> None:
        self.notifications.extend(alerts)

    async def log_event(self, user_id: str, event_type: str, data: dict[str, Any]) -> None:
        self.events.append(
            {
                "user_id": user_id,
                "event_type": event_type,
                "data": data,
                "created_at": datetime.now(timezone.utc),
            }
        )
