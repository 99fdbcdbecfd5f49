"""Shared Pydantic models for haven."""

from haven_models.crisis import (
    RiskLevel,
    CrisisAssessment,
    CrisisResources,
    Hotlines,
    NationalHotline,
    CampusContact,
    AdminAlert,
)
from haven_models.conversation import (
    Conversation,
    ConversationType,
    ConversationStatus,
    Message,
    MessageRole,
    MessageStatus,
    MessageMetadata,
    StreamingState,
)
from haven_models.journal import (
    JournalEntry,
    JournalAnalysis,
    Sentiment,
    RiskSummary,
)
from haven_models.context import (
    Context,
    ContextMetadata,
    ConversationBlock,
    CurrentJournal,
    HistoryItem,
    JournalSnapshot,
    Patterns,
    Preferences,
    UserProfileSnippet,
)
from haven_models.user import User

__all__ = [
    # Crisis
    "RiskLevel",
    "CrisisAssessment",
    "CrisisResources",
    "Hotlines",
    "NationalHotline",
    "CampusContact",
    "AdminAlert",
    # Conversations
    "Conversation",
    "ConversationType",
    "ConversationStatus",
    "Message",
    "MessageRole",
    "MessageStatus",
    "MessageMetadata",
    "StreamingState",
    # Journals
    "JournalEntry",
    "JournalAnalysis",
    "Sentiment",
    "RiskSummary",
    # Context
    "Context",
    "ContextMetadata",
    "ConversationBlock",
    "CurrentJournal",
    "HistoryItem",
    "JournalSnapshot",
    "Patterns",
    "Preferences",
    "UserProfileSnippet",
    # Users
    "User",
]
