"""Prompt context models, rebuilt per request."""

from datetime import datetime, timezone
from typing import Any, Literal
from pydantic import BaseModel, Field

from haven_models.crisis import RiskLevel


class UserProfileSnippet(BaseModel):
    user_id: str
    name: str | None = None
    joined_at: datetime | None = None


class JournalSnapshot(BaseModel):
    """A recent journal entry, truncated for prompting."""

    content: str
    mood: int | None = None
    date: datetime | None = None
    sentiment_score: float | None = None
    risk_level: RiskLevel | None = None


class HistoryItem(BaseModel):
    role: str
    content: str
    date: datetime | None = None


class ConversationBlock(BaseModel):
    type: str
    message_count: int = 0
    messages: list[HistoryItem] = Field(default_factory=list)


class CurrentJournal(BaseModel):
    content: str
    mood: int | None = None
    created_at: datetime | None = None


class Patterns(BaseModel):
    """Behavioural patterns derived from recent journals."""

    mood_trend: Literal["improving", "declining", "stable"] | None = None
    average_mood: float | None = None
    sentiment_trend: Literal["positive", "negative", "neutral"] | None = None
    recent_risk_level: RiskLevel | None = None
    common_themes: list[str] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return (
            self.mood_trend is None
            and self.sentiment_trend is None
            and self.recent_risk_level is None
            and not self.common_themes
        )


class Preferences(BaseModel):
    preferred_topics: list[str] = Field(default_factory=list)
    communication_style: Literal["supportive", "analytical", "balanced"] = "balanced"
    response_length: Literal["short", "medium", "long"] = "medium"


class ContextMetadata(BaseModel):
    built_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    time_range_days: int = 30
    included_sources: list[str] = Field(default_factory=list)
    minimal: bool = False
    truncated: bool = False


class Context(BaseModel):
    """Bounded set of profile, journal and history data for one request."""

    user: UserProfileSnippet | None = None
    recent_journals: list[JournalSnapshot] = Field(default_factory=list)
    conversation_history: list[HistoryItem] = Field(default_factory=list)
    conversation: ConversationBlock | None = None
    current_journal: CurrentJournal | None = None
    patterns: Patterns = Field(default_factory=Patterns)
    preferences: Preferences = Field(default_factory=Preferences)
    metadata: ContextMetadata = Field(default_factory=ContextMetadata)

    def to_prompt_dict(self) -> dict[str, Any]:
        """Serializable view used for token estimation."""
        return self.model_dump(mode="json", exclude={"metadata"})
