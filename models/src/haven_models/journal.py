"""Journal entry and analysis models."""

from datetime import datetime, timezone
from typing import Literal
from pydantic import BaseModel, Field
import uuid

from haven_models.crisis import RiskLevel


class Sentiment(BaseModel):
    score: float = Field(0.0, ge=-1.0, le=1.0, description="-1 very negative .. 1 very positive")
    label: Literal["positive", "neutral", "negative"] = "neutral"
    confidence: float = Field(0.5, ge=0.0, le=1.0)
    primary_emotions: list[str] = Field(default_factory=list)
    reasoning: str = ""


class RiskSummary(BaseModel):
    level: RiskLevel = RiskLevel.LOW
    factors: list[str] = Field(default_factory=list)
    confidence: float = 0.0
    is_crisis: bool = False


class JournalAnalysis(BaseModel):
    """Aggregated result of the four journal analyses."""

    sentiment: Sentiment
    insights: list[str] = Field(default_factory=list)
    summary: str = ""
    risk: RiskSummary = Field(default_factory=RiskSummary)
    suggested_actions: list[str] = Field(default_factory=list, max_length=3)
    processed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    model: str | None = None


class JournalEntry(BaseModel):
    """A student's journal entry."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str = Field(..., description="Author user ID")
    content: str = Field(..., description="Entry text")
    mood: int | None = Field(None, ge=1, le=10, description="Self-reported mood 1-10")
    tags: list[str] = Field(default_factory=list)
    ai_analysis: JournalAnalysis | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    deleted_at: datetime | None = None
