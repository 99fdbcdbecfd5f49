"""Crisis assessment, resource bundle and admin alert models."""

from datetime import datetime, timezone
from enum import Enum
from pydantic import BaseModel, Field


class RiskLevel(str, Enum):
    """Ordinal crisis severity."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RANKS[self]

    @classmethod
    def max(cls, a: "RiskLevel", b: "RiskLevel") -> "RiskLevel":
        """Return the more severe of two levels."""
        return a if a.rank >= b.rank else b


_RANKS = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2}


class NationalHotline(BaseModel):
    name: str = "National Crisis Hotline"
    number: str
    available: str = "24/7"


class CampusContact(BaseModel):
    name: str = "Campus Counseling"
    info: str


class Hotlines(BaseModel):
    national: NationalHotline
    campus: CampusContact


class CrisisResources(BaseModel):
    """Resource bundle shown to a student, tiered by risk level."""

    risk_level: RiskLevel
    hotlines: Hotlines
    urgent_message: str | None = Field(None, description="Call-to-action, always set for high risk")
    suggestions: list[str] = Field(default_factory=list)


class CrisisAssessment(BaseModel):
    """Result of one crisis detection pass. Never persisted directly."""

    is_crisis: bool = False
    risk_level: RiskLevel = RiskLevel.LOW
    matched_keywords: list[str] = Field(default_factory=list)
    ai_assessment: RiskLevel | None = Field(None, description="Layer-2 classification if it ran")
    resources: CrisisResources | None = None
    requires_admin_alert: bool = False


class AdminAlert(BaseModel):
    """Structured alert record delivered to one admin account."""

    admin_id: str = Field(..., description="Recipient admin user ID")
    affected_user_id: str
    affected_user_name: str | None = None
    affected_user_email: str | None = None
    risk_level: RiskLevel
    keywords: list[str] = Field(default_factory=list)
    message_preview: str = Field(..., description="First 200 characters of the triggering text")
    title: str = "CRISIS ALERT - Immediate Attention Required"
    priority: str = "high"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
