"""Conversation and message models."""

from datetime import datetime, timezone
from enum import Enum
from pydantic import BaseModel, Field
import uuid

from haven_models.crisis import RiskLevel


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationType(str, Enum):
    """Kind of conversation, selects the prompt variant."""

    JOURNAL_REFLECTION = "journal-reflection"
    GENERAL_CHAT = "general-chat"


class ConversationStatus(str, Enum):
    """Lifecycle status of a conversation.

    CRISIS is sticky: the orchestration layer never moves a conversation
    out of it.
    """

    ACTIVE = "active"
    CRISIS = "crisis"
    ARCHIVED = "archived"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class MessageStatus(str, Enum):
    SENDING = "sending"
    DELIVERED = "delivered"
    ERROR = "error"


class MessageMetadata(BaseModel):
    """Generation metadata attached to assistant messages."""

    model: str | None = Field(None, description="Model or protocol that produced the content")
    is_crisis: bool = Field(default=False, description="Crisis detected for this exchange")
    risk_level: RiskLevel | None = Field(None, description="Final risk level")
    tokens_used: int | None = Field(None, description="Estimated tokens used")
    latency_ms: int | None = Field(None, description="Generation latency")
    is_fallback: bool = Field(default=False, description="Fallback text substituted")
    context_type: str | None = Field(None, description="Prompt variant: reflective or supportive")
    topic: str | None = Field(None, description="Detected topic such as anxiety or stress")
    has_journal_context: bool = Field(default=False, description="Prompt included a journal")


class StreamingState(BaseModel):
    """Sub-state of a message being delivered incrementally."""

    is_streaming: bool = True
    chunks_received: int = 0
    complete: bool = False
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None


class Message(BaseModel):
    """A single message in a conversation."""

    id: str = Field(default_factory=_uuid, description="Unique message ID")
    conversation_id: str = Field(..., description="Parent conversation ID")
    role: MessageRole = Field(..., description="Message role")
    content: str = Field(default="", description="Message content")
    status: MessageStatus = Field(default=MessageStatus.DELIVERED, description="Delivery status")
    error_message: str | None = Field(None, description="Error text if delivery failed")
    metadata: MessageMetadata = Field(default_factory=MessageMetadata)
    streaming: StreamingState | None = Field(None, description="Present for streamed messages")
    created_at: datetime = Field(default_factory=_utcnow, description="Creation timestamp")


class Conversation(BaseModel):
    """A conversation thread between a student and the assistant."""

    id: str = Field(default_factory=_uuid, description="Unique conversation ID")
    user_id: str = Field(..., description="Owning user ID")
    type: ConversationType = Field(default=ConversationType.GENERAL_CHAT)
    status: ConversationStatus = Field(default=ConversationStatus.ACTIVE)
    title: str | None = Field(None, description="Conversation title")
    journal_entry_id: str | None = Field(None, description="Journal this conversation reflects on")
    message_count: int = Field(0, description="Total message count")
    crisis_detected: bool = Field(default=False)
    crisis_level: RiskLevel | None = Field(None)
    crisis_timestamp: datetime | None = Field(None)
    last_message_at: datetime | None = Field(None)
    created_at: datetime = Field(default_factory=_utcnow, description="Creation timestamp")
    updated_at: datetime = Field(default_factory=_utcnow, description="Last update timestamp")
