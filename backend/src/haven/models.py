"""API-specific request and response models."""

from pydantic import BaseModel, Field

from haven_models import (
    Conversation,
    ConversationType,
    HistoryItem,
    Message,
    MessageMetadata,
)


class CreateConversationRequest(BaseModel):
    """Request model for starting a conversation."""

    type: ConversationType | None = Field(None, description="Defaults to journal-reflection when a journal is given")
    title: str | None = Field(None, description="Conversation title")
    journal_entry_id: str | None = Field(None, description="Journal entry to reflect on")


class ConversationResponse(BaseModel):
    """Response model for conversation with messages."""

    conversation: Conversation
    messages: list[Message] = Field(default_factory=list)


class ConversationListResponse(BaseModel):
    """Response model for list of conversations."""

    conversations: list[Conversation]
    total: int


class ChatRequest(BaseModel):
    """Request model for sending a message."""

    message: str = Field(..., description="User message")


class ChatResponse(BaseModel):
    """Response model for chat interaction."""

    conversation_id: str
    user_message: Message
    message: Message


class ReflectRequest(BaseModel):
    """A message written alongside a journal entry."""

    message: str = Field(..., description="User message")
    previous_messages: list[HistoryItem] = Field(default_factory=list)


class ReflectionResponse(BaseModel):
    content: str
    metadata: MessageMetadata
