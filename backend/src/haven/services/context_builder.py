"""Token-aware context assembly for prompts.

Every sub-source (profile, journals, history, conversation, current
journal) is loaded independently; a failing source degrades to empty
instead of failing the request.
"""

import json
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from haven.config import Settings, settings
from haven.db.base import Store
from haven_models import (
    Context,
    ContextMetadata,
    Conversation,
    ConversationBlock,
    CurrentJournal,
    HistoryItem,
    JournalEntry,
    JournalSnapshot,
    Message,
    Patterns,
    Preferences,
    RiskLevel,
    UserProfileSnippet,
)

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
JOURNAL_CONTENT_LIMIT = 500
HISTORY_CONTENT_LIMIT = 300
THEME_KEYWORDS = ["stress", "anxiety", "depression", "happy", "sad", "work", "school", "family", "friends"]


@dataclass
class ContextOptions:
    include_journals: bool = True
    include_conversations: bool = False
    max_journals: int = 5
    max_messages: int = 10
    time_range_days: int = 30


def estimate_tokens(context: Context) -> int:
    """Rough token count of the serialized context (4 characters per token)."""
    return math.ceil(len(json.dumps(context.to_prompt_dict())) / CHARS_PER_TOKEN)


def analyze_patterns(journals: list[JournalSnapshot]) -> Patterns:
    """Derive mood, sentiment, risk and theme patterns. Journals are newest first."""
    patterns = Patterns()
    if not journals:
        return patterns

    moods = [j.mood for j in journals if j.mood]
    if moods:
        average = sum(moods) / len(moods)
        recent = moods[:2]
        recent_average = sum(recent) / len(recent)
        if recent_average > average:
            patterns.mood_trend = "improving"
        elif recent_average < average:
            patterns.mood_trend = "declining"
        else:
            patterns.mood_trend = "stable"
        patterns.average_mood = round(average, 1)

    scores = [j.sentiment_score for j in journals if j.sentiment_score is not None]
    if scores:
        average_score = sum(scores) / len(scores)
        if average_score > 0.2:
            patterns.sentiment_trend = "positive"
        elif average_score < -0.2:
            patterns.sentiment_trend = "negative"
        else:
            patterns.sentiment_trend = "neutral"

    levels = [j.risk_level for j in journals if j.risk_level]
    if levels:
        if RiskLevel.HIGH in levels:
            patterns.recent_risk_level = RiskLevel.HIGH
        elif RiskLevel.MEDIUM in levels:
            patterns.recent_risk_level = RiskLevel.MEDIUM
        else:
            patterns.recent_risk_level = RiskLevel.LOW

    all_content = " ".join(j.content for j in journals).lower()
    patterns.common_themes = [k for k in THEME_KEYWORDS if k in all_content]
    return patterns


def extract_preferences(history: list[HistoryItem]) -> Preferences:
    preferences = Preferences()
    user_messages = [m for m in history if m.role == "user"]
    if user_messages:
        average_length = sum(len(m.content) for m in user_messages) / len(user_messages)
        if average_length < 100:
            preferences.response_length = "short"
        elif average_length > 300:
            preferences.response_length = "long"
    return preferences


def truncate_to_token_limit(context: Context, max_tokens: int) -> Context:
    """Shrink a context until it fits ``max_tokens``.

    The active conversation, current journal and patterns are kept. Older
    journals and history are shortened first, then the oldest messages are
    dropped one at a time while at least one message remains.
    """
    estimated = estimate_tokens(context)
    if estimated <= max_tokens:
        return context

    logger.info(f"Truncating context from ~{estimated} to {max_tokens} tokens")
    truncated = context.model_copy(deep=True)
    truncated.metadata.truncated = True

    truncated.recent_journals = [
        j.model_copy(update={"content": j.content[:200]}) for j in truncated.recent_journals[:2]
    ]
    truncated.conversation_history = [
        m.model_copy(update={"content": m.content[:150]})
        for m in truncated.conversation_history[-5:]
    ]

    while estimate_tokens(truncated) > max_tokens:
        if len(truncated.conversation_history) > 1:
            truncated.conversation_history.pop(0)
        elif truncated.conversation and len(truncated.conversation.messages) > 1:
            truncated.conversation.messages.pop(0)
        else:
            break

    return truncated


def _history_item(message: Message, limit: int | None = None) -> HistoryItem:
    content = message.content if limit is None else message.content[:limit]
    return HistoryItem(role=message.role.value, content=content, date=message.created_at)


def _snapshot(entry: JournalEntry) -> JournalSnapshot:
    analysis = entry.ai_analysis
    return JournalSnapshot(
        content=entry.content[:JOURNAL_CONTENT_LIMIT],
        mood=entry.mood,
        date=entry.created_at,
        sentiment_score=analysis.sentiment.score if analysis else None,
        risk_level=analysis.risk.level if analysis else None,
    )


class ContextBuilder:
    """Builds bounded per-request context from the store."""

    def __init__(self, store: Store, config: Settings = settings):
        self.store = store
        self.max_tokens = config.context_max_tokens
        self.default_options = ContextOptions(
            max_journals=config.context_max_journals,
            max_messages=config.context_max_messages,
            time_range_days=config.context_time_range_days,
        )

    def minimal_context(self, user_id: str) -> Context:
        """Last-resort context with every source empty."""
        return Context(
            user=UserProfileSnippet(user_id=user_id),
            metadata=ContextMetadata(minimal=True),
        )

    async def build(self, user_id: str, options: ContextOptions | None = None) -> Context:
        """Build context for a user. Never raises."""
        options = options or self.default_options
        try:
            context = await self._build(user_id, options)
        except Exception as e:
            logger.error(f"Error building context for user {user_id}: {e}")
            return self.minimal_context(user_id)
        return truncate_to_token_limit(context, self.max_tokens)

    async def _build(self, user_id: str, options: ContextOptions) -> Context:
        context = Context(metadata=ContextMetadata(time_range_days=options.time_range_days))
        sources = context.metadata.included_sources

        try:
            user = await self.store.get_user(user_id)
            if user:
                context.user = UserProfileSnippet(user_id=user.id, name=user.name, joined_at=user.created_at)
                sources.append("user-profile")
        except Exception as e:
            logger.warning(f"Failed to load user profile for {user_id}: {e}")

        if options.include_journals and options.max_journals > 0:
            try:
                since = datetime.now(timezone.utc) - timedelta(days=options.time_range_days)
                entries = await self.store.get_recent_journals(user_id, options.max_journals, since)
                context.recent_journals = [_snapshot(e) for e in entries if e.deleted_at is None]
                if context.recent_journals:
                    context.patterns = analyze_patterns(context.recent_journals)
                    sources.append("journal-history")
            except Exception as e:
                logger.warning(f"Failed to load journals for {user_id}: {e}")

        if options.include_conversations:
            try:
                messages = await self.store.get_recent_user_messages(user_id, options.max_messages)
                context.conversation_history = [
                    _history_item(m, HISTORY_CONTENT_LIMIT) for m in messages
                ]
                if context.conversation_history:
                    sources.append("conversation-history")
            except Exception as e:
                logger.warning(f"Failed to load conversation history for {user_id}: {e}")

        context.preferences = extract_preferences(context.conversation_history)

        logger.debug(
            f"Context built for {user_id}: journals={len(context.recent_journals)} "
            f"messages={len(context.conversation_history)} sources={sources}"
        )
        return context

    async def build_for_conversation(self, conversation: Conversation) -> Context:
        """Context for one conversation: its last 10 messages plus its journal, if any."""
        try:
            context = await self._build(
                conversation.user_id,
                ContextOptions(
                    include_journals=bool(conversation.journal_entry_id),
                    include_conversations=False,
                    max_journals=3,
                    time_range_days=self.default_options.time_range_days,
                ),
            )
        except Exception as e:
            logger.error(f"Error building conversation context for {conversation.id}: {e}")
            context = self.minimal_context(conversation.user_id)

        messages: list[Message] = []
        try:
            messages = await self.store.get_recent_messages(conversation.id, limit=10)
        except Exception as e:
            logger.warning(f"Failed to load messages for conversation {conversation.id}: {e}")

        context.conversation = ConversationBlock(
            type=conversation.type.value,
            message_count=len(messages),
            messages=[_history_item(m) for m in messages],
        )
        context.preferences = extract_preferences(context.conversation.messages)

        if conversation.journal_entry_id:
            try:
                journal = await self.store.get_journal(conversation.journal_entry_id)
                if journal:
                    context.current_journal = CurrentJournal(
                        content=journal.content, mood=journal.mood, created_at=journal.created_at
                    )
                    context.metadata.included_sources.append("current-journal")
            except Exception as e:
                logger.warning(f"Failed to load journal for conversation {conversation.id}: {e}")

        return truncate_to_token_limit(context, self.max_tokens)

    def format_for_prompt(self, context: Context, include_conversation: bool = True) -> str:
        """Render the context as plain prompt text.

        The chat prompt renders history itself and passes
        ``include_conversation=False``.
        """
        lines: list[str] = []

        if context.user and context.user.name:
            lines.append(f"User: {context.user.name}")

        if context.current_journal:
            lines += ["", "Current Journal Entry:", f'"{context.current_journal.content}"']
            if context.current_journal.mood:
                lines.append(f"Mood: {context.current_journal.mood}/10")
        elif context.recent_journals:
            lines += ["", "Recent Journal Entries:"]
            for entry in context.recent_journals[-3:]:
                date = entry.date.strftime("%Y-%m-%d") if entry.date else "recent"
                lines.append(f"- {date}: {entry.content[:200]}")

        patterns = context.patterns
        if not patterns.is_empty():
            lines += ["", "Recent Patterns:"]
            if patterns.mood_trend:
                lines.append(f"- Mood trend: {patterns.mood_trend}")
            if patterns.sentiment_trend:
                lines.append(f"- Overall sentiment: {patterns.sentiment_trend}")
            if patterns.common_themes:
                lines.append(f"- Common themes: {', '.join(patterns.common_themes)}")

        if include_conversation and context.conversation and context.conversation.messages:
            lines += ["", "Recent Conversation:"]
            for msg in context.conversation.messages[-5:]:
                role = "User" if msg.role == "user" else "Assistant"
                lines.append(f"{role}: {msg.content}")

        return "\n".join(lines).strip()
