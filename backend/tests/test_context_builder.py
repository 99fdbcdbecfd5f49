"""Tests for context assembly, patterns and token budgeting."""

from datetime import datetime, timedelta, timezone

import pytest

from haven.services.context_builder import (
    ContextBuilder,
    ContextOptions,
    analyze_patterns,
    estimate_tokens,
    extract_preferences,
    truncate_to_token_limit,
)
from haven_models import (
    Context,
    ConversationBlock,
    HistoryItem,
    JournalAnalysis,
    JournalEntry,
    JournalSnapshot,
    Message,
    MessageRole,
    RiskLevel,
    RiskSummary,
    Sentiment,
)


def _now():
    return datetime.now(timezone.utc)


def _add_journal(store, content, days_ago=0, mood=None, user_id="student-1", **extra):
    entry = JournalEntry(
        user_id=user_id,
        content=content,
        mood=mood,
        created_at=_now() - timedelta(days=days_ago),
        **extra,
    )
    store.journals[entry.id] = entry
    return entry


class TestPatterns:
    """Pure pattern derivation over newest-first journals."""

    def test_mood_trend_improving(self):
        journals = [JournalSnapshot(content="", mood=m) for m in (8, 7, 3, 2)]
        patterns = analyze_patterns(journals)
        assert patterns.mood_trend == "improving"
        assert patterns.average_mood == 5.0

    def test_mood_trend_declining_and_stable(self):
        declining = analyze_patterns([JournalSnapshot(content="", mood=m) for m in (2, 3, 8)])
        assert declining.mood_trend == "declining"
        assert declining.average_mood == 4.3

        stable = analyze_patterns([JournalSnapshot(content="", mood=5), JournalSnapshot(content="", mood=5)])
        assert stable.mood_trend == "stable"

    def test_sentiment_trend(self):
        def snaps(*scores):
            return [JournalSnapshot(content="", sentiment_score=s) for s in scores]

        assert analyze_patterns(snaps(0.5, 0.3)).sentiment_trend == "positive"
        assert analyze_patterns(snaps(-0.5, -0.1)).sentiment_trend == "negative"
        assert analyze_patterns(snaps(0.1, -0.1)).sentiment_trend == "neutral"

    def test_recent_risk_level(self):
        levels = [RiskLevel.LOW, RiskLevel.MEDIUM]
        patterns = analyze_patterns([JournalSnapshot(content="", risk_level=level) for level in levels])
        assert patterns.recent_risk_level == RiskLevel.MEDIUM

        patterns = analyze_patterns([JournalSnapshot(content="")])
        assert patterns.recent_risk_level is None

    def test_common_themes(self):
        patterns = analyze_patterns(
            [JournalSnapshot(content="School stress again"), JournalSnapshot(content="Saw friends, felt happy")]
        )
        assert patterns.common_themes == ["stress", "happy", "school", "friends"]

    def test_preferences_follow_message_length(self):
        short = [HistoryItem(role="user", content="ok")]
        long = [HistoryItem(role="user", content="x" * 400), HistoryItem(role="assistant", content="y")]
        assert extract_preferences(short).response_length == "short"
        assert extract_preferences(long).response_length == "long"
        assert extract_preferences([]).response_length == "medium"
        assert extract_preferences(short).communication_style == "balanced"


class TestBuild:
    """ContextBuilder.build over the in-memory store."""

    @pytest.mark.asyncio
    async def test_journals_bounded_by_count_window_and_deletion(self, store):
        _add_journal(store, "newest " + "a" * 600, days_ago=1, mood=6)
        _add_journal(store, "older", days_ago=5, mood=4)
        _add_journal(store, "too old", days_ago=45)
        _add_journal(store, "deleted", days_ago=2, deleted_at=_now())
        _add_journal(store, "someone else", days_ago=1, user_id="student-2")

        context = await ContextBuilder(store).build("student-1", ContextOptions(max_journals=5))

        contents = [j.content for j in context.recent_journals]
        assert len(contents) == 2
        assert contents[0].startswith("newest")
        assert len(contents[0]) == 500
        assert contents[1] == "older"
        assert context.user.name == "Sam Student"
        assert "journal-history" in context.metadata.included_sources
        assert context.patterns.mood_trend is not None

    @pytest.mark.asyncio
    async def test_journal_analysis_feeds_snapshots(self, store):
        analysis = JournalAnalysis(
            sentiment=Sentiment(score=-0.6, label="negative"),
            risk=RiskSummary(level=RiskLevel.MEDIUM),
        )
        _add_journal(store, "rough week", ai_analysis=analysis)

        context = await ContextBuilder(store).build("student-1")
        snapshot = context.recent_journals[0]
        assert snapshot.sentiment_score == -0.6
        assert snapshot.risk_level == RiskLevel.MEDIUM
        assert context.patterns.sentiment_trend == "negative"

    @pytest.mark.asyncio
    async def test_history_is_chronological_and_truncated(self, store, conversation):
        for i in range(12):
            await store.create_message(
                Message(
                    conversation_id=conversation.id,
                    role=MessageRole.USER if i % 2 == 0 else MessageRole.ASSISTANT,
                    content=f"message {i} " + "z" * 400,
                    created_at=_now() + timedelta(seconds=i),
                )
            )

        context = await ContextBuilder(store).build(
            "student-1", ContextOptions(include_journals=False, include_conversations=True, max_messages=10)
        )
        history = context.conversation_history
        assert len(history) == 10
        assert history[0].content.startswith("message 2 ")
        assert history[-1].content.startswith("message 11 ")
        assert all(len(m.content) <= 300 for m in history)

    @pytest.mark.asyncio
    async def test_failing_source_degrades_to_empty(self, store, monkeypatch):
        async def broken(*args, **kwargs):
            raise RuntimeError("journals offline")

        monkeypatch.setattr(store, "get_recent_journals", broken)
        context = await ContextBuilder(store).build("student-1")

        assert context.recent_journals == []
        assert context.user.name == "Sam Student"
        assert not context.metadata.minimal

    @pytest.mark.asyncio
    async def test_unexpected_failure_returns_minimal_context(self, store, monkeypatch):
        def explode(*args, **kwargs):
            raise RuntimeError("bug")

        monkeypatch.setattr("haven.services.context_builder.extract_preferences", explode)
        context = await ContextBuilder(store).build("student-1")

        assert context.metadata.minimal
        assert context.user.user_id == "student-1"
        assert context.recent_journals == []


class TestConversationContext:
    @pytest.mark.asyncio
    async def test_includes_last_ten_messages_and_current_journal(self, store, journal_conversation, journal):
        for i in range(14):
            await store.create_message(
                Message(
                    conversation_id=journal_conversation.id,
                    role=MessageRole.USER,
                    content=f"m{i}",
                    created_at=_now() + timedelta(seconds=i),
                )
            )

        context = await ContextBuilder(store).build_for_conversation(journal_conversation)

        assert context.conversation.type == "journal-reflection"
        assert [m.content for m in context.conversation.messages] == [f"m{i}" for i in range(4, 14)]
        assert context.conversation.message_count == 10
        assert context.current_journal.content == journal.content
        assert "current-journal" in context.metadata.included_sources
        assert len(context.recent_journals) == 1

    @pytest.mark.asyncio
    async def test_general_chat_skips_journals(self, store, conversation, journal):
        context = await ContextBuilder(store).build_for_conversation(conversation)
        assert context.recent_journals == []
        assert context.current_journal is None
        assert context.conversation.messages == []

    def test_format_for_prompt(self, store):
        context = Context(
            conversation=ConversationBlock(
                type="general-chat",
                messages=[HistoryItem(role="user", content="hi"), HistoryItem(role="assistant", content="hello")],
            )
        )
        context.patterns.mood_trend = "declining"
        context.patterns.common_themes = ["school"]

        text = ContextBuilder(store).format_for_prompt(context)
        assert "- Mood trend: declining" in text
        assert "- Common themes: school" in text
        assert text.endswith("User: hi\nAssistant: hello")


class TestTokenBudget:
    """truncate_to_token_limit keeps the context within budget."""

    def _big_context(self, messages: int = 10) -> Context:
        return Context(
            recent_journals=[JournalSnapshot(content="j" * 500) for _ in range(5)],
            conversation_history=[HistoryItem(role="user", content="h" * 300) for _ in range(messages)],
            conversation=ConversationBlock(
                type="general-chat",
                messages=[HistoryItem(role="user", content="c" * 300) for _ in range(messages)],
            ),
        )

    def test_under_budget_is_untouched(self):
        context = Context()
        assert truncate_to_token_limit(context, 2000) is context

    def test_shrinks_journals_and_history(self):
        truncated = truncate_to_token_limit(self._big_context(), 2000)

        assert truncated.metadata.truncated
        assert len(truncated.recent_journals) == 2
        assert all(len(j.content) == 200 for j in truncated.recent_journals)
        assert len(truncated.conversation_history) <= 5
        assert all(len(m.content) <= 150 for m in truncated.conversation_history)
        assert estimate_tokens(truncated) <= 2000

    def test_tiny_budget_keeps_at_least_one_message(self):
        truncated = truncate_to_token_limit(self._big_context(), 50)

        assert len(truncated.conversation_history) == 1
        assert len(truncated.conversation.messages) == 1

    def test_original_is_not_mutated(self):
        context = self._big_context()
        truncate_to_token_limit(context, 100)
        assert len(context.recent_journals) == 5
        assert len(context.conversation_history) == 10
