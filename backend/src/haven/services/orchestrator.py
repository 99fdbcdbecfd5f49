"""AI orchestration: crisis gate, journal analysis fan-out, chat generation.

Every chat path runs the crisis detector before any text generation. Journal
analysis runs four independent analyses concurrently and joins them with
``settle_all``; a failed analysis is replaced by a deterministic fallback,
so analysis as a whole only fails when the journal itself is missing.
"""

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable

from haven.config import Settings, settings
from haven.db.base import Store
from haven.errors import (
    ForbiddenError,
    HavenError,
    NotFoundError,
    ProviderError,
    QualityGateFailure,
    ValidationError,
)
from haven.services.context_builder import ContextBuilder, ContextOptions
from haven.services.crisis_detection import CrisisDetector, detect_keywords
from haven.services.prompts import (
    build_chat_prompt,
    build_journal_analysis_prompt,
    build_reflection_system_prompt,
    build_sentiment_prompt,
    build_summary_prompt,
    detect_topic,
)
from haven.services.text_generation import (
    ChatMessage,
    GenerationOptions,
    TextGenerationClient,
    race_cancel,
    estimate_tokens,
    truncate_to_token_limit,
)
from haven_models import (
    Context,
    Conversation,
    ConversationType,
    HistoryItem,
    JournalAnalysis,
    JournalEntry,
    Message,
    MessageMetadata,
    MessageRole,
    RiskLevel,
    RiskSummary,
    Sentiment,
)

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 5000
MIN_RESPONSE_LENGTH = 10
MAX_SUGGESTED_ACTIONS = 3

CHAT_OPTIONS = GenerationOptions(temperature=0.8, max_tokens=400)
REFLECTION_OPTIONS = GenerationOptions(temperature=0.8, max_tokens=500, system_role="journal-companion")
SENTIMENT_OPTIONS = GenerationOptions(temperature=0.3, max_tokens=200)
INSIGHTS_OPTIONS = GenerationOptions(temperature=0.7, max_tokens=300)
SUMMARY_OPTIONS = GenerationOptions(temperature=0.5, max_tokens=100)

# Student background rendered into the chat prompt
BACKGROUND_MAX_TOKENS = 500

EMPATHY_TERMS = ["understand", "feel", "sounds", "seems", "might", "help", "support", "here", "talk", "share"]
ERROR_SENTINELS = ["[ERROR]", "[FAIL]"]

POSITIVE_WORDS = ["happy", "joy", "excited", "grateful", "love", "great", "wonderful", "amazing"]
NEGATIVE_WORDS = ["sad", "angry", "depressed", "anxious", "worried", "scared", "hate", "terrible"]

FALLBACK_INSIGHTS = ["Unable to generate insights at this time"]
DEFAULT_INSIGHTS = ["Reflection on emotional state", "Consider reaching out to support"]

FALLBACK_RESPONSES = {
    ConversationType.JOURNAL_REFLECTION: (
        "I hear you, and your feelings are valid. While I'm having a moment processing your "
        "journal entry, please know that your thoughts matter. Would you like to share more "
        "about what's on your mind?"
    ),
    ConversationType.GENERAL_CHAT: (
        "I'm here to support you. I'm experiencing a brief technical issue, but I'm still "
        "listening. Could you tell me a bit more about how you're feeling right now?"
    ),
}

REFLECTION_FALLBACK = (
    "I'm here to support you. I'm experiencing a brief technical issue reflecting on your "
    "journal, but your thoughts matter. Would you like to share more about how you're feeling?"
)

ANALYSIS_STAGES = [("sentiment", 0.25), ("insights", 0.5), ("summary", 0.75), ("risk", 0.9)]


# ============= Results =============


@dataclass
class ChatReply:
    content: str
    metadata: MessageMetadata


@dataclass
class ChatExchange:
    """Both sides of one synchronous exchange, as persisted."""

    user_message: Message
    assistant_message: Message


@dataclass
class StreamEvent:
    """One typed event of a streamed response.

    Types: chunk, crisis, crisis-detected, complete, error, progress.
    """

    type: str
    data: dict[str, Any] = field(default_factory=dict)


# ============= Helpers =============


async def settle_all(*aws: Awaitable[Any]) -> list[Any]:
    """Wait for every awaitable; each slot holds its result or its exception."""
    return list(await asyncio.gather(*aws, return_exceptions=True))


def parse_json_response(response: str) -> dict:
    """Parse JSON from a model answer: direct, fenced code block, or first {...} span."""
    try:
        parsed = json.loads(response)
        return parsed if isinstance(parsed, dict) else {}
    except (json.JSONDecodeError, TypeError):
        pass

    for pattern, group in (
        (r"```json\s*([\s\S]*?)\s*```", 1),
        (r"```\s*([\s\S]*?)\s*```", 1),
        (r"\{[\s\S]*\}", 0),
    ):
        match = re.search(pattern, response)
        if not match:
            continue
        try:
            parsed = json.loads(match.group(group))
        except json.JSONDecodeError:
            logger.warning("Failed to parse JSON from model response")
            break
        return parsed if isinstance(parsed, dict) else {}
    return {}


def check_response_quality(response: str) -> None:
    """Raise QualityGateFailure unless the text looks like a usable reply."""
    if not response or len(response) < MIN_RESPONSE_LENGTH:
        raise QualityGateFailure("response too short")
    if any(sentinel in response for sentinel in ERROR_SENTINELS):
        raise QualityGateFailure("response contains an error sentinel")
    lower = response.lower()
    if not any(term in lower for term in EMPATHY_TERMS):
        raise QualityGateFailure("response lacks empathetic language")


def validate_response(response: str) -> bool:
    try:
        check_response_quality(response)
    except QualityGateFailure:
        return False
    return True


def validate_user_message(user_message: str) -> str:
    message = (user_message or "").strip()
    if not message:
        raise ValidationError("Message cannot be empty")
    if len(message) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"Message too long (max {MAX_MESSAGE_LENGTH} characters)")
    return message


def fallback_sentiment(content: str) -> Sentiment:
    """Keyword-count sentiment used when the model is unavailable."""
    lower = content.lower()
    positive = sum(1 for word in POSITIVE_WORDS if word in lower)
    negative = sum(1 for word in NEGATIVE_WORDS if word in lower)
    score = max(-1.0, min(1.0, (positive - negative) / max(positive + negative, 1)))
    return Sentiment(
        score=score,
        label=_label_for(score),
        confidence=0.6,
        primary_emotions=[],
        reasoning="Keyword-based fallback analysis",
    )


def fallback_summary(content: str) -> str:
    return content[:100] + "..."


def fallback_risk() -> RiskSummary:
    return RiskSummary(level=RiskLevel.LOW, factors=[], confidence=0.0, is_crisis=False)


def _label_for(score: float) -> str:
    if score > 0.2:
        return "positive"
    if score < -0.2:
        return "negative"
    return "neutral"


def suggested_actions(sentiment: Sentiment, risk: RiskSummary, hotline: str) -> list[str]:
    """Rule table for follow-up suggestions. Crisis-relevant ones come first."""
    actions: list[str] = []

    if risk.level == RiskLevel.HIGH:
        actions += [
            f"Call the National Crisis Hotline: {hotline}",
            "Reach out to campus counseling services immediately",
        ]

    if sentiment.score < -0.5:
        actions += [
            "Consider talking to a counselor or trusted friend",
            "Practice a grounding technique or deep breathing",
        ]
    elif sentiment.score > 0.5:
        actions += [
            "Reflect on what contributed to these positive feelings",
            "Consider sharing this positivity with others",
        ]

    if risk.level == RiskLevel.MEDIUM:
        actions += [
            "Schedule a check-in with a counselor this week",
            "Connect with your support network",
        ]

    if not actions:
        actions = [
            "Continue journaling regularly to track your progress",
            "Explore coping resources in the app",
        ]

    return actions[:MAX_SUGGESTED_ACTIONS]


# ============= Orchestrator =============


class Orchestrator:
    """Coordinates context, crisis detection and text generation."""

    def __init__(
        self,
        store: Store,
        client: TextGenerationClient,
        detector: CrisisDetector,
        context_builder: ContextBuilder,
        config: Settings = settings,
    ):
        self.store = store
        self.client = client
        self.detector = detector
        self.context_builder = context_builder
        self.hotline = config.national_crisis_hotline
        self.crisis_scan_every = config.stream_crisis_scan_every

    # ---------- Journal analysis ----------

    async def _load_journal(self, journal_id: str) -> tuple[JournalEntry, Context]:
        journal = await self.store.get_journal(journal_id)
        if not journal or journal.deleted_at is not None:
            raise NotFoundError(f"Journal {journal_id} not found")
        context = await self.context_builder.build(
            journal.user_id,
            ContextOptions(include_journals=True, include_conversations=False, max_journals=3, time_range_days=30),
        )
        return journal, context

    async def _analyze_sentiment(self, content: str, context: Context) -> Sentiment:
        response = await self.client.generate(build_sentiment_prompt(content, context), SENTIMENT_OPTIONS)
        parsed = parse_json_response(response)
        if not parsed:
            raise ValueError("Unparseable sentiment response")
        score = max(-1.0, min(1.0, float(parsed.get("score") or 0)))
        label = parsed.get("label")
        confidence = max(0.0, min(1.0, float(parsed.get("confidence") or 0.5)))
        return Sentiment(
            score=score,
            label=label if label in ("positive", "neutral", "negative") else _label_for(score),
            confidence=confidence,
            primary_emotions=[str(e) for e in parsed.get("primaryEmotions") or []],
            reasoning=str(parsed.get("reasoning") or ""),
        )

    async def _generate_insights(self, journal: JournalEntry, context: Context) -> list[str]:
        response = await self.client.generate(
            build_journal_analysis_prompt(journal.content, context, journal.mood), INSIGHTS_OPTIONS
        )
        insights = parse_json_response(response).get("insights")
        if isinstance(insights, list) and insights:
            return [str(i) for i in insights]
        return list(DEFAULT_INSIGHTS)

    async def _generate_summary(self, content: str) -> str:
        return (await self.client.generate(build_summary_prompt(content), SUMMARY_OPTIONS)).strip()

    async def _assess_risk(self, content: str, user_id: str) -> RiskSummary:
        assessment = await self.detector.assess(content, user_id)
        return RiskSummary(
            level=assessment.risk_level,
            factors=assessment.matched_keywords,
            confidence=0.5,
            is_crisis=assessment.is_crisis,
        )

    def _stage(self, name: str, journal: JournalEntry, context: Context) -> Awaitable[Any]:
        if name == "sentiment":
            return self._analyze_sentiment(journal.content, context)
        if name == "insights":
            return self._generate_insights(journal, context)
        if name == "summary":
            return self._generate_summary(journal.content)
        return self._assess_risk(journal.content, journal.user_id)

    @staticmethod
    def _fallback(name: str, content: str) -> Any:
        if name == "sentiment":
            return fallback_sentiment(content)
        if name == "insights":
            return list(FALLBACK_INSIGHTS)
        if name == "summary":
            return fallback_summary(content)
        return fallback_risk()

    def _settle(self, name: str, result: Any, journal: JournalEntry) -> Any:
        if isinstance(result, BaseException):
            logger.warning(f"Journal {journal.id}: {name} analysis failed, using fallback: {result}")
            return self._fallback(name, journal.content)
        return result

    async def _finish_analysis(
        self,
        journal: JournalEntry,
        sentiment: Sentiment,
        insights: list[str],
        summary: str,
        risk: RiskSummary,
    ) -> JournalAnalysis:
        analysis = JournalAnalysis(
            sentiment=sentiment,
            insights=insights,
            summary=summary,
            risk=risk,
            suggested_actions=suggested_actions(sentiment, risk, self.hotline),
            model=self.client.model,
        )
        logger.info(
            f"Journal analysis complete: {journal.id} "
            f"(sentiment={sentiment.score:.2f}, risk={risk.level.value}, insights={len(insights)})"
        )
        try:
            await self.store.save_journal_analysis(journal.id, analysis)
        except Exception as e:
            logger.error(f"Failed to save analysis for journal {journal.id}: {e}")
        return analysis

    async def analyze_journal(self, journal_id: str) -> JournalAnalysis:
        """Run the four analyses concurrently and aggregate them.

        Raises:
            NotFoundError: the journal does not exist.
        """
        logger.info(f"Starting journal analysis: {journal_id}")
        journal, context = await self._load_journal(journal_id)

        names = [name for name, _ in ANALYSIS_STAGES]
        results = await settle_all(*(self._stage(name, journal, context) for name in names))
        sentiment, insights, summary, risk = (
            self._settle(name, result, journal) for name, result in zip(names, results)
        )
        return await self._finish_analysis(journal, sentiment, insights, summary, risk)

    async def analysis_progress(self, journal_id: str) -> AsyncIterator[StreamEvent]:
        """Run the analyses one by one, yielding a progress event after each."""
        try:
            journal, context = await self._load_journal(journal_id)
            values: dict[str, Any] = {}
            for name, progress in ANALYSIS_STAGES:
                (result,) = await settle_all(self._stage(name, journal, context))
                values[name] = self._settle(name, result, journal)
                yield StreamEvent("progress", {"stage": name, "progress": progress})
            analysis = await self._finish_analysis(journal, **values)
        except Exception as e:
            logger.error(f"Journal analysis stream failed for {journal_id}: {e}")
            yield StreamEvent("error", {"error": _public_error(e), "retryable": _retryable(e)})
            return
        yield StreamEvent("complete", {"analysis": analysis})

    # ---------- Chat ----------

    async def _get_conversation(self, conversation_id: str) -> Conversation:
        conversation = await self.store.get_conversation(conversation_id)
        if not conversation:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    async def _generate(
        self,
        prompt: str,
        options: GenerationOptions,
        cancel: asyncio.Event | None,
    ) -> str:
        return await race_cancel(self.client.generate(prompt, options), cancel)

    def _chat_prompt(self, conversation: Conversation, context: Context, message: str) -> tuple[str, MessageMetadata]:
        prompt_type = "reflective" if conversation.type == ConversationType.JOURNAL_REFLECTION else "supportive"
        topic = detect_topic(message)
        history = context.conversation.messages if context.conversation else []
        background = truncate_to_token_limit(
            self.context_builder.format_for_prompt(context, include_conversation=False), BACKGROUND_MAX_TOKENS
        )
        prompt = build_chat_prompt(message, history, background, prompt_type, topic)
        metadata = MessageMetadata(
            model=self.client.model,
            is_crisis=False,
            risk_level=RiskLevel.LOW,
            context_type=prompt_type,
            topic=topic,
            has_journal_context=bool(conversation.journal_entry_id),
        )
        return prompt, metadata

    async def generate_chat_response(
        self,
        conversation_id: str,
        user_message: str,
        cancel: asyncio.Event | None = None,
    ) -> ChatReply:
        """Generate one assistant reply, crisis-checked first.

        Raises:
            ValidationError: empty or oversized message.
            NotFoundError: unknown conversation.
            ProviderError: generation failed after retries.
            GenerationCancelled: ``cancel`` fired first.
        """
        message = validate_user_message(user_message)
        conversation = await self._get_conversation(conversation_id)
        context = await self.context_builder.build_for_conversation(conversation)
        started = time.monotonic()

        crisis = await self.detector.assess(message, conversation.user_id)
        if crisis.is_crisis:
            logger.warning(f"Crisis detected in conversation {conversation_id} ({crisis.risk_level.value})")
            content = await self.detector.generate_crisis_response(message, crisis)
            await self.store.mark_crisis(conversation_id, crisis.risk_level)
            metadata = MessageMetadata(
                model=self.client.model,
                is_crisis=True,
                risk_level=crisis.risk_level,
                has_journal_context=bool(conversation.journal_entry_id),
            )
        else:
            prompt, metadata = self._chat_prompt(conversation, context, message)
            content = await self._generate(prompt, CHAT_OPTIONS, cancel)
            try:
                check_response_quality(content)
            except QualityGateFailure as e:
                logger.warning(f"Response failed validation ({e.reason}), using fallback")
                content = FALLBACK_RESPONSES.get(conversation.type, FALLBACK_RESPONSES[ConversationType.GENERAL_CHAT])
                metadata.is_fallback = True

        metadata.latency_ms = int((time.monotonic() - started) * 1000)
        metadata.tokens_used = estimate_tokens(content)
        return ChatReply(content=content, metadata=metadata)

    async def process_chat_message(self, conversation_id: str, user_id: str, user_message: str) -> ChatExchange:
        """Synchronous exchange: persist the user message, generate, persist the reply."""
        message = validate_user_message(user_message)
        conversation = await self._get_conversation(conversation_id)
        if conversation.user_id != user_id:
            raise ForbiddenError("Not authorized to access this conversation")

        user_msg = await self.store.create_message(
            Message(conversation_id=conversation_id, role=MessageRole.USER, content=message)
        )
        reply = await self.generate_chat_response(conversation_id, message)
        assistant_msg = await self.store.create_message(
            Message(
                conversation_id=conversation_id,
                role=MessageRole.ASSISTANT,
                content=reply.content,
                metadata=reply.metadata,
            )
        )
        await self.store.increment_message_count(conversation_id, by=2)
        return ChatExchange(user_message=user_msg, assistant_message=assistant_msg)

    async def stream_chat_response(
        self,
        conversation_id: str,
        user_message: str,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream a reply as typed events, ending in ``complete`` or ``error``.

        Stops without a terminal event when ``cancel`` is set.
        """
        try:
            message = validate_user_message(user_message)
            conversation = await self._get_conversation(conversation_id)
            context = await self.context_builder.build_for_conversation(conversation)

            crisis = await self.detector.assess(message, conversation.user_id)
            if crisis.is_crisis:
                resources = crisis.resources or self.detector.get_crisis_resources(crisis.risk_level)
                yield StreamEvent(
                    "crisis",
                    {"level": crisis.risk_level.value, "resources": resources.model_dump(mode="json")},
                )
                content = await self.detector.generate_crisis_response(message, crisis)
                metadata = MessageMetadata(
                    model=self.client.model,
                    is_crisis=True,
                    risk_level=crisis.risk_level,
                    tokens_used=estimate_tokens(content),
                    has_journal_context=bool(conversation.journal_entry_id),
                )
                yield StreamEvent("complete", {"content": content, "metadata": metadata})
                return

            prompt, metadata = self._chat_prompt(conversation, context, message)
            started = time.monotonic()
            pieces: list[str] = []
            flagged = False

            async for piece in self.client.stream(prompt, CHAT_OPTIONS, cancel=cancel):
                if cancel and cancel.is_set():
                    return
                pieces.append(piece)
                yield StreamEvent("chunk", {"content": piece, "index": len(pieces) - 1})

                if not flagged and len(pieces) % self.crisis_scan_every == 0:
                    scan = detect_keywords("".join(pieces))
                    if scan.is_crisis:
                        flagged = True
                        metadata.is_crisis = True
                        metadata.risk_level = scan.risk_level
                        logger.warning(
                            f"Crisis language in generated text for {conversation_id}: {scan.matched_keywords}"
                        )
                        yield StreamEvent("crisis-detected", {"level": scan.risk_level.value})

            if cancel and cancel.is_set():
                return

            content = "".join(pieces)
            metadata.latency_ms = int((time.monotonic() - started) * 1000)
            metadata.tokens_used = estimate_tokens(content)
            yield StreamEvent("complete", {"content": content, "metadata": metadata})
        except Exception as e:
            logger.error(f"Streaming error for conversation {conversation_id}: {e}")
            yield StreamEvent("error", {"error": _public_error(e), "retryable": _retryable(e)})

    async def generate_journal_reflection(
        self,
        user_message: str,
        journal_content: str,
        previous_messages: list[HistoryItem] | None = None,
        user_id: str = "anonymous",
    ) -> ChatReply:
        """Reply to a message embedded in a journal entry. Never raises."""
        try:
            message = validate_user_message(user_message)
            crisis = await self.detector.assess(message, user_id)
            if crisis.is_crisis:
                content = await self.detector.generate_crisis_response(message, crisis)
                return ChatReply(
                    content=content,
                    metadata=MessageMetadata(model="crisis-protocol", is_crisis=True, risk_level=crisis.risk_level),
                )

            messages = [
                ChatMessage(role="system", content=build_reflection_system_prompt(journal_content, previous_messages or [])),
                ChatMessage(role="user", content=message),
            ]
            content = await self.client.generate(messages, REFLECTION_OPTIONS)
            return ChatReply(
                content=content,
                metadata=MessageMetadata(
                    model=self.client.model,
                    risk_level=RiskLevel.LOW,
                    tokens_used=estimate_tokens(content),
                    context_type="reflective",
                    has_journal_context=True,
                ),
            )
        except Exception as e:
            logger.error(f"Journal reflection error: {e}")
            return ChatReply(
                content=REFLECTION_FALLBACK,
                metadata=MessageMetadata(model="fallback", risk_level=RiskLevel.LOW, is_fallback=True),
            )


def _public_error(error: Exception) -> str:
    if isinstance(error, ProviderError):
        return "Failed to generate response"
    if isinstance(error, HavenError):
        return error.detail
    return "Unexpected error while generating response"


def _retryable(error: Exception) -> bool:
    if isinstance(error, ProviderError):
        return error.retryable
    return not isinstance(error, HavenError)


