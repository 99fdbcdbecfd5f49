"""Mock text generation provider for fast testing without API calls.

Recognises the prompt templates in ``prompts.py`` and answers each with a
canned response of the right shape, so the whole pipeline can run offline.
"""

import json
import logging
import re
from typing import AsyncIterator

from haven.services.text_generation import ChatMessage, GenerationOptions, split_sentences

logger = logging.getLogger(__name__)

# Pattern detection for the prompt templates
RISK_PATTERN = r"assess the mental health risk level"
SENTIMENT_PATTERN = r"provide sentiment analysis in json"
INSIGHTS_PATTERN = r"analyze this entry and provide"
SUMMARY_PATTERN = r"summarize this journal entry"
CRISIS_PATTERN = r"crisis situation detected"

HIGH_RISK_TERMS = ["kill myself", "suicide", "end my life", "self harm", "cut myself"]

CHAT_RESPONSE = (
    "That sounds really hard, and I understand why you feel this way. "
    "It might help to take a short break and breathe. "
    "Would you like to talk more about what is on your mind?"
)


class MockProvider:
    """Provides predictable responses keyed on the prompt template."""

    supports_streaming = False

    def __init__(self, model: str = "mock"):
        self.model = model
        self.calls: list[list[ChatMessage]] = []

    @staticmethod
    def _detect_intent(prompt: str) -> str:
        lower_prompt = prompt.lower()
        for intent, pattern in (
            ("risk", RISK_PATTERN),
            ("sentiment", SENTIMENT_PATTERN),
            ("insights", INSIGHTS_PATTERN),
            ("summary", SUMMARY_PATTERN),
            ("crisis", CRISIS_PATTERN),
        ):
            if re.search(pattern, lower_prompt):
                return intent
        return "chat"

    @staticmethod
    def _quoted_text(prompt: str) -> str:
        match = re.search(r'"([^"]*)"', prompt)
        return match.group(1).lower() if match else prompt.lower()

    async def complete(self, messages: list[ChatMessage], options: GenerationOptions) -> str:
        self.calls.append(messages)
        prompt = "\n".join(m.content for m in messages)
        intent = self._detect_intent(prompt)
        logger.info(f"Mock provider: detected intent '{intent}' from prompt")

        if intent == "risk":
            text = self._quoted_text(prompt)
            return "high" if any(term in text for term in HIGH_RISK_TERMS) else "medium"

        if intent == "sentiment":
            return json.dumps(
                {
                    "score": 0.0,
                    "label": "neutral",
                    "confidence": 0.5,
                    "primaryEmotions": ["reflective"],
                    "reasoning": "Mock sentiment",
                }
            )

        if intent == "insights":
            return "```json\n" + json.dumps(
                {
                    "summary": "A reflective entry.",
                    "insights": ["You are noticing your feelings", "Rest seems important to you"],
                    "copingStrategies": ["Take a short walk"],
                }
            ) + "\n```"

        if intent == "summary":
            return "The student reflected on their day."

        if intent == "crisis":
            return (
                "I hear how much pain you're in right now, and I'm really concerned about you. "
                "Reaching out took courage, and your life has value."
            )

        return CHAT_RESPONSE

    async def stream_complete(
        self, messages: list[ChatMessage], options: GenerationOptions
    ) -> AsyncIterator[str]:
        text = await self.complete(messages, options)
        for piece in split_sentences(text):
            yield piece
