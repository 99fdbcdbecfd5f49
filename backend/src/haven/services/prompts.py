"""Prompt templates for the support assistant."""

import re
from typing import Literal

from haven_models import Context, HistoryItem, RiskLevel

PromptType = Literal["reflective", "supportive"]

SYSTEM_PROMPT = """You are a compassionate mental health support companion for university students. Your role is to:

1. Listen actively and validate feelings without judgment
2. Provide evidence-based coping strategies and emotional support
3. Help students navigate academic stress, relationships, and personal challenges
4. Detect crisis situations and provide appropriate resources
5. Encourage professional help when needed

IMPORTANT GUIDELINES:
- You are NOT a therapist, psychiatrist, or medical professional
- NEVER diagnose mental health conditions
- NEVER prescribe or recommend specific medications
- ALWAYS encourage professional help for serious concerns
- In crisis situations, immediately provide hotline numbers
- Be warm, empathetic, and non-judgmental
- Keep responses conversational (2-4 sentences typical)
- Ask follow-up questions to understand better

RESPONSE STYLE:
- Start with empathetic acknowledgment
- Validate their feelings
- Offer 1-2 concrete coping strategies
- Ask if they'd like to explore more"""

VARIANT_INSTRUCTIONS: dict[str, str] = {
    "reflective": (
        "The student is reflecting on a journal entry. Help them notice patterns "
        "and feelings in what they wrote, and ask one gentle reflective question."
    ),
    "supportive": (
        "The student wants to talk. Focus on emotional support and practical, "
        "small next steps."
    ),
}

THERAPEUTIC_STRATEGIES: dict[str, list[str]] = {
    "anxiety": [
        "4-7-8 breathing (inhale 4, hold 7, exhale 8)",
        "Grounding technique (5 things you see, 4 you hear, 3 you touch, 2 you smell, 1 you taste)",
        "Progressive muscle relaxation",
        "Mindful walking or movement",
    ],
    "stress": [
        "Break tasks into smaller chunks (Pomodoro: 25 min work, 5 min break)",
        "Prioritize with the Eisenhower Matrix (urgent/important)",
        "Set boundaries and say no to non-essentials",
        "Schedule short breaks for self-care",
    ],
    "depression": [
        "Behavioral activation: one small activity you used to enjoy",
        "Reach out to one trusted friend or family member",
        "Gentle movement: a 10-minute walk outside",
        "Self-compassion: talk to yourself like a good friend",
    ],
    "loneliness": [
        "Join one campus club or study group",
        "Reach out to one person with a simple 'How are you?'",
        "Attend one campus event this week",
        "Consider peer support groups or counseling",
    ],
    "sleep": [
        "Keep consistent sleep and wake times, even on weekends",
        "Wind down for 30 minutes before bed with dim lights and no screens",
        "Keep the room cool, dark and quiet",
        "Avoid caffeine after 2pm",
    ],
}

_TOPIC_PATTERNS: list[tuple[str, str]] = [
    ("anxiety", r"\b(anxious|anxiety|worried|panic|nervous)\b"),
    ("depression", r"\b(depressed|depression|sad|down|empty|numb)\b"),
    ("stress", r"\b(stress|stressed|overwhelm\w*|pressure|too much)\b"),
    ("loneliness", r"\b(lonely|alone|isolated|no friends|left out)\b"),
    ("sleep", r"\b(sleep|insomnia|tired|exhausted|can't sleep)\b"),
]


def detect_topic(message: str) -> str | None:
    """Return the first matching support topic, or None for general chat."""
    lower = message.lower()
    for topic, pattern in _TOPIC_PATTERNS:
        if re.search(pattern, lower):
            return topic
    return None


def _format_history(messages: list[HistoryItem], limit: int = 10) -> str:
    lines = []
    for msg in messages[-limit:]:
        role = "Student" if msg.role == "user" else "Assistant"
        lines.append(f"{role}: {msg.content}")
    return "\n".join(lines)


def build_chat_prompt(
    user_message: str,
    conversation_history: list[HistoryItem] | None = None,
    background: str | None = None,
    prompt_type: PromptType = "supportive",
    topic: str | None = None,
) -> str:
    """Build the full chat prompt.

    Structure:
    1. System prompt and variant instructions
    2. Student background: profile, journals and patterns (if any)
    3. Conversation history (if any)
    4. New student message
    """
    parts = [SYSTEM_PROMPT, VARIANT_INSTRUCTIONS[prompt_type]]

    if background:
        parts.append(f"STUDENT BACKGROUND:\n{background}")

    if topic and topic in THERAPEUTIC_STRATEGIES:
        strategies = "; ".join(THERAPEUTIC_STRATEGIES[topic])
        parts.append(f"The student may be dealing with {topic}. Strategies you can draw on: {strategies}")

    if conversation_history:
        parts.append(f"CONVERSATION HISTORY:\n{_format_history(conversation_history)}")

    parts.append(f"Student: {user_message}\nAssistant:")
    return "\n\n".join(parts)


def build_sentiment_prompt(content: str, context: Context) -> str:
    lines = []
    if context.patterns.mood_trend:
        lines.append(f"Recent mood trend: {context.patterns.mood_trend}")
    if context.patterns.common_themes:
        lines.append(f"Common themes: {', '.join(context.patterns.common_themes)}")
    user_context = "\n".join(lines) or "None"

    return f"""Analyze the emotional sentiment of this journal entry. Consider the user's context and history.

User Context:
{user_context}

Journal Entry:
"{content}"

Provide sentiment analysis in JSON format:
{{
  "score": <number from -1 (very negative) to 1 (very positive)>,
  "label": "<positive|neutral|negative>",
  "confidence": <number from 0 to 1>,
  "primaryEmotions": ["emotion1", "emotion2"],
  "reasoning": "<brief explanation>"
}}"""


def build_journal_analysis_prompt(content: str, context: Context, mood: int | None = None) -> str:
    themes = ", ".join(context.patterns.common_themes) or "None"
    return f"""You are a mental health AI analyzing a student's journal entry. Provide a therapeutic analysis.

JOURNAL ENTRY:
"{content}"

STUDENT CONTEXT:
- Mood: {mood if mood is not None else 'Not specified'}
- Recent themes: {themes}

TASK: Analyze this entry and provide:
1. A brief summary (1-2 sentences)
2. Key emotional insights and patterns
3. Suggested coping strategies or reflections (2-3 actionable items)

Be empathetic, supportive, and focus on strengths as well as challenges.

Format your response as JSON:
{{
  "summary": "Brief summary here",
  "insights": ["Insight 1", "Insight 2"],
  "copingStrategies": ["Strategy 1", "Strategy 2", "Strategy 3"]
}}"""


def build_summary_prompt(content: str) -> str:
    return f"""Summarize this journal entry in 1-2 concise sentences:

"{content}"

Summary:"""


def build_risk_assessment_prompt(text: str) -> str:
    return f"""You are a crisis detection AI. Assess the mental health risk level in this text.

TEXT: "{text}"

RISK LEVELS:
- "high" = Immediate danger, mentions of suicide, self-harm, or harming others
- "medium" = Significant distress, hopelessness, but no immediate danger
- "low" = Normal stress, anxiety, or sadness without crisis indicators

Consider:
1. Explicit mentions of self-harm or suicide
2. Expressions of hopelessness or worthlessness
3. Social withdrawal or isolation
4. Sudden changes in behavior or mood

Respond with ONLY ONE WORD: high, medium, or low

RISK LEVEL:"""


def build_crisis_response_prompt(user_message: str, risk_level: RiskLevel, hotline: str) -> str:
    return f"""CRISIS SITUATION DETECTED - {risk_level.value.upper()} RISK

Student message: "{user_message}"

You must respond with URGENT care and provide crisis resources.

Your response should:
1. Acknowledge their pain with deep empathy
2. Validate that reaching out took courage
3. Provide the crisis hotline: {hotline}
4. Encourage immediate professional help
5. Express that their life has value
6. Keep it brief but caring (3-4 sentences)

Your response:"""


def build_reflection_system_prompt(journal_content: str, previous_messages: list[HistoryItem]) -> str:
    return f"""You are a compassionate mental health support AI helping a college student reflect on their journal entry.

Journal Context:
{journal_content}

Previous Conversation:
{_format_history(previous_messages, limit=5)}

Provide empathetic, supportive responses that:
- Acknowledge their feelings
- Ask thoughtful follow-up questions
- Offer gentle insights when appropriate
- Watch for signs of crisis and provide resources if needed"""
