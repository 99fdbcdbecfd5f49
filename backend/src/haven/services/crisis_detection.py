"""Multi-layer crisis detection.

Layer 1 is a deterministic keyword scan. Layer 2 asks the text generation
provider to classify the text, but only after Layer 1 found something, and
it can only escalate. The detector never raises: every failure past
Layer 1 is logged and the keyword result stands.
"""

import logging
from dataclasses import dataclass, field

from haven.config import Settings, settings
from haven.db.base import Store
from haven.errors import CrisisPipelineDegradation
from haven.services.notifications import NotificationSink
from haven.services.prompts import build_crisis_response_prompt, build_risk_assessment_prompt
from haven.services.text_generation import GenerationOptions, TextGenerationClient
from haven_models import (
    AdminAlert,
    CampusContact,
    CrisisAssessment,
    CrisisResources,
    Hotlines,
    NationalHotline,
    RiskLevel,
)

logger = logging.getLogger(__name__)

HIGH_RISK_KEYWORDS = [
    "suicide",
    "suicidal",
    "kill myself",
    "end my life",
    "want to die",
    "take my life",
    "self harm",
    "self-harm",
    "cut myself",
    "hurt myself",
    "harm myself",
    "better off dead",
    "no reason to live",
    "kill someone",
    "hurt others",
]

MEDIUM_RISK_KEYWORDS = [
    "depressed",
    "hopeless",
    "worthless",
    "can't go on",
    "give up",
    "no hope",
    "everyone would be better without me",
]

RISK_ASSESSMENT_OPTIONS = GenerationOptions(temperature=0.3, max_tokens=10)
CRISIS_RESPONSE_OPTIONS = GenerationOptions(temperature=0.7, max_tokens=200)


@dataclass
class KeywordMatch:
    """Outcome of the keyword layer."""

    is_crisis: bool = False
    risk_level: RiskLevel = RiskLevel.LOW
    matched_keywords: list[str] = field(default_factory=list)


def detect_keywords(text: str) -> KeywordMatch:
    """Scan text for crisis keywords.

    Medium-risk terms are only checked when no high-risk term matched, so
    the recorded keywords all belong to the winning tier.
    """
    lower_text = text.lower()

    matched = [k for k in HIGH_RISK_KEYWORDS if k in lower_text]
    if matched:
        return KeywordMatch(True, RiskLevel.HIGH, matched)

    matched = [k for k in MEDIUM_RISK_KEYWORDS if k in lower_text]
    if matched:
        return KeywordMatch(True, RiskLevel.MEDIUM, matched)

    return KeywordMatch()


def parse_risk_level(answer: str) -> RiskLevel:
    """Read a one-word classification. Anything unclear counts as medium."""
    word = answer.strip().lower().strip(".!\"'")
    try:
        return RiskLevel(word)
    except ValueError:
        return RiskLevel.MEDIUM


class CrisisDetector:
    """Safety gate run before any text generation."""

    def __init__(
        self,
        client: TextGenerationClient,
        store: Store,
        notifier: NotificationSink | None = None,
        config: Settings = settings,
    ):
        self.client = client
        self.store = store
        self.notifier = notifier or NotificationSink(store)
        self.national_hotline = config.national_crisis_hotline
        self.campus_hotline = config.campus_hotline
        self.alert_admins_enabled = config.alert_admins_on_crisis

    def detect_keywords(self, text: str) -> KeywordMatch:
        return detect_keywords(text)

    async def assess(self, text: str, user_id: str) -> CrisisAssessment:
        """Run both layers and, on a crisis, alert admins and log the event."""
        keywords = detect_keywords(text)
        assessment = CrisisAssessment(
            is_crisis=keywords.is_crisis,
            risk_level=keywords.risk_level,
            matched_keywords=keywords.matched_keywords,
            requires_admin_alert=keywords.risk_level == RiskLevel.HIGH,
        )
        if not keywords.is_crisis:
            return assessment

        try:
            ai_level = await self._ai_risk_assessment(text)
        except CrisisPipelineDegradation as e:
            logger.warning(f"AI risk assessment unavailable, keeping keyword result: {e}")
        else:
            assessment.ai_assessment = ai_level
            assessment.risk_level = RiskLevel.max(assessment.risk_level, ai_level)
            if ai_level == RiskLevel.HIGH:
                assessment.requires_admin_alert = True

        assessment.resources = self.get_crisis_resources(assessment.risk_level)

        if assessment.requires_admin_alert and self.alert_admins_enabled:
            await self.alert_admins(user_id, text, assessment)

        await self.log_crisis_event(user_id, text, assessment)
        return assessment

    async def _ai_risk_assessment(self, text: str) -> RiskLevel:
        try:
            answer = await self.client.generate(
                build_risk_assessment_prompt(text), RISK_ASSESSMENT_OPTIONS
            )
        except Exception as e:
            raise CrisisPipelineDegradation(str(e)) from e
        return parse_risk_level(answer)

    def get_crisis_resources(self, level: RiskLevel) -> CrisisResources:
        """Resource bundle for a risk level. Same level, same bundle."""
        level = RiskLevel(level)
        hotlines = Hotlines(
            national=NationalHotline(number=self.national_hotline),
            campus=CampusContact(info=self.campus_hotline),
        )

        if level == RiskLevel.HIGH:
            urgent_message = (
                "URGENT: If you're in immediate danger, please call the National Crisis "
                f"Hotline at {self.national_hotline} or dial 911."
            )
            suggestions = [
                "Call the crisis hotline NOW - they have trained counselors available 24/7",
                "If you're on campus, go to the counseling center or campus safety",
                "Tell someone you trust - a friend, family member, or RA",
                "Don't stay alone - reach out immediately",
            ]
        elif level == RiskLevel.MEDIUM:
            urgent_message = (
                "You're going through a tough time. Please consider reaching out for "
                "professional support."
            )
            suggestions = [
                "Schedule an appointment with campus counseling services",
                "Talk to a trusted friend, family member, or mentor",
                "Consider joining a support group",
                f"Call the crisis hotline if you need someone to talk to: {self.national_hotline}",
            ]
        else:
            urgent_message = None
            suggestions = [
                "Continue journaling and tracking your mood",
                "Practice self-care activities",
                "Reach out to campus counseling if things get harder",
                "Connect with friends and support networks",
            ]

        return CrisisResources(
            risk_level=level,
            hotlines=hotlines,
            urgent_message=urgent_message,
            suggestions=suggestions,
        )

    async def alert_admins(self, user_id: str, text: str, assessment: CrisisAssessment) -> None:
        """Create one alert per admin account. Failures are logged only."""
        try:
            user = await self.store.get_user(user_id)
            admins = await self.store.list_admins()
        except Exception as e:
            logger.error(f"Failed to load recipients for crisis alert on user {user_id}: {e}")
            return

        alerts = [
            AdminAlert(
                admin_id=admin.id,
                affected_user_id=user_id,
                affected_user_name=user.name if user else None,
                affected_user_email=user.email if user else None,
                risk_level=assessment.risk_level,
                keywords=assessment.matched_keywords,
                message_preview=text[:200],
            )
            for admin in admins
        ]
        if not alerts:
            logger.warning(f"No admin accounts to alert for user {user_id}")
            return

        if await self.notifier.send_admin_alerts(alerts):
            logger.error(
                f"CRISIS ALERT: User {user_id} - Risk Level: {assessment.risk_level.value} "
                f"({len(alerts)} admin(s) notified)"
            )

    async def log_crisis_event(self, user_id: str, text: str, assessment: CrisisAssessment) -> None:
        logger.warning(
            f"Crisis event: user={user_id} risk={assessment.risk_level.value} "
            f"keywords={assessment.matched_keywords} ai={assessment.ai_assessment} "
            f"preview={text[:100]!r}"
        )
        try:
            await self.store.log_event(
                user_id,
                "crisis_detected",
                {
                    "risk_level": assessment.risk_level.value,
                    "keywords": assessment.matched_keywords,
                    "ai_assessment": assessment.ai_assessment.value if assessment.ai_assessment else None,
                },
            )
        except Exception as e:
            logger.error(f"Failed to log crisis event for user {user_id}: {e}")

    def _resource_block(self, resources: CrisisResources, numbered_steps: bool = True) -> str:
        national = resources.hotlines.national
        lines = []
        if resources.urgent_message:
            lines += [resources.urgent_message, ""]
        lines += [
            "**Crisis Resources:**",
            f"National Crisis Hotline: {national.number} ({national.available})",
            resources.hotlines.campus.info,
        ]
        if numbered_steps and resources.suggestions:
            lines += ["", "**Immediate Steps:**"]
            lines += [f"{i}. {s}" for i, s in enumerate(resources.suggestions, start=1)]
        return "\n".join(lines)

    async def generate_crisis_response(self, user_message: str, assessment: CrisisAssessment) -> str:
        """Empathetic AI message with the resource bundle appended verbatim."""
        resources = assessment.resources or self.get_crisis_resources(assessment.risk_level)
        try:
            ai_text = await self.client.generate(
                build_crisis_response_prompt(user_message, assessment.risk_level, self.national_hotline),
                CRISIS_RESPONSE_OPTIONS,
            )
        except Exception as e:
            logger.error(f"Error generating crisis response: {e}")
            return self.fallback_crisis_response(assessment)
        return f"{ai_text}\n\n{self._resource_block(resources)}"

    def fallback_crisis_response(self, assessment: CrisisAssessment) -> str:
        resources = assessment.resources or self.get_crisis_resources(assessment.risk_level)
        return (
            "I hear how much pain you're in right now, and I'm deeply concerned about your safety. "
            "Your life has value, and you deserve support.\n\n"
            f"{self._resource_block(resources, numbered_steps=False)}\n\n"
            "Please reach out to one of these resources right now. You don't have to face this alone."
        )
