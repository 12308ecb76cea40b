"""BANT lead scoring of Messenger conversations."""

import asyncio
from typing import Any, Awaitable, Callable

import structlog

from messenger_outreach.core.exceptions import AppException, NotFound, ValidationFailed
from messenger_outreach.models import (
    QUALITY_TAGS,
    ConversationLine,
    ConversationTag,
    LeadQuality,
    LeadScore,
    ScoringConfig,
    Tag,
)
from messenger_outreach.models.lead import PRICE_SHOPPER_SIGNAL
from messenger_outreach.services.ai.provider import LLMProvider
from messenger_outreach.services.ai.transcript import fetch_transcript, format_transcript
from messenger_outreach.services.facebook.client import GraphAPIClient
from messenger_outreach.storage.base import StorageBackend

logger = structlog.get_logger()

SCORING_PROMPT = """You are a sales qualification expert. Score the lead quality of this \
conversation with the BANT framework (Budget, Authority, Need, Timeline) plus engagement.

CONVERSATION WITH {contact_name}:
{transcript}

CONVERSATION STATS:
- Total messages: {message_count}
- Customer responses: {customer_count}
- Business responses: {business_count}
- Engagement: {engagement}

SCORE BANDS:
- Unqualified (0-25): only asked about price, generic inquiry, no follow-up
- Cold (26-50): basic questions, mild interest, no timeline or budget
- Warm (51-75): specific needs or quantities, several exchanges, some budget or timeline
- Hot (76-100): ready to buy, asked about payment or delivery, decision maker, highly engaged

Respond with ONLY valid JSON in this format:
{{
  "score": 65,
  "quality": "Warm",
  "budget": true,
  "authority": false,
  "need": true,
  "timeline": false,
  "engagement": "medium",
  "signals": ["Mentioned specific quantity", "Asked about bulk pricing"],
  "reasoning": "Why this score was given",
  "recommended_action": "What the business should do next"
}}"""

DEFAULT_ACTION = "Follow up to gather more information"
PLACEHOLDER_TRANSCRIPT = [
    ConversationLine(from_customer=True, text="Initial contact"),
    ConversationLine(from_customer=False, text="Hello! How can I help you?"),
]


def _counts(lines: list[ConversationLine]) -> tuple[int, int, int]:
    customer = sum(1 for line in lines if line.from_customer)
    return len(lines), customer, len(lines) - customer


def clamp_score(value: Any) -> int:
    try:
        score = int(round(float(value)))
    except (TypeError, ValueError):
        score = 0
    return min(100, max(0, score))


def detect_price_shopper(
    score: int,
    signals: list[str],
    customer_count: int,
    config: ScoringConfig,
) -> bool:
    """Low score, few customer messages and price-only signals."""
    if score >= config.price_shopper_threshold:
        return False
    if customer_count > config.price_shopper_message_limit:
        return False
    has_price_signals = any(
        keyword in signal.lower() for signal in signals for keyword in config.price_keywords
    )
    if config.strict_price_shopper_mode:
        return has_price_signals and customer_count <= 2
    return has_price_signals


def fallback_score(contact_name: str, lines: list[ConversationLine], config: ScoringConfig) -> LeadScore:
    """Score from message counts alone, used when the model is unavailable."""
    message_count, customer_count, _ = _counts(lines)
    score = min(100, message_count * 10 + customer_count * 5)
    return LeadScore(
        contact_name=contact_name,
        score=score,
        quality=LeadQuality.from_score(score),
        has_need=message_count > config.min_engagement_for_warm,
        engagement_level=config.engagement_level(message_count),
        signals=[f"{message_count} messages exchanged"],
        reasoning="Basic scoring due to AI service error",
        recommended_action="Review conversation manually",
        fallback=True,
    )


class LeadScorer:
    """Scores conversations with the LLM and tags them by quality."""

    def __init__(
        self,
        provider: LLMProvider,
        config: ScoringConfig | None = None,
        delay_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.provider = provider
        self.config = config or ScoringConfig()
        self.delay_seconds = delay_seconds
        self._sleep = sleep

    def build_prompt(self, contact_name: str, lines: list[ConversationLine]) -> str:
        message_count, customer_count, business_count = _counts(lines)
        return SCORING_PROMPT.format(
            contact_name=contact_name,
            transcript=format_transcript(lines, contact_name),
            message_count=message_count,
            customer_count=customer_count,
            business_count=business_count,
            engagement=self.config.engagement_level(message_count).capitalize(),
        )

    async def score(self, contact_name: str, lines: list[ConversationLine]) -> LeadScore:
        """Score one transcript; model failures give the fallback score."""
        try:
            data = await self.provider.complete_json(
                self.build_prompt(contact_name, lines), temperature=0.4, max_tokens=1000
            )
        except AppException as e:
            logger.warning("Lead scoring fell back", contact=contact_name, error=e.message)
            return fallback_score(contact_name, lines, self.config)

        score = clamp_score(data.get("score"))
        signals = [str(s) for s in data.get("signals") or []]
        _, customer_count, _ = _counts(lines)
        is_price_shopper = detect_price_shopper(score, signals, customer_count, self.config)
        if is_price_shopper:
            signals.append(PRICE_SHOPPER_SIGNAL)

        return LeadScore(
            contact_name=contact_name,
            score=score,
            quality=LeadQuality.from_score(score),
            has_budget=bool(data.get("budget")),
            has_authority=bool(data.get("authority")),
            has_need=bool(data.get("need")),
            has_timeline=bool(data.get("timeline")),
            engagement_level=str(data.get("engagement") or "low"),
            signals=signals,
            reasoning=str(data.get("reasoning") or ""),
            recommended_action=str(data.get("recommended_action") or DEFAULT_ACTION),
            is_price_shopper=is_price_shopper,
        )

    async def batch_score(self, conversations: list[tuple[str, str, list[ConversationLine]]]) -> list[LeadScore]:
        """Score ``(conversation_id, contact_name, lines)`` entries one by one."""
        scores = []
        for index, (conversation_id, name, lines) in enumerate(conversations):
            result = await self.score(name, lines)
            result.conversation_id = conversation_id
            scores.append(result)
            logger.info(
                "Lead scored",
                conversation_id=conversation_id,
                quality=result.quality.value,
                score=result.score,
                fallback=result.fallback,
            )
            if self.delay_seconds > 0 and index < len(conversations) - 1:
                await self._sleep(self.delay_seconds)
        return scores

    async def score_conversations(
        self,
        storage: StorageBackend,
        graph: GraphAPIClient,
        user_id: str,
        conversation_ids: list[str],
        apply_tags: bool = True,
    ) -> list[LeadScore]:
        """Score a user's conversations using their recent Messenger history."""
        if not conversation_ids:
            raise ValidationFailed("conversation_ids is required")

        pages = {p.facebook_page_id: p for p in await storage.list_pages(user_id)}
        entries = []
        for conversation_id in dict.fromkeys(conversation_ids):
            conversation = await storage.get_conversation(conversation_id)
            page = pages.get(conversation.page_id) if conversation else None
            if conversation is None or page is None:
                raise NotFound("Conversation", conversation_id)
            lines = []
            if page.access_token:
                lines = await fetch_transcript(graph, conversation, page.access_token)
            entries.append((conversation.id, conversation.sender_name, lines or PLACEHOLDER_TRANSCRIPT))

        scores = await self.batch_score(entries)
        if apply_tags:
            await self.apply_quality_tags(storage, user_id, scores)
        return scores

    async def apply_quality_tags(self, storage: StorageBackend, user_id: str, scores: list[LeadScore]) -> int:
        """Tag conversations with their quality, creating the quality tags on first use."""
        tags: dict[str, Tag] = {}
        for definition in QUALITY_TAGS:
            tag = await storage.get_tag_by_name(user_id, definition["name"])
            if tag is None:
                tag = await storage.save_tag(
                    Tag(name=definition["name"], color=definition["color"], created_by=user_id)
                )
            tags[definition["quality"]] = tag

        # A conversation carries one quality tag at a time
        await storage.remove_conversation_tags(
            [s.conversation_id for s in scores], [t.id for t in tags.values()]
        )

        assignments = []
        for result in scores:
            quality_tag = tags[result.quality.value]
            assignments.append(ConversationTag(conversation_id=result.conversation_id, tag_id=quality_tag.id))
            if result.is_price_shopper:
                assignments.append(
                    ConversationTag(conversation_id=result.conversation_id, tag_id=tags["PriceShopper"].id)
                )
        return await storage.add_conversation_tags(assignments)
