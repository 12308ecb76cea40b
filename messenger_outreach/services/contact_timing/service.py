"""Event tracking and recommendation upkeep for best-time-to-contact."""

import random
from datetime import datetime, timedelta
from typing import Any

import structlog

from messenger_outreach.core.exceptions import NotFound, ValidationFailed
from messenger_outreach.core.logging import mask_id
from messenger_outreach.models import (
    ContactEvent,
    ContactEventType,
    ContactRecommendation,
    Conversation,
    SegmentPrior,
    TimezoneConfidence,
    TimezoneSource,
    TimingConfig,
    utc_now,
)
from messenger_outreach.services.contact_timing.algorithm import compute_best_contact_times
from messenger_outreach.services.contact_timing.timezone import infer_timezone, is_valid_timezone
from messenger_outreach.storage.base import StorageBackend

logger = structlog.get_logger()

# Upper bound of recommendations folded into a user's segment priors
MAX_PRIOR_CONTACTS = 10_000


class ContactTimingService:
    """Records contact attempts and responses and keeps recommendations current."""

    def __init__(self, storage: StorageBackend, rng: random.Random | None = None) -> None:
        self.storage = storage
        self.rng = rng or random.Random()

    # ==================== Config ====================

    async def get_config(self, user_id: str) -> TimingConfig:
        """Stored tuning of a user, created with defaults on first use."""
        config = await self.storage.get_timing_config(user_id)
        if config is None:
            config = TimingConfig(user_id=user_id)
            await self.storage.save_timing_config(config)
        return config

    async def save_config(self, user_id: str, changes: dict[str, Any]) -> TimingConfig:
        current = await self.get_config(user_id)
        merged = current.model_dump()
        merged.update(changes)
        merged["user_id"] = user_id
        merged["updated_at"] = utc_now()
        try:
            config = TimingConfig.model_validate(merged)
        except ValueError as e:
            raise ValidationFailed("Invalid contact timing config", details={"error": str(e)}) from e
        await self.storage.save_timing_config(config)
        return config

    # ==================== Event tracking ====================

    async def track_send(
        self,
        conversation: Conversation,
        message_id: str | None = None,
        at: datetime | None = None,
    ) -> ContactEvent:
        event = ContactEvent(
            user_id=conversation.user_id,
            conversation_id=conversation.id,
            sender_id=conversation.sender_id,
            event_type=ContactEventType.MESSAGE_SENT,
            event_timestamp=at or utc_now(),
            message_id=message_id,
        )
        await self.storage.save_contact_event(event)
        return event

    async def track_send_to(
        self,
        facebook_page_id: str,
        recipient_id: str,
        message_id: str | None = None,
        at: datetime | None = None,
    ) -> ContactEvent | None:
        """Record an outbound message to a page contact; None for unknown contacts."""
        conversation = await self.storage.get_conversation_by_sender(facebook_page_id, recipient_id)
        if conversation is None:
            logger.debug("No conversation to track send for", recipient=mask_id(recipient_id))
            return None
        return await self.track_send(conversation, message_id, at)

    async def record_response(
        self,
        conversation: Conversation,
        event_type: ContactEventType = ContactEventType.MESSAGE_REPLIED,
        at: datetime | None = None,
    ) -> ContactEvent | None:
        """Store a response from the contact and credit the attempt it answers.

        The answered attempt is the latest unanswered outbound event within
        ``success_window_hours`` before the response. Returns that attempt,
        or None when the response answered nothing.
        """
        at = at or utc_now()
        config = await self.get_config(conversation.user_id)
        weight = config.success_weight(event_type)

        await self.storage.save_contact_event(
            ContactEvent(
                user_id=conversation.user_id,
                conversation_id=conversation.id,
                sender_id=conversation.sender_id,
                event_type=event_type,
                event_timestamp=at,
                is_outbound=False,
                is_success=True,
                success_weight=weight,
            )
        )

        window_start = at - timedelta(hours=config.success_window_hours)
        candidates = [
            e
            for e in await self.storage.list_contact_events(conversation.id)
            if e.is_outbound and not e.is_success and window_start <= e.event_timestamp <= at
        ]
        if not candidates:
            return None

        attempt = max(candidates, key=lambda e: e.event_timestamp)
        attempt.is_success = True
        attempt.success_weight = weight
        attempt.response_timestamp = at
        await self.storage.save_contact_event(attempt)
        logger.debug(
            "Contact attempt answered",
            conversation_id=conversation.id,
            event_type=event_type.value,
            latency_hours=round(attempt.response_latency_hours or 0.0, 2),
        )
        return attempt

    # ==================== Recommendations ====================

    async def _user_conversations(self, user_id: str, conversation_ids: list[str] | None) -> list[Conversation]:
        if conversation_ids is None:
            page_ids = [p.facebook_page_id for p in await self.storage.list_pages(user_id)]
            if not page_ids:
                return []
            conversations, _ = await self.storage.list_conversations(page_ids=page_ids, limit=None)
            return conversations

        result = []
        for conversation_id in conversation_ids:
            conversation = await self.storage.get_conversation(conversation_id)
            if conversation is not None and conversation.user_id == user_id:
                result.append(conversation)
        return result

    async def _compute_one(
        self,
        conversation: Conversation,
        config: TimingConfig,
        priors: dict[int, SegmentPrior] | None,
        now: datetime,
    ) -> ContactRecommendation:
        events = await self.storage.list_contact_events(conversation.id)
        rec = await self.storage.get_recommendation(conversation.id)
        if rec is None:
            rec = ContactRecommendation(
                user_id=conversation.user_id,
                conversation_id=conversation.id,
                sender_id=conversation.sender_id,
            )

        if rec.timezone_source != TimezoneSource.MANUAL:
            # The contact's own messages show when they are awake
            inferred = infer_timezone([e.event_timestamp for e in events if not e.is_outbound])
            rec.timezone = inferred.timezone
            rec.timezone_confidence = inferred.confidence
            rec.timezone_source = inferred.source

        attempts = [e for e in events if e.is_outbound]
        answered = [e for e in attempts if e.is_success]
        positives = [e.response_timestamp or e.event_timestamp for e in events if e.is_success]
        last_positive = max(positives) if positives else None

        result = compute_best_contact_times(
            events,
            config,
            timezone=rec.timezone,
            priors=priors,
            last_positive_at=last_positive,
            priority=rec.priority_score,
            explore=True,
            now=now,
            rng=self.rng,
        )

        rec.sender_name = conversation.sender_name
        rec.page_id = conversation.page_id
        rec.recommended_windows = result.recommended_windows
        rec.max_confidence = result.max_confidence
        rec.recency_score = result.recency_score
        rec.composite_score = result.composite_score
        rec.bins = [b for b in result.bins if b.trials_count > 0]
        rec.last_positive_signal_at = last_positive
        rec.last_contact_attempt_at = max((e.event_timestamp for e in attempts), default=None)
        rec.total_attempts = len(attempts)
        rec.total_successes = len(answered)
        rec.overall_response_rate = len(answered) / len(attempts) if attempts else 0.0
        rec.last_computed_at = now
        await self.storage.save_recommendation(rec)
        return rec

    async def _update_priors(self, user_id: str) -> int:
        """Rebuild a user's per-hour priors from every contact's bins."""
        recommendations, _ = await self.storage.list_recommendations(user_id, limit=MAX_PRIOR_CONTACTS)
        priors: dict[int, SegmentPrior] = {}
        for rec in recommendations:
            for slot in rec.bins:
                prior = priors.setdefault(
                    slot.hour_of_week, SegmentPrior(user_id=user_id, hour_of_week=slot.hour_of_week)
                )
                prior.trials_count += slot.trials_count
                prior.success_count += slot.success_count
                prior.contact_count += 1
        await self.storage.replace_segment_priors(user_id, list(priors.values()))
        return len(priors)

    async def compute(
        self,
        user_id: str,
        conversation_ids: list[str] | None = None,
        now: datetime | None = None,
    ) -> list[ContactRecommendation]:
        """Recompute recommendations, for every conversation of the user by default.

        Priors from the previous run shape this run; they are rebuilt afterwards.
        """
        now = now or utc_now()
        config = await self.get_config(user_id)
        priors = {p.hour_of_week: p for p in await self.storage.list_segment_priors(user_id)}

        conversations = await self._user_conversations(user_id, conversation_ids)
        results = []
        for conversation in conversations:
            results.append(await self._compute_one(conversation, config, priors or None, now))

        hours = await self._update_priors(user_id) if results else 0
        logger.info(
            "Contact timing computed",
            user_id=user_id,
            conversations=len(results),
            prior_hours=hours,
        )
        return results

    async def update_timezone(
        self,
        user_id: str,
        conversation_ids: list[str],
        timezone: str,
        now: datetime | None = None,
    ) -> list[ContactRecommendation]:
        """Pin the timezone of conversations and recompute them.

        Raises:
            ValidationFailed: Unknown IANA timezone
            NotFound: None of the conversations belongs to the user
        """
        if not is_valid_timezone(timezone):
            raise ValidationFailed("Invalid timezone", details={"timezone": timezone})

        conversations = await self._user_conversations(user_id, conversation_ids)
        if not conversations:
            raise NotFound("Conversation", ",".join(conversation_ids))

        for conversation in conversations:
            rec = await self.storage.get_recommendation(conversation.id) or ContactRecommendation(
                user_id=user_id,
                conversation_id=conversation.id,
                sender_id=conversation.sender_id,
            )
            rec.timezone = timezone
            rec.timezone_confidence = TimezoneConfidence.HIGH
            rec.timezone_source = TimezoneSource.MANUAL
            await self.storage.save_recommendation(rec)

        return await self.compute(user_id, [c.id for c in conversations], now=now)

    async def update_recommendation(
        self,
        user_id: str,
        conversation_id: str,
        changes: dict[str, Any],
    ) -> ContactRecommendation:
        """Change the manual fields of a recommendation (active flag, cooldown, priority, notes)."""
        rec = await self.storage.get_recommendation(conversation_id)
        if rec is None or rec.user_id != user_id:
            raise NotFound("Contact recommendation", conversation_id)
        for field in ("is_active", "cooldown_until", "priority_score", "notes"):
            if field in changes:
                setattr(rec, field, changes[field])
        await self.storage.save_recommendation(rec)
        return rec
