"""In-memory storage backend for development and testing."""

import asyncio
from datetime import datetime
from typing import TypeVar

from pydantic import BaseModel

from messenger_outreach.models import (
    AutomationExecution,
    AutomationRule,
    AutomationStop,
    BatchStatus,
    ContactEvent,
    ContactRecommendation,
    Conversation,
    ConversationStatus,
    ConversationTag,
    DeliveryStatus,
    ExecutionStatus,
    FacebookPage,
    Message,
    MessageActivity,
    MessageAutoTag,
    MessageBatch,
    MessageDelivery,
    MessageStatus,
    OPEN_BATCH_STATUSES,
    Opportunity,
    PipelineSettings,
    PipelineStage,
    SegmentPrior,
    StageChange,
    Tag,
    TimingConfig,
    User,
    utc_now,
)
from messenger_outreach.storage.base import StorageBackend

M = TypeVar("M", bound=BaseModel)


def _copy(model: M | None) -> M | None:
    return model.model_copy(deep=True) if model is not None else None


class InMemoryStorage(StorageBackend):
    """In-memory storage implementation for development.

    Models are copied on the way in and out so callers see the same
    isolation a database gives them.
    """

    def __init__(self, public_url_base: str = "memory://media") -> None:
        self._users: dict[str, User] = {}
        self._pages: dict[str, FacebookPage] = {}
        self._conversations: dict[str, Conversation] = {}
        self._tags: dict[str, Tag] = {}
        self._conversation_tags: dict[tuple[str, str], ConversationTag] = {}
        self._messages: dict[str, Message] = {}
        self._batches: dict[str, MessageBatch] = {}
        self._deliveries: list[MessageDelivery] = []
        self._activities: list[MessageActivity] = []
        self._auto_tags: dict[str, MessageAutoTag] = {}
        self._rules: dict[str, AutomationRule] = {}
        self._executions: list[AutomationExecution] = []
        self._stops: dict[tuple[str, str], AutomationStop] = {}
        self._contact_events: dict[str, ContactEvent] = {}
        self._timing_configs: dict[str, TimingConfig] = {}
        self._recommendations: dict[str, ContactRecommendation] = {}
        self._segment_priors: dict[str, list[SegmentPrior]] = {}
        self._stages: dict[str, PipelineStage] = {}
        self._pipeline_settings: dict[str, PipelineSettings] = {}
        self._opportunities: dict[str, Opportunity] = {}
        self._stage_changes: list[StageChange] = []
        self._media: dict[str, tuple[bytes, str]] = {}
        self._public_url_base = public_url_base.rstrip("/")
        self._lock = asyncio.Lock()

    # ==================== User Operations ====================

    async def get_user(self, user_id: str) -> User | None:
        return _copy(self._users.get(user_id))

    async def get_user_by_facebook_id(self, facebook_id: str) -> User | None:
        for user in self._users.values():
            if user.facebook_id == facebook_id:
                return _copy(user)
        return None

    async def save_user(self, user: User) -> User:
        user.updated_at = utc_now()
        self._users[user.id] = _copy(user)
        return user

    # ==================== Page Operations ====================

    async def get_page(self, page_id: str) -> FacebookPage | None:
        return _copy(self._pages.get(page_id))

    async def get_page_by_facebook_id(
        self,
        facebook_page_id: str,
        user_id: str | None = None,
    ) -> FacebookPage | None:
        for page in self._pages.values():
            if page.facebook_page_id != facebook_page_id:
                continue
            if user_id and page.user_id != user_id:
                continue
            return _copy(page)
        return None

    async def list_pages(
        self,
        user_id: str | None = None,
        active_only: bool = False,
    ) -> list[FacebookPage]:
        pages = list(self._pages.values())
        if user_id:
            pages = [p for p in pages if p.user_id == user_id]
        if active_only:
            pages = [p for p in pages if p.is_active]
        pages.sort(key=lambda p: p.name)
        return [_copy(p) for p in pages]

    async def save_page(self, page: FacebookPage) -> FacebookPage:
        page.updated_at = utc_now()
        self._pages[page.id] = _copy(page)
        return page

    async def delete_page(self, page_id: str) -> bool:
        return self._pages.pop(page_id, None) is not None

    # ==================== Conversation Operations ====================

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        return _copy(self._conversations.get(conversation_id))

    async def get_conversation_by_sender(
        self,
        page_id: str,
        sender_id: str,
    ) -> Conversation | None:
        for conv in self._conversations.values():
            if conv.page_id == page_id and conv.sender_id == sender_id:
                return _copy(conv)
        return None

    async def save_conversation(self, conversation: Conversation) -> Conversation:
        conversation.updated_at = utc_now()
        self._conversations[conversation.id] = _copy(conversation)
        return conversation

    async def upsert_conversations(
        self,
        conversations: list[Conversation],
    ) -> tuple[int, int]:
        inserted = updated = 0
        async with self._lock:
            index = {(c.page_id, c.sender_id): c for c in self._conversations.values()}
            for conv in conversations:
                existing = index.get((conv.page_id, conv.sender_id))
                if existing:
                    conv.id = existing.id
                    conv.created_at = existing.created_at
                    updated += 1
                else:
                    inserted += 1
                conv.updated_at = utc_now()
                stored = _copy(conv)
                self._conversations[conv.id] = stored
                index[(conv.page_id, conv.sender_id)] = stored
        return inserted, updated

    async def list_conversations(
        self,
        page_ids: list[str] | None = None,
        status: ConversationStatus | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        last_message_before: datetime | None = None,
        limit: int | None = 50,
        offset: int = 0,
    ) -> tuple[list[Conversation], int]:
        convs = list(self._conversations.values())
        if page_ids is not None:
            convs = [c for c in convs if c.page_id in page_ids]
        if status:
            convs = [c for c in convs if c.conversation_status == status]
        if start_date:
            convs = [c for c in convs if c.last_message_time and c.last_message_time >= start_date]
        if end_date:
            convs = [c for c in convs if c.last_message_time and c.last_message_time <= end_date]
        if last_message_before:
            convs = [
                c for c in convs if c.last_message_time and c.last_message_time < last_message_before
            ]
        convs.sort(key=lambda c: c.last_message_time or c.created_at, reverse=True)
        total = len(convs)
        page = convs[offset:] if limit is None else convs[offset : offset + limit]
        return [_copy(c) for c in page], total

    # ==================== Tag Operations ====================

    async def get_tag(self, tag_id: str) -> Tag | None:
        return _copy(self._tags.get(tag_id))

    async def get_tag_by_name(self, user_id: str, name: str) -> Tag | None:
        for tag in self._tags.values():
            if tag.created_by == user_id and tag.name == name:
                return _copy(tag)
        return None

    async def list_tags(self, user_id: str) -> list[Tag]:
        tags = [t for t in self._tags.values() if t.created_by == user_id]
        tags.sort(key=lambda t: t.name)
        return [_copy(t) for t in tags]

    async def save_tag(self, tag: Tag) -> Tag:
        self._tags[tag.id] = _copy(tag)
        return tag

    async def delete_tag(self, tag_id: str) -> bool:
        if tag_id not in self._tags:
            return False
        del self._tags[tag_id]
        for key in [k for k in self._conversation_tags if k[1] == tag_id]:
            del self._conversation_tags[key]
        return True

    async def list_conversation_tags(self, conversation_id: str) -> list[Tag]:
        return [
            _copy(self._tags[tag_id])
            for (conv_id, tag_id) in self._conversation_tags
            if conv_id == conversation_id and tag_id in self._tags
        ]

    async def add_conversation_tags(self, assignments: list[ConversationTag]) -> int:
        added = 0
        async with self._lock:
            for assignment in assignments:
                key = (assignment.conversation_id, assignment.tag_id)
                if key in self._conversation_tags:
                    continue
                self._conversation_tags[key] = _copy(assignment)
                added += 1
        return added

    async def remove_conversation_tags(
        self,
        conversation_ids: list[str],
        tag_ids: list[str],
    ) -> int:
        removed = 0
        for conv_id in conversation_ids:
            for tag_id in tag_ids:
                if self._conversation_tags.pop((conv_id, tag_id), None) is not None:
                    removed += 1
        return removed

    async def conversation_ids_with_tags(self, tag_ids: list[str]) -> set[str]:
        wanted = set(tag_ids)
        return {conv_id for (conv_id, tag_id) in self._conversation_tags if tag_id in wanted}

    # ==================== Message Operations ====================

    async def get_message(self, message_id: str) -> Message | None:
        return _copy(self._messages.get(message_id))

    async def save_message(self, message: Message) -> Message:
        message.updated_at = utc_now()
        self._messages[message.id] = _copy(message)
        return message

    async def delete_message(self, message_id: str) -> bool:
        if message_id not in self._messages:
            return False
        del self._messages[message_id]
        for batch_id in [b.id for b in self._batches.values() if b.message_id == message_id]:
            del self._batches[batch_id]
        self._deliveries = [d for d in self._deliveries if d.message_id != message_id]
        self._activities = [a for a in self._activities if a.message_id != message_id]
        self._auto_tags.pop(message_id, None)
        return True

    async def list_messages(
        self,
        created_by: str,
        status: MessageStatus | None = None,
        page_id: str | None = None,
        limit: int = 50,
    ) -> list[Message]:
        messages = [m for m in self._messages.values() if m.created_by == created_by]
        if status:
            messages = [m for m in messages if m.status == status]
        if page_id:
            messages = [m for m in messages if m.page_id == page_id]
        messages.sort(key=lambda m: m.created_at, reverse=True)
        return [_copy(m) for m in messages[:limit]]

    async def list_due_scheduled(self, now: datetime, limit: int) -> list[Message]:
        due = [
            m
            for m in self._messages.values()
            if m.status == MessageStatus.SCHEDULED and m.scheduled_for and m.scheduled_for <= now
        ]
        due.sort(key=lambda m: m.scheduled_for)
        return [_copy(m) for m in due[:limit]]

    async def list_messages_by_status(
        self,
        statuses: list[MessageStatus],
        limit: int = 50,
    ) -> list[Message]:
        messages = [m for m in self._messages.values() if m.status in statuses]
        messages.sort(key=lambda m: m.created_at, reverse=True)
        return [_copy(m) for m in messages[:limit]]

    # ==================== Batch Operations ====================

    async def get_batch(self, batch_id: str) -> MessageBatch | None:
        return _copy(self._batches.get(batch_id))

    async def save_batches(self, batches: list[MessageBatch]) -> list[MessageBatch]:
        for batch in batches:
            await self.save_batch(batch)
        return batches

    async def save_batch(self, batch: MessageBatch) -> MessageBatch:
        batch.updated_at = utc_now()
        self._batches[batch.id] = _copy(batch)
        return batch

    async def list_batches(self, message_id: str) -> list[MessageBatch]:
        batches = [b for b in self._batches.values() if b.message_id == message_id]
        batches.sort(key=lambda b: b.batch_number)
        return [_copy(b) for b in batches]

    async def next_open_batch(self, message_id: str) -> MessageBatch | None:
        pending = [
            b
            for b in self._batches.values()
            if b.message_id == message_id and b.status == BatchStatus.PENDING
        ]
        if not pending:
            return None
        return _copy(min(pending, key=lambda b: b.batch_number))

    async def claim_batch(self, batch_id: str) -> MessageBatch | None:
        async with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None or batch.status != BatchStatus.PENDING:
                return None
            batch.transition_to(BatchStatus.PROCESSING)
            return _copy(batch)

    async def cancel_open_batches(self, message_id: str) -> int:
        cancelled = 0
        async with self._lock:
            for batch in self._batches.values():
                if batch.message_id == message_id and batch.status in OPEN_BATCH_STATUSES:
                    batch.transition_to(BatchStatus.CANCELLED)
                    cancelled += 1
        return cancelled

    async def max_batch_number(self, message_id: str) -> int:
        numbers = [b.batch_number for b in self._batches.values() if b.message_id == message_id]
        return max(numbers, default=0)

    # ==================== Delivery Operations ====================

    async def save_delivery(self, delivery: MessageDelivery) -> MessageDelivery:
        self._deliveries.append(_copy(delivery))
        return delivery

    async def list_deliveries(self, message_id: str) -> list[MessageDelivery]:
        return [_copy(d) for d in self._deliveries if d.message_id == message_id]

    async def retryable_deliveries(
        self,
        message_id: str,
        max_attempts: int,
    ) -> list[MessageDelivery]:
        latest: dict[str, MessageDelivery] = {}
        for delivery in self._deliveries:
            if delivery.message_id == message_id:
                latest[delivery.recipient_id] = delivery
        return [
            _copy(d)
            for d in latest.values()
            if d.status == DeliveryStatus.FAILED and d.attempt_count < max_attempts
        ]

    # ==================== Activity & Auto-tag Operations ====================

    async def add_activity(self, activity: MessageActivity) -> MessageActivity:
        self._activities.append(_copy(activity))
        return activity

    async def list_activities(self, message_id: str) -> list[MessageActivity]:
        return [_copy(a) for a in self._activities if a.message_id == message_id]

    async def get_message_auto_tag(self, message_id: str) -> MessageAutoTag | None:
        return _copy(self._auto_tags.get(message_id))

    async def set_message_auto_tag(self, auto_tag: MessageAutoTag) -> MessageAutoTag:
        self._auto_tags[auto_tag.message_id] = _copy(auto_tag)
        return auto_tag

    async def delete_message_auto_tag(self, message_id: str) -> bool:
        return self._auto_tags.pop(message_id, None) is not None

    # ==================== Automation Operations ====================

    async def get_rule(self, rule_id: str) -> AutomationRule | None:
        return _copy(self._rules.get(rule_id))

    async def list_rules(
        self,
        user_id: str | None = None,
        enabled: bool | None = None,
    ) -> list[AutomationRule]:
        rules = list(self._rules.values())
        if user_id:
            rules = [r for r in rules if r.user_id == user_id]
        if enabled is not None:
            rules = [r for r in rules if r.enabled == enabled]
        rules.sort(key=lambda r: r.created_at)
        return [_copy(r) for r in rules]

    async def save_rule(self, rule: AutomationRule) -> AutomationRule:
        rule.updated_at = utc_now()
        self._rules[rule.id] = _copy(rule)
        return rule

    async def delete_rule(self, rule_id: str) -> bool:
        if self._rules.pop(rule_id, None) is None:
            return False
        self._executions = [e for e in self._executions if e.rule_id != rule_id]
        for key in [k for k in self._stops if k[0] == rule_id]:
            del self._stops[key]
        return True

    async def save_execution(self, execution: AutomationExecution) -> AutomationExecution:
        self._executions.append(_copy(execution))
        return execution

    async def list_executions(
        self,
        rule_id: str,
        conversation_id: str | None = None,
        since: datetime | None = None,
        status: ExecutionStatus | None = None,
    ) -> list[AutomationExecution]:
        executions = [e for e in self._executions if e.rule_id == rule_id]
        if conversation_id:
            executions = [e for e in executions if e.conversation_id == conversation_id]
        if since:
            executions = [e for e in executions if e.created_at >= since]
        if status:
            executions = [e for e in executions if e.status == status]
        return [_copy(e) for e in executions]

    async def list_stops(self, rule_id: str) -> list[AutomationStop]:
        return [_copy(s) for (r_id, _), s in self._stops.items() if r_id == rule_id]

    async def save_stop(self, stop: AutomationStop) -> AutomationStop:
        self._stops[(stop.rule_id, stop.conversation_id)] = _copy(stop)
        return stop

    # ==================== Contact Timing Operations ====================

    async def save_contact_event(self, event: ContactEvent) -> ContactEvent:
        self._contact_events[event.id] = _copy(event)
        return event

    async def list_contact_events(self, conversation_id: str) -> list[ContactEvent]:
        events = [e for e in self._contact_events.values() if e.conversation_id == conversation_id]
        events.sort(key=lambda e: e.event_timestamp)
        return [_copy(e) for e in events]

    async def get_timing_config(self, user_id: str) -> TimingConfig | None:
        return _copy(self._timing_configs.get(user_id))

    async def save_timing_config(self, config: TimingConfig) -> TimingConfig:
        config.updated_at = utc_now()
        self._timing_configs[config.user_id] = _copy(config)
        return config

    async def get_recommendation(self, conversation_id: str) -> ContactRecommendation | None:
        return _copy(self._recommendations.get(conversation_id))

    async def save_recommendation(self, recommendation: ContactRecommendation) -> ContactRecommendation:
        existing = self._recommendations.get(recommendation.conversation_id)
        if existing is not None:
            recommendation.id = existing.id
        self._recommendations[recommendation.conversation_id] = _copy(recommendation)
        return recommendation

    async def list_recommendations(
        self,
        user_id: str,
        page_id: str | None = None,
        min_confidence: float = 0.0,
        search: str | None = None,
        active_only: bool = False,
        available_at: datetime | None = None,
        sort_by: str = "composite_score",
        descending: bool = True,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[ContactRecommendation], int]:
        recs = [r for r in self._recommendations.values() if r.user_id == user_id]
        if page_id:
            recs = [r for r in recs if r.page_id == page_id]
        if min_confidence > 0:
            recs = [r for r in recs if r.max_confidence >= min_confidence]
        if search:
            needle = search.lower()
            recs = [r for r in recs if needle in (r.sender_name or "").lower()]
        if active_only:
            recs = [r for r in recs if r.is_active]
        if available_at:
            recs = [r for r in recs if not r.in_cooldown(available_at)]

        present = [r for r in recs if getattr(r, sort_by) is not None]
        missing = [r for r in recs if getattr(r, sort_by) is None]
        present.sort(key=lambda r: getattr(r, sort_by), reverse=descending)
        ordered = present + missing
        return [_copy(r) for r in ordered[offset : offset + limit]], len(ordered)

    async def list_segment_priors(self, user_id: str) -> list[SegmentPrior]:
        return [_copy(p) for p in self._segment_priors.get(user_id, [])]

    async def replace_segment_priors(self, user_id: str, priors: list[SegmentPrior]) -> None:
        self._segment_priors[user_id] = [_copy(p) for p in priors]

    # ==================== Pipeline Operations ====================

    async def list_stages(self, user_id: str, active_only: bool = True) -> list[PipelineStage]:
        stages = [
            s for s in self._stages.values() if s.user_id == user_id and (s.is_active or not active_only)
        ]
        stages.sort(key=lambda s: s.position)
        return [_copy(s) for s in stages]

    async def get_stage(self, stage_id: str) -> PipelineStage | None:
        return _copy(self._stages.get(stage_id))

    async def save_stage(self, stage: PipelineStage) -> PipelineStage:
        stage.updated_at = utc_now()
        self._stages[stage.id] = _copy(stage)
        return stage

    async def get_pipeline_settings(self, user_id: str) -> PipelineSettings | None:
        return _copy(self._pipeline_settings.get(user_id))

    async def save_pipeline_settings(self, settings: PipelineSettings) -> PipelineSettings:
        settings.updated_at = utc_now()
        self._pipeline_settings[settings.user_id] = _copy(settings)
        return settings

    async def list_opportunities(self, user_id: str, stage_id: str | None = None) -> list[Opportunity]:
        opportunities = [
            o
            for o in self._opportunities.values()
            if o.user_id == user_id and (stage_id is None or o.stage_id == stage_id)
        ]
        opportunities.sort(key=lambda o: o.created_at, reverse=True)
        return [_copy(o) for o in opportunities]

    async def get_opportunity(self, opportunity_id: str) -> Opportunity | None:
        return _copy(self._opportunities.get(opportunity_id))

    async def get_opportunity_by_conversation(self, user_id: str, conversation_id: str) -> Opportunity | None:
        for opportunity in self._opportunities.values():
            if opportunity.user_id == user_id and opportunity.conversation_id == conversation_id:
                return _copy(opportunity)
        return None

    async def save_opportunity(self, opportunity: Opportunity) -> Opportunity:
        opportunity.updated_at = utc_now()
        self._opportunities[opportunity.id] = _copy(opportunity)
        return opportunity

    async def add_stage_change(self, change: StageChange) -> StageChange:
        self._stage_changes.append(_copy(change))
        return change

    async def list_stage_changes(self, opportunity_id: str) -> list[StageChange]:
        return [_copy(c) for c in self._stage_changes if c.opportunity_id == opportunity_id]

    # ==================== Media Operations ====================

    async def upload_media(self, path: str, content: bytes, content_type: str) -> str:
        self._media[path] = (content, content_type)
        return f"{self._public_url_base}/{path}"

    # ==================== Health Check ====================

    async def health_check(self) -> bool:
        return True

    # ==================== Development Helpers ====================

    async def clear_all(self) -> None:
        """Clear all data (for testing)."""
        self._users.clear()
        self._pages.clear()
        self._conversations.clear()
        self._tags.clear()
        self._conversation_tags.clear()
        self._messages.clear()
        self._batches.clear()
        self._deliveries.clear()
        self._activities.clear()
        self._auto_tags.clear()
        self._rules.clear()
        self._executions.clear()
        self._stops.clear()
        self._contact_events.clear()
        self._timing_configs.clear()
        self._recommendations.clear()
        self._segment_priors.clear()
        self._stages.clear()
        self._pipeline_settings.clear()
        self._opportunities.clear()
        self._stage_changes.clear()
        self._media.clear()
