"""Supabase storage backend for production."""

from datetime import datetime
from typing import Any

import httpx
import structlog
from supabase import AsyncClient, acreate_client
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from messenger_outreach.core.exceptions import StorageError
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

logger = structlog.get_logger()

USERS = "users"
PAGES = "facebook_pages"
CONVERSATIONS = "messenger_conversations"
TAGS = "tags"
CONVERSATION_TAGS = "conversation_tags"
MESSAGES = "messages"
BATCHES = "message_batches"
DELIVERIES = "message_deliveries"
ACTIVITY = "message_activity"
AUTO_TAGS = "message_auto_tags"
RULES = "ai_automation_rules"
EXECUTIONS = "ai_automation_executions"
STOPS = "ai_automation_stops"
CONTACT_EVENTS = "contact_interaction_events"
TIMING_CONFIG = "contact_timing_config"
RECOMMENDATIONS = "contact_timing_recommendations"
SEGMENT_PRIORS = "contact_timing_segment_priors"
STAGES = "pipeline_stages"
PIPELINE_SETTINGS = "pipeline_settings"
OPPORTUNITIES = "pipeline_opportunities"
STAGE_HISTORY = "pipeline_stage_history"


def _row(model: Any) -> dict[str, Any]:
    return model.model_dump(mode="json")


class SupabaseStorage(StorageBackend):
    """Supabase storage implementation for production.

    Uses the service-role key, so row ownership is enforced by the services
    rather than by row level security. Table layout:
    - users, facebook_pages
    - messenger_conversations (unique page_id, sender_id), tags, conversation_tags
    - messages, message_batches, message_deliveries, message_activity, message_auto_tags
    - ai_automation_rules, ai_automation_executions, ai_automation_stops
    - contact_interaction_events, contact_timing_config (unique user_id),
      contact_timing_recommendations (unique conversation_id), contact_timing_segment_priors
    - pipeline_stages, pipeline_settings (unique user_id), pipeline_opportunities,
      pipeline_stage_history
    Media files go to a public Storage bucket.
    """

    def __init__(self, url: str, service_key: str, bucket: str = "media") -> None:
        self._url = url
        self._service_key = service_key
        self._bucket = bucket
        self._client: AsyncClient | None = None

    async def _ensure_initialized(self) -> AsyncClient:
        """Lazy initialization of the Supabase client."""
        if self._client is not None:
            return self._client

        try:
            self._client = await acreate_client(self._url, self._service_key)
            logger.info("Supabase client initialized", url=self._url)
        except Exception as e:
            logger.error("Failed to initialize Supabase", error=str(e))
            raise StorageError(f"Failed to initialize Supabase: {e}", operation="connect") from e
        return self._client

    async def _table(self, name: str):
        client = await self._ensure_initialized()
        return client.table(name)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _execute_with_retry(self, query):
        return await query.execute()

    async def _execute(self, query, operation: str) -> list[dict[str, Any]]:
        """Execute a query, retrying transport failures."""
        try:
            response = await self._execute_with_retry(query)
        except Exception as e:
            logger.error("Supabase query failed", operation=operation, error=str(e))
            raise StorageError(f"Storage operation failed: {operation}", operation=operation) from e
        return response.data or []

    async def _first(self, query, operation: str) -> dict[str, Any] | None:
        rows = await self._execute(query.limit(1), operation)
        return rows[0] if rows else None

    # ==================== User Operations ====================

    async def get_user(self, user_id: str) -> User | None:
        table = await self._table(USERS)
        row = await self._first(table.select("*").eq("id", user_id), "get_user")
        return User.model_validate(row) if row else None

    async def get_user_by_facebook_id(self, facebook_id: str) -> User | None:
        table = await self._table(USERS)
        row = await self._first(
            table.select("*").eq("facebook_id", facebook_id), "get_user_by_facebook_id"
        )
        return User.model_validate(row) if row else None

    async def save_user(self, user: User) -> User:
        user.updated_at = utc_now()
        table = await self._table(USERS)
        await self._execute(table.upsert(_row(user)), "save_user")
        return user

    # ==================== Page Operations ====================

    async def get_page(self, page_id: str) -> FacebookPage | None:
        table = await self._table(PAGES)
        row = await self._first(table.select("*").eq("id", page_id), "get_page")
        return FacebookPage.model_validate(row) if row else None

    async def get_page_by_facebook_id(
        self,
        facebook_page_id: str,
        user_id: str | None = None,
    ) -> FacebookPage | None:
        table = await self._table(PAGES)
        query = table.select("*").eq("facebook_page_id", facebook_page_id)
        if user_id:
            query = query.eq("user_id", user_id)
        row = await self._first(query, "get_page_by_facebook_id")
        return FacebookPage.model_validate(row) if row else None

    async def list_pages(
        self,
        user_id: str | None = None,
        active_only: bool = False,
    ) -> list[FacebookPage]:
        table = await self._table(PAGES)
        query = table.select("*")
        if user_id:
            query = query.eq("user_id", user_id)
        if active_only:
            query = query.eq("is_active", True)
        rows = await self._execute(query.order("name"), "list_pages")
        return [FacebookPage.model_validate(r) for r in rows]

    async def save_page(self, page: FacebookPage) -> FacebookPage:
        page.updated_at = utc_now()
        table = await self._table(PAGES)
        await self._execute(table.upsert(_row(page)), "save_page")
        return page

    async def delete_page(self, page_id: str) -> bool:
        table = await self._table(PAGES)
        rows = await self._execute(table.delete().eq("id", page_id), "delete_page")
        return bool(rows)

    # ==================== Conversation Operations ====================

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        table = await self._table(CONVERSATIONS)
        row = await self._first(table.select("*").eq("id", conversation_id), "get_conversation")
        return Conversation.model_validate(row) if row else None

    async def get_conversation_by_sender(
        self,
        page_id: str,
        sender_id: str,
    ) -> Conversation | None:
        table = await self._table(CONVERSATIONS)
        row = await self._first(
            table.select("*").eq("page_id", page_id).eq("sender_id", sender_id),
            "get_conversation_by_sender",
        )
        return Conversation.model_validate(row) if row else None

    async def save_conversation(self, conversation: Conversation) -> Conversation:
        conversation.updated_at = utc_now()
        table = await self._table(CONVERSATIONS)
        await self._execute(table.upsert(_row(conversation)), "save_conversation")
        return conversation

    async def upsert_conversations(
        self,
        conversations: list[Conversation],
    ) -> tuple[int, int]:
        if not conversations:
            return 0, 0

        # Resolve existing ids per page so updates keep their primary key
        existing: dict[tuple[str, str], dict[str, Any]] = {}
        by_page: dict[str, list[str]] = {}
        for conv in conversations:
            by_page.setdefault(conv.page_id, []).append(conv.sender_id)
        for page_id, sender_ids in by_page.items():
            table = await self._table(CONVERSATIONS)
            rows = await self._execute(
                table.select("id, sender_id, created_at")
                .eq("page_id", page_id)
                .in_("sender_id", sender_ids),
                "upsert_conversations.lookup",
            )
            for row in rows:
                existing[(page_id, row["sender_id"])] = row

        inserted = updated = 0
        now = utc_now()
        for conv in conversations:
            found = existing.get((conv.page_id, conv.sender_id))
            if found:
                conv.id = found["id"]
                conv.created_at = datetime.fromisoformat(found["created_at"])
                updated += 1
            else:
                inserted += 1
            conv.updated_at = now

        table = await self._table(CONVERSATIONS)
        await self._execute(
            table.upsert([_row(c) for c in conversations], on_conflict="page_id,sender_id"),
            "upsert_conversations",
        )
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
        if page_ids is not None and not page_ids:
            return [], 0

        table = await self._table(CONVERSATIONS)
        query = table.select("*", count="exact")
        if page_ids is not None:
            query = query.in_("page_id", page_ids)
        if status:
            query = query.eq("conversation_status", status.value)
        if start_date:
            query = query.gte("last_message_time", start_date.isoformat())
        if end_date:
            query = query.lte("last_message_time", end_date.isoformat())
        if last_message_before:
            query = query.lt("last_message_time", last_message_before.isoformat())
        query = query.order("last_message_time", desc=True)
        if limit is not None:
            query = query.range(offset, offset + limit - 1)

        try:
            response = await self._execute_with_retry(query)
        except Exception as e:
            logger.error("Supabase query failed", operation="list_conversations", error=str(e))
            raise StorageError("Storage operation failed: list_conversations") from e

        rows = response.data or []
        total = response.count if response.count is not None else len(rows)
        return [Conversation.model_validate(r) for r in rows], total

    # ==================== Tag Operations ====================

    async def get_tag(self, tag_id: str) -> Tag | None:
        table = await self._table(TAGS)
        row = await self._first(table.select("*").eq("id", tag_id), "get_tag")
        return Tag.model_validate(row) if row else None

    async def get_tag_by_name(self, user_id: str, name: str) -> Tag | None:
        table = await self._table(TAGS)
        row = await self._first(
            table.select("*").eq("created_by", user_id).eq("name", name), "get_tag_by_name"
        )
        return Tag.model_validate(row) if row else None

    async def list_tags(self, user_id: str) -> list[Tag]:
        table = await self._table(TAGS)
        rows = await self._execute(
            table.select("*").eq("created_by", user_id).order("name"), "list_tags"
        )
        return [Tag.model_validate(r) for r in rows]

    async def save_tag(self, tag: Tag) -> Tag:
        table = await self._table(TAGS)
        await self._execute(table.upsert(_row(tag)), "save_tag")
        return tag

    async def delete_tag(self, tag_id: str) -> bool:
        assignments = await self._table(CONVERSATION_TAGS)
        await self._execute(assignments.delete().eq("tag_id", tag_id), "delete_tag.assignments")
        table = await self._table(TAGS)
        rows = await self._execute(table.delete().eq("id", tag_id), "delete_tag")
        return bool(rows)

    async def list_conversation_tags(self, conversation_id: str) -> list[Tag]:
        assignments = await self._table(CONVERSATION_TAGS)
        rows = await self._execute(
            assignments.select("tag_id").eq("conversation_id", conversation_id),
            "list_conversation_tags",
        )
        tag_ids = [r["tag_id"] for r in rows]
        if not tag_ids:
            return []
        table = await self._table(TAGS)
        tag_rows = await self._execute(
            table.select("*").in_("id", tag_ids).order("name"), "list_conversation_tags.tags"
        )
        return [Tag.model_validate(r) for r in tag_rows]

    async def add_conversation_tags(self, assignments: list[ConversationTag]) -> int:
        if not assignments:
            return 0
        table = await self._table(CONVERSATION_TAGS)
        rows = await self._execute(
            table.upsert(
                [_row(a) for a in assignments],
                on_conflict="conversation_id,tag_id",
                ignore_duplicates=True,
            ),
            "add_conversation_tags",
        )
        return len(rows)

    async def remove_conversation_tags(
        self,
        conversation_ids: list[str],
        tag_ids: list[str],
    ) -> int:
        if not conversation_ids or not tag_ids:
            return 0
        table = await self._table(CONVERSATION_TAGS)
        rows = await self._execute(
            table.delete().in_("conversation_id", conversation_ids).in_("tag_id", tag_ids),
            "remove_conversation_tags",
        )
        return len(rows)

    async def conversation_ids_with_tags(self, tag_ids: list[str]) -> set[str]:
        if not tag_ids:
            return set()
        table = await self._table(CONVERSATION_TAGS)
        rows = await self._execute(
            table.select("conversation_id").in_("tag_id", tag_ids), "conversation_ids_with_tags"
        )
        return {r["conversation_id"] for r in rows}

    # ==================== Message Operations ====================

    async def get_message(self, message_id: str) -> Message | None:
        table = await self._table(MESSAGES)
        row = await self._first(table.select("*").eq("id", message_id), "get_message")
        return Message.model_validate(row) if row else None

    async def save_message(self, message: Message) -> Message:
        message.updated_at = utc_now()
        table = await self._table(MESSAGES)
        await self._execute(table.upsert(_row(message)), "save_message")
        return message

    async def delete_message(self, message_id: str) -> bool:
        for name in (DELIVERIES, BATCHES, ACTIVITY, AUTO_TAGS):
            table = await self._table(name)
            await self._execute(table.delete().eq("message_id", message_id), f"delete_message.{name}")
        table = await self._table(MESSAGES)
        rows = await self._execute(table.delete().eq("id", message_id), "delete_message")
        return bool(rows)

    async def list_messages(
        self,
        created_by: str,
        status: MessageStatus | None = None,
        page_id: str | None = None,
        limit: int = 50,
    ) -> list[Message]:
        table = await self._table(MESSAGES)
        query = table.select("*").eq("created_by", created_by)
        if status:
            query = query.eq("status", status.value)
        if page_id:
            query = query.eq("page_id", page_id)
        rows = await self._execute(
            query.order("created_at", desc=True).limit(limit), "list_messages"
        )
        return [Message.model_validate(r) for r in rows]

    async def list_due_scheduled(self, now: datetime, limit: int) -> list[Message]:
        table = await self._table(MESSAGES)
        rows = await self._execute(
            table.select("*")
            .eq("status", MessageStatus.SCHEDULED.value)
            .lte("scheduled_for", now.isoformat())
            .order("scheduled_for")
            .limit(limit),
            "list_due_scheduled",
        )
        return [Message.model_validate(r) for r in rows]

    async def list_messages_by_status(
        self,
        statuses: list[MessageStatus],
        limit: int = 50,
    ) -> list[Message]:
        table = await self._table(MESSAGES)
        rows = await self._execute(
            table.select("*")
            .in_("status", [s.value for s in statuses])
            .order("created_at", desc=True)
            .limit(limit),
            "list_messages_by_status",
        )
        return [Message.model_validate(r) for r in rows]

    # ==================== Batch Operations ====================

    async def get_batch(self, batch_id: str) -> MessageBatch | None:
        table = await self._table(BATCHES)
        row = await self._first(table.select("*").eq("id", batch_id), "get_batch")
        return MessageBatch.model_validate(row) if row else None

    async def save_batches(self, batches: list[MessageBatch]) -> list[MessageBatch]:
        if not batches:
            return batches
        now = utc_now()
        for batch in batches:
            batch.updated_at = now
        table = await self._table(BATCHES)
        await self._execute(table.upsert([_row(b) for b in batches]), "save_batches")
        return batches

    async def save_batch(self, batch: MessageBatch) -> MessageBatch:
        batch.updated_at = utc_now()
        table = await self._table(BATCHES)
        await self._execute(table.upsert(_row(batch)), "save_batch")
        return batch

    async def list_batches(self, message_id: str) -> list[MessageBatch]:
        table = await self._table(BATCHES)
        rows = await self._execute(
            table.select("*").eq("message_id", message_id).order("batch_number"), "list_batches"
        )
        return [MessageBatch.model_validate(r) for r in rows]

    async def next_open_batch(self, message_id: str) -> MessageBatch | None:
        table = await self._table(BATCHES)
        row = await self._first(
            table.select("*")
            .eq("message_id", message_id)
            .eq("status", BatchStatus.PENDING.value)
            .order("batch_number"),
            "next_open_batch",
        )
        return MessageBatch.model_validate(row) if row else None

    async def claim_batch(self, batch_id: str) -> MessageBatch | None:
        now = utc_now().isoformat()
        table = await self._table(BATCHES)
        # Conditional update: only one worker sees the row come back
        rows = await self._execute(
            table.update(
                {"status": BatchStatus.PROCESSING.value, "started_at": now, "updated_at": now}
            )
            .eq("id", batch_id)
            .eq("status", BatchStatus.PENDING.value),
            "claim_batch",
        )
        return MessageBatch.model_validate(rows[0]) if rows else None

    async def cancel_open_batches(self, message_id: str) -> int:
        now = utc_now().isoformat()
        table = await self._table(BATCHES)
        rows = await self._execute(
            table.update(
                {
                    "status": BatchStatus.CANCELLED.value,
                    "completed_at": now,
                    "updated_at": now,
                }
            )
            .eq("message_id", message_id)
            .in_("status", [BatchStatus.PENDING.value, BatchStatus.PROCESSING.value]),
            "cancel_open_batches",
        )
        return len(rows)

    async def max_batch_number(self, message_id: str) -> int:
        table = await self._table(BATCHES)
        row = await self._first(
            table.select("batch_number")
            .eq("message_id", message_id)
            .order("batch_number", desc=True),
            "max_batch_number",
        )
        return int(row["batch_number"]) if row else 0

    # ==================== Delivery Operations ====================

    async def save_delivery(self, delivery: MessageDelivery) -> MessageDelivery:
        table = await self._table(DELIVERIES)
        await self._execute(table.insert(_row(delivery)), "save_delivery")
        return delivery

    async def list_deliveries(self, message_id: str) -> list[MessageDelivery]:
        table = await self._table(DELIVERIES)
        rows = await self._execute(
            table.select("*").eq("message_id", message_id).order("created_at"), "list_deliveries"
        )
        return [MessageDelivery.model_validate(r) for r in rows]

    async def retryable_deliveries(
        self,
        message_id: str,
        max_attempts: int,
    ) -> list[MessageDelivery]:
        latest: dict[str, MessageDelivery] = {}
        for delivery in await self.list_deliveries(message_id):
            latest[delivery.recipient_id] = delivery
        return [
            d
            for d in latest.values()
            if d.status == DeliveryStatus.FAILED and d.attempt_count < max_attempts
        ]

    # ==================== Activity & Auto-tag Operations ====================

    async def add_activity(self, activity: MessageActivity) -> MessageActivity:
        table = await self._table(ACTIVITY)
        await self._execute(table.insert(_row(activity)), "add_activity")
        return activity

    async def list_activities(self, message_id: str) -> list[MessageActivity]:
        table = await self._table(ACTIVITY)
        rows = await self._execute(
            table.select("*").eq("message_id", message_id).order("created_at"), "list_activities"
        )
        return [MessageActivity.model_validate(r) for r in rows]

    async def get_message_auto_tag(self, message_id: str) -> MessageAutoTag | None:
        table = await self._table(AUTO_TAGS)
        row = await self._first(
            table.select("*").eq("message_id", message_id), "get_message_auto_tag"
        )
        return MessageAutoTag.model_validate(row) if row else None

    async def set_message_auto_tag(self, auto_tag: MessageAutoTag) -> MessageAutoTag:
        table = await self._table(AUTO_TAGS)
        await self._execute(
            table.upsert(_row(auto_tag), on_conflict="message_id"), "set_message_auto_tag"
        )
        return auto_tag

    async def delete_message_auto_tag(self, message_id: str) -> bool:
        table = await self._table(AUTO_TAGS)
        rows = await self._execute(
            table.delete().eq("message_id", message_id), "delete_message_auto_tag"
        )
        return bool(rows)

    # ==================== Automation Operations ====================

    async def get_rule(self, rule_id: str) -> AutomationRule | None:
        table = await self._table(RULES)
        row = await self._first(table.select("*").eq("id", rule_id), "get_rule")
        return AutomationRule.model_validate(row) if row else None

    async def list_rules(
        self,
        user_id: str | None = None,
        enabled: bool | None = None,
    ) -> list[AutomationRule]:
        table = await self._table(RULES)
        query = table.select("*")
        if user_id:
            query = query.eq("user_id", user_id)
        if enabled is not None:
            query = query.eq("enabled", enabled)
        rows = await self._execute(query.order("created_at"), "list_rules")
        return [AutomationRule.model_validate(r) for r in rows]

    async def save_rule(self, rule: AutomationRule) -> AutomationRule:
        rule.updated_at = utc_now()
        table = await self._table(RULES)
        await self._execute(table.upsert(_row(rule)), "save_rule")
        return rule

    async def delete_rule(self, rule_id: str) -> bool:
        for name in (EXECUTIONS, STOPS):
            table = await self._table(name)
            await self._execute(table.delete().eq("rule_id", rule_id), f"delete_rule.{name}")
        table = await self._table(RULES)
        rows = await self._execute(table.delete().eq("id", rule_id), "delete_rule")
        return bool(rows)

    async def save_execution(self, execution: AutomationExecution) -> AutomationExecution:
        table = await self._table(EXECUTIONS)
        await self._execute(table.insert(_row(execution)), "save_execution")
        return execution

    async def list_executions(
        self,
        rule_id: str,
        conversation_id: str | None = None,
        since: datetime | None = None,
        status: ExecutionStatus | None = None,
    ) -> list[AutomationExecution]:
        table = await self._table(EXECUTIONS)
        query = table.select("*").eq("rule_id", rule_id)
        if conversation_id:
            query = query.eq("conversation_id", conversation_id)
        if since:
            query = query.gte("created_at", since.isoformat())
        if status:
            query = query.eq("status", status.value)
        rows = await self._execute(query.order("created_at"), "list_executions")
        return [AutomationExecution.model_validate(r) for r in rows]

    async def list_stops(self, rule_id: str) -> list[AutomationStop]:
        table = await self._table(STOPS)
        rows = await self._execute(table.select("*").eq("rule_id", rule_id), "list_stops")
        return [AutomationStop.model_validate(r) for r in rows]

    async def save_stop(self, stop: AutomationStop) -> AutomationStop:
        table = await self._table(STOPS)
        await self._execute(
            table.upsert(_row(stop), on_conflict="rule_id,conversation_id"), "save_stop"
        )
        return stop

    # ==================== Contact Timing Operations ====================

    async def save_contact_event(self, event: ContactEvent) -> ContactEvent:
        table = await self._table(CONTACT_EVENTS)
        await self._execute(table.upsert(_row(event)), "save_contact_event")
        return event

    async def list_contact_events(self, conversation_id: str) -> list[ContactEvent]:
        table = await self._table(CONTACT_EVENTS)
        rows = await self._execute(
            table.select("*").eq("conversation_id", conversation_id).order("event_timestamp"),
            "list_contact_events",
        )
        return [ContactEvent.model_validate(r) for r in rows]

    async def get_timing_config(self, user_id: str) -> TimingConfig | None:
        table = await self._table(TIMING_CONFIG)
        row = await self._first(table.select("*").eq("user_id", user_id), "get_timing_config")
        return TimingConfig.model_validate(row) if row else None

    async def save_timing_config(self, config: TimingConfig) -> TimingConfig:
        config.updated_at = utc_now()
        table = await self._table(TIMING_CONFIG)
        await self._execute(table.upsert(_row(config), on_conflict="user_id"), "save_timing_config")
        return config

    async def get_recommendation(self, conversation_id: str) -> ContactRecommendation | None:
        table = await self._table(RECOMMENDATIONS)
        row = await self._first(
            table.select("*").eq("conversation_id", conversation_id), "get_recommendation"
        )
        return ContactRecommendation.model_validate(row) if row else None

    async def save_recommendation(self, recommendation: ContactRecommendation) -> ContactRecommendation:
        table = await self._table(RECOMMENDATIONS)
        await self._execute(
            table.upsert(_row(recommendation), on_conflict="conversation_id"), "save_recommendation"
        )
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
        table = await self._table(RECOMMENDATIONS)
        query = table.select("*", count="exact").eq("user_id", user_id)
        if page_id:
            query = query.eq("page_id", page_id)
        if min_confidence > 0:
            query = query.gte("max_confidence", min_confidence)
        if search:
            query = query.ilike("sender_name", f"%{search}%")
        if active_only:
            query = query.eq("is_active", True)
        if available_at:
            query = query.or_(f"cooldown_until.is.null,cooldown_until.lte.{available_at.isoformat()}")
        query = query.order(sort_by, desc=descending, nullsfirst=False).range(offset, offset + limit - 1)

        try:
            response = await self._execute_with_retry(query)
        except Exception as e:
            logger.error("Supabase query failed", operation="list_recommendations", error=str(e))
            raise StorageError("Storage operation failed: list_recommendations") from e

        rows = response.data or []
        total = response.count if response.count is not None else len(rows)
        return [ContactRecommendation.model_validate(r) for r in rows], total

    async def list_segment_priors(self, user_id: str) -> list[SegmentPrior]:
        table = await self._table(SEGMENT_PRIORS)
        rows = await self._execute(
            table.select("*").eq("user_id", user_id).order("hour_of_week"), "list_segment_priors"
        )
        return [SegmentPrior.model_validate(r) for r in rows]

    async def replace_segment_priors(self, user_id: str, priors: list[SegmentPrior]) -> None:
        table = await self._table(SEGMENT_PRIORS)
        await self._execute(table.delete().eq("user_id", user_id), "replace_segment_priors.delete")
        if priors:
            await self._execute(table.insert([_row(p) for p in priors]), "replace_segment_priors")

    # ==================== Pipeline Operations ====================

    async def list_stages(self, user_id: str, active_only: bool = True) -> list[PipelineStage]:
        table = await self._table(STAGES)
        query = table.select("*").eq("user_id", user_id)
        if active_only:
            query = query.eq("is_active", True)
        rows = await self._execute(query.order("position"), "list_stages")
        return [PipelineStage.model_validate(r) for r in rows]

    async def get_stage(self, stage_id: str) -> PipelineStage | None:
        table = await self._table(STAGES)
        row = await self._first(table.select("*").eq("id", stage_id), "get_stage")
        return PipelineStage.model_validate(row) if row else None

    async def save_stage(self, stage: PipelineStage) -> PipelineStage:
        stage.updated_at = utc_now()
        table = await self._table(STAGES)
        await self._execute(table.upsert(_row(stage)), "save_stage")
        return stage

    async def get_pipeline_settings(self, user_id: str) -> PipelineSettings | None:
        table = await self._table(PIPELINE_SETTINGS)
        row = await self._first(table.select("*").eq("user_id", user_id), "get_pipeline_settings")
        return PipelineSettings.model_validate(row) if row else None

    async def save_pipeline_settings(self, settings: PipelineSettings) -> PipelineSettings:
        settings.updated_at = utc_now()
        table = await self._table(PIPELINE_SETTINGS)
        await self._execute(
            table.upsert(_row(settings), on_conflict="user_id"), "save_pipeline_settings"
        )
        return settings

    async def list_opportunities(self, user_id: str, stage_id: str | None = None) -> list[Opportunity]:
        table = await self._table(OPPORTUNITIES)
        query = table.select("*").eq("user_id", user_id)
        if stage_id:
            query = query.eq("stage_id", stage_id)
        rows = await self._execute(query.order("created_at", desc=True), "list_opportunities")
        return [Opportunity.model_validate(r) for r in rows]

    async def get_opportunity(self, opportunity_id: str) -> Opportunity | None:
        table = await self._table(OPPORTUNITIES)
        row = await self._first(table.select("*").eq("id", opportunity_id), "get_opportunity")
        return Opportunity.model_validate(row) if row else None

    async def get_opportunity_by_conversation(self, user_id: str, conversation_id: str) -> Opportunity | None:
        table = await self._table(OPPORTUNITIES)
        row = await self._first(
            table.select("*").eq("user_id", user_id).eq("conversation_id", conversation_id),
            "get_opportunity_by_conversation",
        )
        return Opportunity.model_validate(row) if row else None

    async def save_opportunity(self, opportunity: Opportunity) -> Opportunity:
        opportunity.updated_at = utc_now()
        table = await self._table(OPPORTUNITIES)
        await self._execute(table.upsert(_row(opportunity)), "save_opportunity")
        return opportunity

    async def add_stage_change(self, change: StageChange) -> StageChange:
        table = await self._table(STAGE_HISTORY)
        await self._execute(table.insert(_row(change)), "add_stage_change")
        return change

    async def list_stage_changes(self, opportunity_id: str) -> list[StageChange]:
        table = await self._table(STAGE_HISTORY)
        rows = await self._execute(
            table.select("*").eq("opportunity_id", opportunity_id).order("created_at"),
            "list_stage_changes",
        )
        return [StageChange.model_validate(r) for r in rows]

    # ==================== Media Operations ====================

    async def upload_media(self, path: str, content: bytes, content_type: str) -> str:
        client = await self._ensure_initialized()
        bucket = client.storage.from_(self._bucket)
        try:
            await bucket.upload(path, content, {"content-type": content_type, "upsert": "false"})
        except Exception as e:
            logger.error("Media upload failed", path=path, error=str(e))
            raise StorageError(f"Failed to upload {path}", operation="upload_media") from e
        return await bucket.get_public_url(path)

    # ==================== Health Check ====================

    async def health_check(self) -> bool:
        try:
            table = await self._table(USERS)
            await self._execute(table.select("id").limit(1), "health_check")
            return True
        except StorageError:
            return False
