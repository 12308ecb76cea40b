"""Abstract base class for storage backends."""

from abc import ABC, abstractmethod
from datetime import datetime

from messenger_outreach.models import (
    AutomationExecution,
    AutomationRule,
    AutomationStop,
    ContactEvent,
    ContactRecommendation,
    Conversation,
    ConversationStatus,
    ConversationTag,
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
)


class StorageBackend(ABC):
    """Abstract storage backend interface."""

    # ==================== User Operations ====================

    @abstractmethod
    async def get_user(self, user_id: str) -> User | None:
        """Get a user by ID."""
        ...

    @abstractmethod
    async def get_user_by_facebook_id(self, facebook_id: str) -> User | None:
        ...

    @abstractmethod
    async def save_user(self, user: User) -> User:
        """Save or update a user."""
        ...

    # ==================== Page Operations ====================

    @abstractmethod
    async def get_page(self, page_id: str) -> FacebookPage | None:
        """Get a page by internal ID."""
        ...

    @abstractmethod
    async def get_page_by_facebook_id(
        self,
        facebook_page_id: str,
        user_id: str | None = None,
    ) -> FacebookPage | None:
        """Get a page by its Facebook ID, optionally scoped to an owner."""
        ...

    @abstractmethod
    async def list_pages(
        self,
        user_id: str | None = None,
        active_only: bool = False,
    ) -> list[FacebookPage]:
        ...

    @abstractmethod
    async def save_page(self, page: FacebookPage) -> FacebookPage:
        ...

    @abstractmethod
    async def delete_page(self, page_id: str) -> bool:
        ...

    # ==================== Conversation Operations ====================

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        """Get a conversation by ID."""
        ...

    @abstractmethod
    async def get_conversation_by_sender(
        self,
        page_id: str,
        sender_id: str,
    ) -> Conversation | None:
        """Get the conversation for a (Facebook page id, sender id) pair."""
        ...

    @abstractmethod
    async def save_conversation(self, conversation: Conversation) -> Conversation:
        """Save or update a conversation."""
        ...

    @abstractmethod
    async def upsert_conversations(
        self,
        conversations: list[Conversation],
    ) -> tuple[int, int]:
        """Insert or update conversations keyed on (page_id, sender_id).

        Existing rows keep their id and creation time.

        Returns:
            (inserted, updated) counts
        """
        ...

    @abstractmethod
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
        """List conversations newest first.

        Args:
            page_ids: Facebook page ids to include, all pages if None
            status: Conversation status filter
            start_date: Earliest last_message_time
            end_date: Latest last_message_time
            last_message_before: Only conversations quiet since this time
            limit: Page size, no limit if None
            offset: Rows to skip

        Returns:
            (page of conversations, total matching)
        """
        ...

    # ==================== Tag Operations ====================

    @abstractmethod
    async def get_tag(self, tag_id: str) -> Tag | None:
        ...

    @abstractmethod
    async def get_tag_by_name(self, user_id: str, name: str) -> Tag | None:
        ...

    @abstractmethod
    async def list_tags(self, user_id: str) -> list[Tag]:
        ...

    @abstractmethod
    async def save_tag(self, tag: Tag) -> Tag:
        ...

    @abstractmethod
    async def delete_tag(self, tag_id: str) -> bool:
        """Delete a tag and its conversation assignments."""
        ...

    @abstractmethod
    async def list_conversation_tags(self, conversation_id: str) -> list[Tag]:
        """Get the tags assigned to a conversation."""
        ...

    @abstractmethod
    async def add_conversation_tags(self, assignments: list[ConversationTag]) -> int:
        """Assign tags, ignoring pairs that already exist.

        Returns:
            Number of new assignments
        """
        ...

    @abstractmethod
    async def remove_conversation_tags(
        self,
        conversation_ids: list[str],
        tag_ids: list[str],
    ) -> int:
        """Remove every (conversation, tag) pair in the cross product."""
        ...

    @abstractmethod
    async def conversation_ids_with_tags(self, tag_ids: list[str]) -> set[str]:
        """Conversations carrying at least one of ``tag_ids``."""
        ...

    # ==================== Message Operations ====================

    @abstractmethod
    async def get_message(self, message_id: str) -> Message | None:
        """Get a message by ID."""
        ...

    @abstractmethod
    async def save_message(self, message: Message) -> Message:
        """Save a message."""
        ...

    @abstractmethod
    async def delete_message(self, message_id: str) -> bool:
        """Delete a message with its batches, deliveries and activity."""
        ...

    @abstractmethod
    async def list_messages(
        self,
        created_by: str,
        status: MessageStatus | None = None,
        page_id: str | None = None,
        limit: int = 50,
    ) -> list[Message]:
        ...

    @abstractmethod
    async def list_due_scheduled(self, now: datetime, limit: int) -> list[Message]:
        """Scheduled messages whose scheduled_for is at or before ``now``, oldest first."""
        ...

    @abstractmethod
    async def list_messages_by_status(
        self,
        statuses: list[MessageStatus],
        limit: int = 50,
    ) -> list[Message]:
        """Messages of every user in one of ``statuses``, newest first."""
        ...

    # ==================== Batch Operations ====================

    @abstractmethod
    async def get_batch(self, batch_id: str) -> MessageBatch | None:
        ...

    @abstractmethod
    async def save_batches(self, batches: list[MessageBatch]) -> list[MessageBatch]:
        ...

    @abstractmethod
    async def save_batch(self, batch: MessageBatch) -> MessageBatch:
        ...

    @abstractmethod
    async def list_batches(self, message_id: str) -> list[MessageBatch]:
        """Batches of a message ordered by batch_number."""
        ...

    @abstractmethod
    async def next_open_batch(self, message_id: str) -> MessageBatch | None:
        """Lowest-numbered pending batch of a message."""
        ...

    @abstractmethod
    async def claim_batch(self, batch_id: str) -> MessageBatch | None:
        """Move a batch from pending to processing.

        Returns:
            The claimed batch, or None when it was no longer pending
        """
        ...

    @abstractmethod
    async def cancel_open_batches(self, message_id: str) -> int:
        """Mark pending and processing batches cancelled."""
        ...

    @abstractmethod
    async def max_batch_number(self, message_id: str) -> int:
        """Highest batch_number of a message, 0 when it has none."""
        ...

    # ==================== Delivery Operations ====================

    @abstractmethod
    async def save_delivery(self, delivery: MessageDelivery) -> MessageDelivery:
        ...

    @abstractmethod
    async def list_deliveries(self, message_id: str) -> list[MessageDelivery]:
        """Deliveries of a message, oldest first."""
        ...

    @abstractmethod
    async def retryable_deliveries(
        self,
        message_id: str,
        max_attempts: int,
    ) -> list[MessageDelivery]:
        """Latest delivery per recipient where it failed below ``max_attempts``."""
        ...

    # ==================== Activity & Auto-tag Operations ====================

    @abstractmethod
    async def add_activity(self, activity: MessageActivity) -> MessageActivity:
        ...

    @abstractmethod
    async def list_activities(self, message_id: str) -> list[MessageActivity]:
        ...

    @abstractmethod
    async def get_message_auto_tag(self, message_id: str) -> MessageAutoTag | None:
        ...

    @abstractmethod
    async def set_message_auto_tag(self, auto_tag: MessageAutoTag) -> MessageAutoTag:
        """Replace the auto-tag of a message."""
        ...

    @abstractmethod
    async def delete_message_auto_tag(self, message_id: str) -> bool:
        ...

    # ==================== Automation Operations ====================

    @abstractmethod
    async def get_rule(self, rule_id: str) -> AutomationRule | None:
        ...

    @abstractmethod
    async def list_rules(
        self,
        user_id: str | None = None,
        enabled: bool | None = None,
    ) -> list[AutomationRule]:
        ...

    @abstractmethod
    async def save_rule(self, rule: AutomationRule) -> AutomationRule:
        ...

    @abstractmethod
    async def delete_rule(self, rule_id: str) -> bool:
        ...

    @abstractmethod
    async def save_execution(self, execution: AutomationExecution) -> AutomationExecution:
        ...

    @abstractmethod
    async def list_executions(
        self,
        rule_id: str,
        conversation_id: str | None = None,
        since: datetime | None = None,
        status: ExecutionStatus | None = None,
    ) -> list[AutomationExecution]:
        """Executions of a rule, oldest first."""
        ...

    @abstractmethod
    async def list_stops(self, rule_id: str) -> list[AutomationStop]:
        ...

    @abstractmethod
    async def save_stop(self, stop: AutomationStop) -> AutomationStop:
        """Insert or replace the stop for (rule_id, conversation_id)."""
        ...

    # ==================== Contact Timing Operations ====================

    @abstractmethod
    async def save_contact_event(self, event: ContactEvent) -> ContactEvent:
        """Insert or replace an event by id."""
        ...

    @abstractmethod
    async def list_contact_events(self, conversation_id: str) -> list[ContactEvent]:
        """Events of a conversation, oldest first."""
        ...

    @abstractmethod
    async def get_timing_config(self, user_id: str) -> TimingConfig | None:
        ...

    @abstractmethod
    async def save_timing_config(self, config: TimingConfig) -> TimingConfig:
        ...

    @abstractmethod
    async def get_recommendation(self, conversation_id: str) -> ContactRecommendation | None:
        ...

    @abstractmethod
    async def save_recommendation(self, recommendation: ContactRecommendation) -> ContactRecommendation:
        """Insert or replace the recommendation of a conversation."""
        ...

    @abstractmethod
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
        """List recommendations of a user.

        Args:
            page_id: Facebook page id filter
            min_confidence: Lowest max_confidence to include
            search: Case-insensitive substring of sender_name
            active_only: Skip deactivated contacts
            available_at: Skip contacts in cooldown at this time
            sort_by: Field to sort on, missing values last
            descending: Sort direction
            limit: Page size
            offset: Rows to skip

        Returns:
            (page of recommendations, total matching)
        """
        ...

    @abstractmethod
    async def list_segment_priors(self, user_id: str) -> list[SegmentPrior]:
        ...

    @abstractmethod
    async def replace_segment_priors(self, user_id: str, priors: list[SegmentPrior]) -> None:
        ...

    # ==================== Pipeline Operations ====================

    @abstractmethod
    async def list_stages(self, user_id: str, active_only: bool = True) -> list[PipelineStage]:
        """Stages of a user ordered by position."""
        ...

    @abstractmethod
    async def get_stage(self, stage_id: str) -> PipelineStage | None:
        ...

    @abstractmethod
    async def save_stage(self, stage: PipelineStage) -> PipelineStage:
        ...

    @abstractmethod
    async def get_pipeline_settings(self, user_id: str) -> PipelineSettings | None:
        ...

    @abstractmethod
    async def save_pipeline_settings(self, settings: PipelineSettings) -> PipelineSettings:
        ...

    @abstractmethod
    async def list_opportunities(self, user_id: str, stage_id: str | None = None) -> list[Opportunity]:
        """Opportunities of a user, newest first."""
        ...

    @abstractmethod
    async def get_opportunity(self, opportunity_id: str) -> Opportunity | None:
        ...

    @abstractmethod
    async def get_opportunity_by_conversation(self, user_id: str, conversation_id: str) -> Opportunity | None:
        ...

    @abstractmethod
    async def save_opportunity(self, opportunity: Opportunity) -> Opportunity:
        ...

    @abstractmethod
    async def add_stage_change(self, change: StageChange) -> StageChange:
        ...

    @abstractmethod
    async def list_stage_changes(self, opportunity_id: str) -> list[StageChange]:
        """Stage history of an opportunity, oldest first."""
        ...

    # ==================== Media Operations ====================

    @abstractmethod
    async def upload_media(self, path: str, content: bytes, content_type: str) -> str:
        """Store a file and return its public URL."""
        ...

    # ==================== Health Check ====================

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if storage is healthy."""
        ...
