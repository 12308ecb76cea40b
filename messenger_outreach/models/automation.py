"""AI follow-up automation models."""

from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, Field

from messenger_outreach.models.common import new_id, utc_now


class LanguageStyle(str, Enum):
    TAGLISH = "taglish"
    ENGLISH = "english"
    TAGALOG = "tagalog"
    CASUAL = "casual"
    FORMAL = "formal"


class AutomationRule(BaseModel):
    """Rule that sends AI follow-ups to conversations gone quiet."""

    id: str = Field(default_factory=new_id)
    user_id: str
    name: str
    description: str | None = None
    enabled: bool = True

    # Inactivity interval; the first non-empty unit wins
    time_interval_minutes: int | None = None
    time_interval_hours: int | None = None
    time_interval_days: int | None = None

    # Targeting
    page_id: str | None = Field(default=None, description="Internal page id, all pages if empty")
    include_tag_ids: list[str] = Field(default_factory=list)
    exclude_tag_ids: list[str] = Field(default_factory=list)

    # Generation
    custom_prompt: str
    language_style: LanguageStyle = LanguageStyle.TAGLISH
    message_tag: str = "ACCOUNT_UPDATE"

    # Limits
    max_messages_per_day: int = 100
    active_hours_start: int = 9
    active_hours_end: int = 21
    run_24_7: bool = False
    max_follow_ups: int | None = None

    # Reply handling
    stop_on_reply: bool = False
    remove_tag_on_reply: str | None = None

    last_executed_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def inactivity_threshold(self) -> timedelta | None:
        """Interval after which a conversation is due a follow-up."""
        if self.time_interval_minutes:
            return timedelta(minutes=self.time_interval_minutes)
        if self.time_interval_hours:
            return timedelta(hours=self.time_interval_hours)
        if self.time_interval_days:
            return timedelta(days=self.time_interval_days)
        return None

    def is_within_active_hours(self, now: datetime) -> bool:
        if self.run_24_7:
            return True
        return self.active_hours_start <= now.hour < self.active_hours_end


class ExecutionStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"


class AutomationExecution(BaseModel):
    """One follow-up sent (or attempted) by a rule."""

    id: str = Field(default_factory=new_id)
    rule_id: str
    conversation_id: str
    recipient_id: str
    follow_up_number: int = 1
    generated_message: str | None = None
    status: ExecutionStatus
    error_message: str | None = None
    created_at: datetime = Field(default_factory=utc_now)


class StopReason(str, Enum):
    USER_REPLIED = "user_replied"
    MAX_FOLLOW_UPS_REACHED = "max_follow_ups_reached"


class AutomationStop(BaseModel):
    """Marks a conversation as finished for a rule."""

    rule_id: str
    conversation_id: str
    sender_id: str
    stopped_reason: StopReason
    follow_ups_sent: int = 0
    created_at: datetime = Field(default_factory=utc_now)


class AutomationRunResult(BaseModel):
    """Summary of one rule execution."""

    rule_id: str
    skipped_reason: str | None = None
    eligible: int = 0
    sent: int = 0
    failed: int = 0
    stopped: int = 0
