"""Best-time-to-contact models."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from messenger_outreach.models.common import new_id, utc_now

HOURS_PER_WEEK = 168


class ContactEventType(str, Enum):
    MESSAGE_SENT = "message_sent"
    MESSAGE_DELIVERED = "message_delivered"
    MESSAGE_OPENED = "message_opened"
    MESSAGE_CLICKED = "message_clicked"
    MESSAGE_REPLIED = "message_replied"
    CALL_INITIATED = "call_initiated"
    CALL_COMPLETED = "call_completed"
    MEETING_SCHEDULED = "meeting_scheduled"
    MEETING_ATTENDED = "meeting_attended"


# Credit an event type gives the attempt it answers
SUCCESS_WEIGHTS: dict[ContactEventType, float] = {
    ContactEventType.MESSAGE_REPLIED: 1.0,
    ContactEventType.MESSAGE_CLICKED: 0.5,
    ContactEventType.MESSAGE_OPENED: 0.25,
    ContactEventType.CALL_COMPLETED: 1.0,
    ContactEventType.MEETING_ATTENDED: 1.0,
}


class ContactEvent(BaseModel):
    """One interaction with a contact.

    Outbound events are contact attempts; an attempt that got a response
    carries ``is_success``, its ``success_weight`` and ``response_timestamp``.
    """

    id: str = Field(default_factory=new_id)
    user_id: str
    conversation_id: str
    sender_id: str
    event_type: ContactEventType
    event_timestamp: datetime = Field(default_factory=utc_now)
    response_timestamp: datetime | None = None
    message_id: str | None = None
    channel: str = "messenger"
    is_outbound: bool = True
    is_success: bool = False
    success_weight: float = 0.0
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def response_latency_hours(self) -> float | None:
        if self.response_timestamp is None:
            return None
        return (self.response_timestamp - self.event_timestamp).total_seconds() / 3600


class TimezoneConfidence(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TimezoneSource(str, Enum):
    DEFAULT = "default"
    ACTIVITY = "inferred_from_messages"
    LOCATION = "location"
    MANUAL = "manual_override"


class TimezoneInference(BaseModel):
    timezone: str = "UTC"
    confidence: TimezoneConfidence = TimezoneConfidence.LOW
    source: TimezoneSource = TimezoneSource.DEFAULT


class TimingConfig(BaseModel):
    """Tuning of the contact timing model, stored per user."""

    user_id: str | None = None

    # Two-speed exponential decay of old events, per day
    lambda_fast: float = 0.05
    lambda_slow: float = 0.01

    # Beta prior and pooling strength towards the user's global prior
    alpha_prior: float = 1.0
    beta_prior: float = 1.0
    hierarchical_kappa: float = 5.0
    epsilon_exploration: float = Field(default=0.08, ge=0, le=1)

    success_weight_reply: float = 1.0
    success_weight_click: float = 0.5
    success_weight_open: float = 0.25
    # Decay of success credit per hour of response latency
    survival_gamma: float = 0.05

    top_k_windows: int = Field(default=6, ge=1)
    min_spacing_hours: int = Field(default=4, ge=0)
    daily_attempt_cap: int = 2
    weekly_attempt_cap: int = 5
    success_window_hours: int = Field(default=24, ge=1)

    # Composite score weights
    w1_confidence: float = 0.6
    w2_recency: float = 0.2
    w3_priority: float = 0.2

    quiet_hours_start: str | None = Field(default=None, pattern=r"^\d{2}:\d{2}$")
    quiet_hours_end: str | None = Field(default=None, pattern=r"^\d{2}:\d{2}$")
    preferred_days: list[int] = Field(default_factory=list)

    updated_at: datetime = Field(default_factory=utc_now)

    def success_weight(self, event_type: ContactEventType) -> float:
        if event_type == ContactEventType.MESSAGE_CLICKED:
            return self.success_weight_click
        if event_type == ContactEventType.MESSAGE_OPENED:
            return self.success_weight_open
        if event_type == ContactEventType.MESSAGE_REPLIED:
            return self.success_weight_reply
        return SUCCESS_WEIGHTS.get(event_type, 0.0)


class HourBin(BaseModel):
    """Decayed attempt and success mass for one hour of the week."""

    hour_of_week: int
    trials_count: float = 0.0
    success_count: float = 0.0
    raw_probability: float = 0.0
    smoothed_probability: float = 0.0
    sample: float | None = None


class SegmentPrior(BaseModel):
    """Attempts and successes of every contact of a user for one hour of the week."""

    user_id: str
    hour_of_week: int
    trials_count: float = 0.0
    success_count: float = 0.0
    contact_count: int = 0

    @property
    def response_rate(self) -> float:
        return self.success_count / self.trials_count if self.trials_count else 0.0


class ContactWindow(BaseModel):
    """One recommended hour, in the contact's local time."""

    dow: str
    start: str
    end: str
    confidence: float
    hour_of_week: int


class TimingResult(BaseModel):
    recommended_windows: list[ContactWindow] = Field(default_factory=list)
    max_confidence: float = 0.0
    recency_score: float = 0.0
    priority_score: float = 0.0
    composite_score: float = 0.0
    bins: list[HourBin] = Field(default_factory=list)


class ContactRecommendation(BaseModel):
    """Best contact times of one conversation; unique on conversation_id."""

    id: str = Field(default_factory=new_id)
    user_id: str
    conversation_id: str
    sender_id: str
    sender_name: str | None = None
    page_id: str | None = Field(default=None, description="Facebook page id")

    timezone: str = "UTC"
    timezone_confidence: TimezoneConfidence = TimezoneConfidence.LOW
    timezone_source: TimezoneSource = TimezoneSource.DEFAULT

    recommended_windows: list[ContactWindow] = Field(default_factory=list)
    max_confidence: float = 0.0
    recency_score: float = 0.0
    priority_score: float = 0.5
    composite_score: float = 0.0
    bins: list[HourBin] = Field(default_factory=list, description="Bins with any attempt mass")

    last_positive_signal_at: datetime | None = None
    last_contact_attempt_at: datetime | None = None
    total_attempts: int = 0
    total_successes: int = 0
    overall_response_rate: float = 0.0

    is_active: bool = True
    cooldown_until: datetime | None = None
    notes: str | None = None
    last_computed_at: datetime = Field(default_factory=utc_now)

    def in_cooldown(self, now: datetime | None = None) -> bool:
        return self.cooldown_until is not None and self.cooldown_until > (now or utc_now())
