"""Bulk message models and their status machine."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from messenger_outreach.core.exceptions import InvalidStatusTransition
from messenger_outreach.models.common import new_id, utc_now


class MessageStatus(str, Enum):
    """Lifecycle of a bulk message."""

    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    PARTIALLY_SENT = "partially_sent"
    CANCELLED = "cancelled"


MESSAGE_TRANSITIONS: dict[MessageStatus, frozenset[MessageStatus]] = {
    MessageStatus.DRAFT: frozenset({MessageStatus.SCHEDULED, MessageStatus.SENDING}),
    MessageStatus.SCHEDULED: frozenset(
        {MessageStatus.SENDING, MessageStatus.CANCELLED, MessageStatus.DRAFT}
    ),
    MessageStatus.SENDING: frozenset(
        {
            MessageStatus.SENT,
            MessageStatus.FAILED,
            MessageStatus.PARTIALLY_SENT,
            MessageStatus.CANCELLED,
        }
    ),
    # Retrying failed recipients reopens a finished message
    MessageStatus.SENT: frozenset({MessageStatus.SENDING}),
    MessageStatus.FAILED: frozenset({MessageStatus.SENDING}),
    MessageStatus.PARTIALLY_SENT: frozenset({MessageStatus.SENDING}),
    MessageStatus.CANCELLED: frozenset(),
}

FINISHED_STATUSES = frozenset(
    {
        MessageStatus.SENT,
        MessageStatus.FAILED,
        MessageStatus.PARTIALLY_SENT,
        MessageStatus.CANCELLED,
    }
)


class RecipientType(str, Enum):
    """How the recipients of a message are chosen."""

    ALL = "all"
    ACTIVE = "active"
    SELECTED = "selected"


class MediaType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    FILE = "file"


class DeliveryErrorType(str, Enum):
    """Classification of a failed send."""

    ACCESS_TOKEN = "access_token"
    RATE_LIMIT = "rate_limit"
    PERMISSION = "permission"
    INVALID_RECIPIENT = "invalid_recipient"
    NETWORK = "network"
    OTHER = "other"

    @property
    def is_permanent(self) -> bool:
        """Permanent failures are not picked up by automatic retries."""
        return self in (DeliveryErrorType.INVALID_RECIPIENT, DeliveryErrorType.PERMISSION)


class MediaAttachment(BaseModel):
    """A media file attached to a message."""

    type: MediaType = MediaType.FILE
    url: str | None = None
    filename: str | None = None
    size: int | None = None
    mime_type: str | None = None
    is_reusable: bool = True
    error: str | None = None

    @property
    def sendable(self) -> bool:
        return bool(self.url) and not self.error


class Message(BaseModel):
    """A bulk message composed by a user for one page."""

    id: str = Field(default_factory=new_id)
    title: str
    content: str
    page_id: str = Field(..., description="Internal page id")
    created_by: str

    # Recipients
    recipient_type: RecipientType = RecipientType.ALL
    selected_recipients: list[str] = Field(default_factory=list)
    selected_contacts_data: list[dict[str, Any]] = Field(default_factory=list)
    recipient_count: int = 0

    # Delivery
    status: MessageStatus = MessageStatus.DRAFT
    scheduled_for: datetime | None = None
    sent_at: datetime | None = None
    delivered_count: int = 0
    error_message: str | None = None
    message_tag: str | None = None
    media_attachments: list[MediaAttachment] = Field(default_factory=list)

    # Retry policy
    max_retry_attempts: int = 3
    retry_count: int = 0

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def can_transition_to(self, target: MessageStatus) -> bool:
        return target in MESSAGE_TRANSITIONS[self.status]

    def transition_to(self, target: MessageStatus) -> None:
        """Move to ``target`` or raise InvalidStatusTransition.

        Leaving ``sending`` for a final state stamps ``sent_at``.
        """
        if target == self.status:
            return
        if not self.can_transition_to(target):
            raise InvalidStatusTransition("message", self.status.value, target.value)
        self.status = target
        if target in FINISHED_STATUSES:
            self.sent_at = utc_now()
        self.updated_at = utc_now()


class DeliveryStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"


class MessageDelivery(BaseModel):
    """Outcome of sending a message to one recipient."""

    id: str = Field(default_factory=new_id)
    message_id: str
    batch_id: str | None = None
    recipient_id: str
    status: DeliveryStatus
    facebook_message_id: str | None = None
    error_type: DeliveryErrorType | None = None
    error_message: str | None = None
    attempt_count: int = 1
    created_at: datetime = Field(default_factory=utc_now)


class ActivityType(str, Enum):
    CREATED = "created"
    SCHEDULED = "scheduled"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


class MessageActivity(BaseModel):
    """Audit log entry for a message."""

    id: str = Field(default_factory=new_id)
    message_id: str
    activity_type: ActivityType
    description: str = ""
    created_at: datetime = Field(default_factory=utc_now)


class MessageAutoTag(BaseModel):
    """Tag applied to every conversation that successfully receives a message."""

    message_id: str
    tag_id: str
    created_at: datetime = Field(default_factory=utc_now)


class OutgoingMessage(BaseModel):
    """Message to be sent to one recipient."""

    recipient_id: str
    content: str = ""
    attachments: list[MediaAttachment] = Field(default_factory=list)
    message_tag: str | None = None
    page_access_token: str


class SendResult(BaseModel):
    """Result of sending one OutgoingMessage; failures are data, not exceptions."""

    recipient_id: str
    success: bool
    message_id: str | None = None
    error: str | None = None
    error_type: DeliveryErrorType | None = None
    retry_after: float | None = None
