"""Messenger conversation and tagging models."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from messenger_outreach.models.common import new_id, utc_now

DEFAULT_SENDER_NAME = "Facebook User"


class ConversationStatus(str, Enum):
    """Status of a Messenger conversation."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    BLOCKED = "blocked"


class Conversation(BaseModel):
    """One Messenger thread between a page and a person.

    Unique on (page_id, sender_id); page_id is the Facebook page id.
    """

    id: str = Field(default_factory=new_id)
    user_id: str = Field(..., description="Owning user id")
    page_id: str = Field(..., description="Facebook page id")
    sender_id: str = Field(..., description="Page-scoped id of the contact")
    sender_name: str = DEFAULT_SENDER_NAME

    last_message: str | None = None
    last_message_time: datetime | None = None
    conversation_status: ConversationStatus = ConversationStatus.ACTIVE
    message_count: int = 0

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Tag(BaseModel):
    """A user-defined label for conversations."""

    id: str = Field(default_factory=new_id)
    name: str
    color: str = "#3B82F6"
    created_by: str
    created_at: datetime = Field(default_factory=utc_now)


class ConversationTag(BaseModel):
    """Assignment of a tag to a conversation."""

    conversation_id: str
    tag_id: str
    created_at: datetime = Field(default_factory=utc_now)


class IncomingMessengerEvent(BaseModel):
    """Normalized messaging event from a page webhook."""

    page_id: str
    sender_id: str
    recipient_id: str
    text: str | None = None
    timestamp: datetime | None = None
    is_echo: bool = False
    message_id: str | None = None
    raw_payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def contact_id(self) -> str:
        """Id of the person, whichever side sent the event."""
        return self.recipient_id if self.is_echo else self.sender_id


class SyncResult(BaseModel):
    """Outcome of a conversation sync for one page."""

    page_id: str
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    incremental: bool = False
    errors: list[str] = Field(default_factory=list)
