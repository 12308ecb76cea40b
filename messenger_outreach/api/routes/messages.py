"""Bulk message endpoints: compose, send in batches, cancel and retry."""

from datetime import datetime
from typing import Any

import structlog
from fastapi import APIRouter, BackgroundTasks, status
from pydantic import BaseModel, Field, field_validator

from messenger_outreach.api.dependencies import (
    CurrentUserDep,
    DispatcherDep,
    SettingsDep,
    StorageDep,
    TagServiceDep,
)
from messenger_outreach.api.routes.pages import get_owned_page
from messenger_outreach.core.exceptions import Conflict, NotFound, ValidationFailed
from messenger_outreach.models import (
    ActivityType,
    DeliveryErrorType,
    MediaAttachment,
    Message,
    MessageActivity,
    MessageAutoTag,
    MessageBatch,
    MessageStatus,
    RecipientType,
    as_utc,
    utc_now,
)
from messenger_outreach.services.dispatch.batching import summarize_batches
from messenger_outreach.storage.base import StorageBackend

logger = structlog.get_logger()

router = APIRouter(prefix="/messages", tags=["Messages"])


# ==================== Pydantic Schemas ====================


class MessageCreate(BaseModel):
    """Schema for composing a message."""

    title: str = Field(..., min_length=1, max_length=200)
    content: str = ""
    page_id: str
    recipient_type: RecipientType = RecipientType.ALL
    selected_recipients: list[str] = Field(default_factory=list)
    selected_contacts_data: list[dict[str, Any]] = Field(default_factory=list)
    scheduled_for: datetime | None = None
    message_tag: str | None = None
    media_attachments: list[MediaAttachment] = Field(default_factory=list)
    max_retry_attempts: int = Field(default=3, ge=1, le=10)

    @field_validator("scheduled_for")
    @classmethod
    def scheduled_for_as_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)


class MessageUpdate(BaseModel):
    """Schema for editing a message that is not being sent."""

    title: str | None = Field(default=None, min_length=1, max_length=200)
    content: str | None = None
    recipient_type: RecipientType | None = None
    selected_recipients: list[str] | None = None
    selected_contacts_data: list[dict[str, Any]] | None = None
    scheduled_for: datetime | None = None
    unschedule: bool = False
    message_tag: str | None = None
    media_attachments: list[MediaAttachment] | None = None

    @field_validator("scheduled_for")
    @classmethod
    def scheduled_for_as_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)


class MessageDetail(BaseModel):
    message: Message
    progress: dict[str, Any]
    activities: list[MessageActivity]
    auto_tag: MessageAutoTag | None = None


class BatchList(BaseModel):
    batches: list[MessageBatch]
    totals: dict[str, Any]


class ResendRequest(BaseModel):
    recipient_ids: list[str] | None = None
    error_types: list[DeliveryErrorType] | None = None


class AutoTagConfig(BaseModel):
    tag_id: str | None = Field(default=None, description="Tag to apply, clears the auto-tag if empty")


def _check_content(content: str, attachments: list[MediaAttachment]) -> None:
    if not content.strip() and not any(a.sendable for a in attachments):
        raise ValidationFailed("Message content or a media attachment is required")


def _check_recipients(recipient_type: RecipientType, selected: list[str]) -> None:
    if recipient_type == RecipientType.SELECTED and not selected:
        raise ValidationFailed("selected_recipients is required when recipient_type is selected")


async def get_owned_message(storage: StorageBackend, user_id: str, message_id: str) -> Message:
    message = await storage.get_message(message_id)
    if message is None or message.created_by != user_id:
        raise NotFound("Message", message_id)
    return message


async def _add_activity(
    storage: StorageBackend,
    message: Message,
    activity_type: ActivityType,
    description: str,
) -> None:
    await storage.add_activity(
        MessageActivity(message_id=message.id, activity_type=activity_type, description=description)
    )


# ==================== Message Endpoints ====================


@router.get("", response_model=list[Message])
async def list_messages(
    user: CurrentUserDep,
    storage: StorageDep,
    status: MessageStatus | None = None,
    page_id: str | None = None,
    limit: int = 50,
) -> list[Message]:
    return await storage.list_messages(user.id, status=status, page_id=page_id, limit=min(max(limit, 1), 200))


@router.post("", response_model=Message, status_code=status.HTTP_201_CREATED)
async def create_message(data: MessageCreate, user: CurrentUserDep, storage: StorageDep) -> Message:
    """Create a draft, or a scheduled message when ``scheduled_for`` is set."""
    await get_owned_page(storage, user.id, data.page_id)
    _check_content(data.content, data.media_attachments)
    _check_recipients(data.recipient_type, data.selected_recipients)
    if data.scheduled_for is not None and data.scheduled_for <= utc_now():
        raise ValidationFailed("scheduled_for must be in the future")

    message = Message(
        title=data.title.strip(),
        content=data.content,
        page_id=data.page_id,
        created_by=user.id,
        recipient_type=data.recipient_type,
        selected_recipients=data.selected_recipients,
        selected_contacts_data=data.selected_contacts_data,
        recipient_count=len(data.selected_recipients),
        message_tag=data.message_tag,
        media_attachments=data.media_attachments,
        max_retry_attempts=data.max_retry_attempts,
    )
    if data.scheduled_for is not None:
        message.scheduled_for = data.scheduled_for
        message.transition_to(MessageStatus.SCHEDULED)

    await storage.save_message(message)
    await _add_activity(storage, message, ActivityType.CREATED, f'Message "{message.title}" created')
    if message.status == MessageStatus.SCHEDULED:
        await _add_activity(
            storage,
            message,
            ActivityType.SCHEDULED,
            f'Message "{message.title}" scheduled for {message.scheduled_for.isoformat()}',
        )

    logger.info("Message created", message_id=message.id, status=message.status.value)
    return message


@router.get("/{message_id}", response_model=MessageDetail)
async def get_message(message_id: str, user: CurrentUserDep, storage: StorageDep) -> MessageDetail:
    message = await get_owned_message(storage, user.id, message_id)
    batches = await storage.list_batches(message_id)
    return MessageDetail(
        message=message,
        progress=summarize_batches(batches).to_dict(),
        activities=await storage.list_activities(message_id),
        auto_tag=await storage.get_message_auto_tag(message_id),
    )


@router.patch("/{message_id}", response_model=Message)
async def update_message(
    message_id: str,
    data: MessageUpdate,
    user: CurrentUserDep,
    storage: StorageDep,
) -> Message:
    """Edit a message; scheduling moves it between draft and scheduled."""
    message = await get_owned_message(storage, user.id, message_id)
    if message.status == MessageStatus.SENDING:
        raise Conflict("Cannot edit a message while it is being sent", details={"id": message_id})

    if data.title is not None:
        message.title = data.title.strip()
    if data.content is not None:
        message.content = data.content
    if data.recipient_type is not None:
        message.recipient_type = data.recipient_type
    if data.selected_recipients is not None:
        message.selected_recipients = data.selected_recipients
        message.recipient_count = len(data.selected_recipients)
    if data.selected_contacts_data is not None:
        message.selected_contacts_data = data.selected_contacts_data
    if data.message_tag is not None:
        message.message_tag = data.message_tag or None
    if data.media_attachments is not None:
        message.media_attachments = data.media_attachments

    _check_content(message.content, message.media_attachments)
    _check_recipients(message.recipient_type, message.selected_recipients)

    scheduled = False
    if data.unschedule:
        message.scheduled_for = None
        if message.status == MessageStatus.SCHEDULED:
            message.transition_to(MessageStatus.DRAFT)
    elif data.scheduled_for is not None:
        if data.scheduled_for <= utc_now():
            raise ValidationFailed("scheduled_for must be in the future")
        message.transition_to(MessageStatus.SCHEDULED)
        message.scheduled_for = data.scheduled_for
        scheduled = True

    message.updated_at = utc_now()
    await storage.save_message(message)
    if scheduled:
        await _add_activity(
            storage,
            message,
            ActivityType.SCHEDULED,
            f'Message "{message.title}" scheduled for {message.scheduled_for.isoformat()}',
        )
    return message


@router.delete("/{message_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_message(message_id: str, user: CurrentUserDep, storage: StorageDep) -> None:
    message = await get_owned_message(storage, user.id, message_id)
    if message.status == MessageStatus.SENDING:
        raise Conflict("Cannot delete a message while it is being sent", details={"id": message_id})
    await storage.delete_message(message_id)
    logger.info("Message deleted", message_id=message_id)


# ==================== Dispatch Endpoints ====================


@router.post("/{message_id}/send")
async def send_message(
    message_id: str,
    user: CurrentUserDep,
    dispatcher: DispatcherDep,
    app_settings: SettingsDep,
    background_tasks: BackgroundTasks,
    process: bool = True,
) -> dict[str, Any]:
    """Create the batches of a message and, by default, send them in the background.

    With ``process=false`` the caller drives the send through
    ``POST /messages/{id}/batches/process``.
    """
    plan = await dispatcher.prepare_send(message_id, user.id)
    if process:
        background_tasks.add_task(dispatcher.run, message_id)
    return {"success": True, "processing": process, **plan.to_dict(app_settings.batch_size)}


@router.post("/{message_id}/batches/process")
async def process_batch(
    message_id: str,
    user: CurrentUserDep,
    storage: StorageDep,
    dispatcher: DispatcherDep,
) -> dict[str, Any]:
    """Send the next pending batch and report overall progress."""
    await get_owned_message(storage, user.id, message_id)
    outcome = await dispatcher.process_next_batch(message_id)
    return outcome.to_dict()


@router.get("/{message_id}/batches", response_model=BatchList)
async def list_batches(message_id: str, user: CurrentUserDep, storage: StorageDep) -> BatchList:
    await get_owned_message(storage, user.id, message_id)
    batches = await storage.list_batches(message_id)
    return BatchList(batches=batches, totals=summarize_batches(batches).to_dict())


@router.post("/{message_id}/cancel")
async def cancel_message(message_id: str, user: CurrentUserDep, dispatcher: DispatcherDep) -> dict[str, Any]:
    return await dispatcher.cancel(message_id, user.id)


@router.post("/{message_id}/retry")
async def retry_message(
    message_id: str,
    user: CurrentUserDep,
    dispatcher: DispatcherDep,
    background_tasks: BackgroundTasks,
) -> dict[str, Any]:
    """Resume the pending batches of an interrupted send."""
    pending = await dispatcher.retry_pending(message_id, user.id)
    background_tasks.add_task(dispatcher.run, message_id)
    return {"success": True, "message_id": message_id, "pending_batches": pending}


@router.get("/{message_id}/failed-recipients")
async def failed_recipients(message_id: str, user: CurrentUserDep, dispatcher: DispatcherDep) -> dict[str, Any]:
    return await dispatcher.failed_recipients(message_id, user.id)


@router.post("/{message_id}/resend")
async def resend_failed(
    message_id: str,
    data: ResendRequest,
    user: CurrentUserDep,
    dispatcher: DispatcherDep,
    app_settings: SettingsDep,
    background_tasks: BackgroundTasks,
) -> dict[str, Any]:
    """Send the message again to failed recipients."""
    plan = await dispatcher.retry_failed(
        message_id,
        user.id,
        recipient_ids=data.recipient_ids,
        error_types=data.error_types,
    )
    background_tasks.add_task(dispatcher.run, message_id)
    return {"success": True, **plan.to_dict(app_settings.batch_size)}


@router.post("/{message_id}/auto-tag")
async def configure_auto_tag(
    message_id: str,
    data: AutoTagConfig,
    user: CurrentUserDep,
    tags: TagServiceDep,
) -> dict[str, Any]:
    """Set or clear the tag applied to recipients that receive the message."""
    if data.tag_id:
        auto_tag = await tags.set_message_auto_tag(user.id, message_id, data.tag_id)
        return {"message_id": message_id, "tag_id": auto_tag.tag_id}
    await tags.clear_message_auto_tag(user.id, message_id)
    return {"message_id": message_id, "tag_id": None}
