"""Conversation listing, sync and tagging endpoints."""

from datetime import datetime
from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from messenger_outreach.api.dependencies import (
    CurrentUserDep,
    StorageDep,
    SyncServiceDep,
    TagServiceDep,
)
from messenger_outreach.api.routes.pages import get_owned_page
from messenger_outreach.core.exceptions import ValidationFailed
from messenger_outreach.models import Conversation, ConversationStatus, SyncResult, Tag, as_utc
from messenger_outreach.services.conversations.tagging import BulkTagAction

logger = structlog.get_logger()

router = APIRouter(prefix="/conversations", tags=["Conversations"])


# ==================== Pydantic Schemas ====================


class ConversationResponse(BaseModel):
    conversation: Conversation
    tags: list[Tag] = Field(default_factory=list)


class ConversationPage(BaseModel):
    conversations: list[ConversationResponse]
    total: int
    limit: int
    offset: int
    has_more: bool


class SyncRequest(BaseModel):
    page_id: str | None = Field(default=None, description="Internal page id, all active pages if empty")
    full: bool = False


class TagIds(BaseModel):
    tag_ids: list[str]


class BulkTagRequest(BaseModel):
    conversation_ids: list[str]
    tag_ids: list[str] = Field(default_factory=list)
    action: str = "assign"


class AutoTagRequest(BaseModel):
    conversation_ids: list[str] = Field(min_length=1)
    tag_ids: list[str] = Field(min_length=1)


# ==================== Conversation Endpoints ====================


@router.get("", response_model=ConversationPage)
async def list_conversations(
    user: CurrentUserDep,
    storage: StorageDep,
    page_id: str | None = None,
    status: ConversationStatus | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> ConversationPage:
    """Conversations of the user's pages, newest first."""
    if page_id:
        page_ids = [(await get_owned_page(storage, user.id, page_id)).facebook_page_id]
    else:
        page_ids = [p.facebook_page_id for p in await storage.list_pages(user.id)]

    if not page_ids:
        return ConversationPage(conversations=[], total=0, limit=limit, offset=offset, has_more=False)

    conversations, total = await storage.list_conversations(
        page_ids=page_ids,
        status=status,
        start_date=as_utc(start_date),
        end_date=as_utc(end_date),
        limit=limit,
        offset=offset,
    )
    items = [
        ConversationResponse(conversation=c, tags=await storage.list_conversation_tags(c.id))
        for c in conversations
    ]
    return ConversationPage(
        conversations=items,
        total=total,
        limit=limit,
        offset=offset,
        has_more=offset + len(items) < total,
    )


@router.post("/sync", response_model=list[SyncResult])
async def sync_conversations(
    data: SyncRequest,
    user: CurrentUserDep,
    storage: StorageDep,
    sync: SyncServiceDep,
) -> list[SyncResult]:
    """Pull conversations from Facebook for one page or every active page."""
    if data.page_id:
        page = await get_owned_page(storage, user.id, data.page_id)
        return [await sync.sync_page(user.id, page, full=data.full)]
    return await sync.sync_user_pages(user.id)


# ==================== Tag Endpoints ====================


@router.get("/{conversation_id}/tags", response_model=list[Tag])
async def get_conversation_tags(conversation_id: str, user: CurrentUserDep, tags: TagServiceDep) -> list[Tag]:
    return await tags.conversation_tags(user.id, conversation_id)


@router.post("/{conversation_id}/tags", response_model=list[Tag])
async def add_conversation_tags(
    conversation_id: str,
    data: TagIds,
    user: CurrentUserDep,
    tags: TagServiceDep,
) -> list[Tag]:
    return await tags.assign(user.id, conversation_id, data.tag_ids)


@router.delete("/{conversation_id}/tags")
async def remove_conversation_tags(
    conversation_id: str,
    user: CurrentUserDep,
    tags: TagServiceDep,
    tag_ids: Annotated[list[str], Query()],
) -> dict[str, int]:
    removed = await tags.remove(user.id, conversation_id, tag_ids)
    return {"removed": removed}


@router.post("/bulk-tags")
async def bulk_tags(data: BulkTagRequest, user: CurrentUserDep, tags: TagServiceDep) -> dict[str, Any]:
    """Assign, remove or replace tags on many conversations."""
    try:
        action = BulkTagAction(data.action)
    except ValueError:
        raise ValidationFailed("action must be assign, remove, or replace") from None
    return await tags.bulk_update(user.id, data.conversation_ids, data.tag_ids, action)


@router.post("/auto-tag")
async def auto_tag(data: AutoTagRequest, user: CurrentUserDep, tags: TagServiceDep) -> dict[str, Any]:
    """Add tags to conversations without touching their other tags."""
    result = await tags.bulk_update(user.id, data.conversation_ids, data.tag_ids, BulkTagAction.ASSIGN)
    return {"success": True, "tagged": result["conversations"], "tags": result["tags"], "added": result["added"]}
