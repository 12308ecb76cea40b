"""Tags on conversations and per-message auto-tags."""

from enum import Enum

import structlog

from messenger_outreach.core.exceptions import Conflict, Forbidden, NotFound, ValidationFailed
from messenger_outreach.models import Conversation, ConversationTag, MessageAutoTag, Tag, utc_now
from messenger_outreach.storage.base import StorageBackend

logger = structlog.get_logger()


class BulkTagAction(str, Enum):
    ASSIGN = "assign"
    REMOVE = "remove"
    REPLACE = "replace"


class TagService:
    """Tag CRUD and assignments, always scoped to the tag owner."""

    def __init__(self, storage: StorageBackend) -> None:
        self.storage = storage

    # ==================== Tag CRUD ====================

    async def list_tags(self, user_id: str) -> list[Tag]:
        return await self.storage.list_tags(user_id)

    async def get_tag(self, user_id: str, tag_id: str) -> Tag:
        tag = await self.storage.get_tag(tag_id)
        if tag is None or tag.created_by != user_id:
            raise NotFound("Tag", tag_id)
        return tag

    async def create_tag(self, user_id: str, name: str, color: str | None = None) -> Tag:
        name = name.strip()
        if not name:
            raise ValidationFailed("Tag name is required")
        if await self.storage.get_tag_by_name(user_id, name):
            raise Conflict(f"Tag already exists: {name}", details={"name": name})

        tag = Tag(name=name, created_by=user_id)
        if color:
            tag.color = color
        await self.storage.save_tag(tag)
        logger.info("Tag created", tag_id=tag.id, name=name)
        return tag

    async def update_tag(
        self,
        user_id: str,
        tag_id: str,
        name: str | None = None,
        color: str | None = None,
    ) -> Tag:
        tag = await self.get_tag(user_id, tag_id)
        if name is not None:
            name = name.strip()
            if not name:
                raise ValidationFailed("Tag name is required")
            existing = await self.storage.get_tag_by_name(user_id, name)
            if existing and existing.id != tag.id:
                raise Conflict(f"Tag already exists: {name}", details={"name": name})
            tag.name = name
        if color is not None:
            tag.color = color
        return await self.storage.save_tag(tag)

    async def delete_tag(self, user_id: str, tag_id: str) -> None:
        await self.get_tag(user_id, tag_id)
        await self.storage.delete_tag(tag_id)
        logger.info("Tag deleted", tag_id=tag_id)

    # ==================== Ownership ====================

    async def _accessible_page_ids(self, user_id: str) -> set[str]:
        pages = await self.storage.list_pages(user_id)
        if not pages:
            raise Forbidden("No accessible pages found for user")
        return {p.facebook_page_id for p in pages}

    async def get_conversation(self, user_id: str, conversation_id: str) -> Conversation:
        page_ids = await self._accessible_page_ids(user_id)
        conversation = await self.storage.get_conversation(conversation_id)
        if conversation is None or conversation.page_id not in page_ids:
            raise NotFound("Conversation", conversation_id)
        return conversation

    async def _verify_conversations(self, user_id: str, conversation_ids: list[str]) -> None:
        page_ids = await self._accessible_page_ids(user_id)
        for conversation_id in conversation_ids:
            conversation = await self.storage.get_conversation(conversation_id)
            if conversation is None or conversation.page_id not in page_ids:
                raise NotFound("Conversation", conversation_id)

    async def _verify_tags(self, user_id: str, tag_ids: list[str]) -> None:
        for tag_id in tag_ids:
            await self.get_tag(user_id, tag_id)

    # ==================== Assignments ====================

    async def conversation_tags(self, user_id: str, conversation_id: str) -> list[Tag]:
        await self.get_conversation(user_id, conversation_id)
        return await self.storage.list_conversation_tags(conversation_id)

    async def assign(self, user_id: str, conversation_id: str, tag_ids: list[str]) -> list[Tag]:
        """Add tags to one conversation and return its tags."""
        if not tag_ids:
            raise ValidationFailed("tag_ids cannot be empty")
        await self.get_conversation(user_id, conversation_id)
        await self._verify_tags(user_id, tag_ids)
        await self.storage.add_conversation_tags(
            [ConversationTag(conversation_id=conversation_id, tag_id=t) for t in dict.fromkeys(tag_ids)]
        )
        return await self.storage.list_conversation_tags(conversation_id)

    async def remove(self, user_id: str, conversation_id: str, tag_ids: list[str]) -> int:
        await self.get_conversation(user_id, conversation_id)
        return await self.storage.remove_conversation_tags([conversation_id], tag_ids)

    async def bulk_update(
        self,
        user_id: str,
        conversation_ids: list[str],
        tag_ids: list[str],
        action: BulkTagAction = BulkTagAction.ASSIGN,
    ) -> dict:
        """Assign, remove or replace tags across many conversations.

        Removing with no ``tag_ids`` clears every tag of the conversations.
        """
        if not conversation_ids:
            raise ValidationFailed("conversation_ids must be a non-empty list")

        conversation_ids = list(dict.fromkeys(conversation_ids))
        tag_ids = list(dict.fromkeys(tag_ids))
        await self._verify_conversations(user_id, conversation_ids)
        await self._verify_tags(user_id, tag_ids)

        added = removed = 0
        if action in (BulkTagAction.REMOVE, BulkTagAction.REPLACE):
            to_remove = tag_ids if action == BulkTagAction.REMOVE and tag_ids else None
            if to_remove is None:
                for conversation_id in conversation_ids:
                    current = [t.id for t in await self.storage.list_conversation_tags(conversation_id)]
                    removed += await self.storage.remove_conversation_tags([conversation_id], current)
            else:
                removed = await self.storage.remove_conversation_tags(conversation_ids, to_remove)

        if action in (BulkTagAction.ASSIGN, BulkTagAction.REPLACE) and tag_ids:
            added = await self.storage.add_conversation_tags(
                [
                    ConversationTag(conversation_id=c, tag_id=t)
                    for c in conversation_ids
                    for t in tag_ids
                ]
            )

        logger.info(
            "Bulk tag update",
            action=action.value,
            conversations=len(conversation_ids),
            tags=len(tag_ids),
            added=added,
            removed=removed,
        )
        return {
            "action": action.value,
            "conversations": len(conversation_ids),
            "tags": len(tag_ids),
            "added": added,
            "removed": removed,
        }

    # ==================== Message auto-tags ====================

    async def set_message_auto_tag(self, user_id: str, message_id: str, tag_id: str) -> MessageAutoTag:
        """Tag applied to each conversation that receives the message."""
        message = await self.storage.get_message(message_id)
        if message is None or message.created_by != user_id:
            raise NotFound("Message", message_id)
        await self.get_tag(user_id, tag_id)
        return await self.storage.set_message_auto_tag(
            MessageAutoTag(message_id=message_id, tag_id=tag_id, created_at=utc_now())
        )

    async def clear_message_auto_tag(self, user_id: str, message_id: str) -> bool:
        message = await self.storage.get_message(message_id)
        if message is None or message.created_by != user_id:
            raise NotFound("Message", message_id)
        return await self.storage.delete_message_auto_tag(message_id)
