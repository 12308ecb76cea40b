"""Conversation sync from the Graph API and webhook events."""

from typing import Any

import structlog

from messenger_outreach.core.exceptions import AppException, GraphAPIError, NotFound, ValidationFailed
from messenger_outreach.core.logging import mask_id
from messenger_outreach.models import (
    DEFAULT_SENDER_NAME,
    Conversation,
    ConversationStatus,
    FacebookPage,
    IncomingMessengerEvent,
    SyncResult,
    utc_now,
)
from messenger_outreach.services.facebook.client import GraphAPIClient, parse_graph_time
from messenger_outreach.storage.base import StorageBackend

logger = structlog.get_logger()

UPSERT_CHUNK_SIZE = 100


class ConversationSyncService:
    """Keeps stored conversations in step with a page's Messenger inbox."""

    def __init__(self, storage: StorageBackend, graph_client: GraphAPIClient) -> None:
        self.storage = storage
        self.graph = graph_client

    def _conversations_from_thread(
        self,
        user_id: str,
        page: FacebookPage,
        thread: dict[str, Any],
    ) -> list[Conversation]:
        """One conversation per participant that is not the page itself."""
        participants = thread.get("participants", {}).get("data", [])
        messages = thread.get("messages", {}).get("data", [])
        last_time = parse_graph_time(thread.get("updated_time")) or utc_now()
        last_text = messages[0].get("message") if messages else None

        result = []
        for participant in participants:
            participant_id = participant.get("id")
            if not participant_id or participant_id == page.facebook_page_id:
                continue
            result.append(
                Conversation(
                    user_id=user_id,
                    page_id=page.facebook_page_id,
                    sender_id=participant_id,
                    sender_name=participant.get("name") or DEFAULT_SENDER_NAME,
                    last_message=last_text,
                    last_message_time=last_time,
                    conversation_status=ConversationStatus.ACTIVE,
                    message_count=int(thread.get("message_count") or len(messages)),
                )
            )
        return result

    async def sync_page(self, user_id: str, page: FacebookPage, full: bool = False) -> SyncResult:
        """Fetch conversations updated since the last sync and upsert them.

        Args:
            user_id: Owner of the page
            page: Page to sync
            full: Ignore ``last_synced_at`` and fetch everything

        Returns:
            Counts of inserted, updated and skipped conversations
        """
        if page.user_id != user_id:
            raise NotFound("Facebook page", page.id)
        if not page.access_token:
            raise ValidationFailed("Facebook page has no access token, reconnect the page")

        since = None if full else page.last_synced_at
        result = SyncResult(page_id=page.id, incremental=since is not None)
        started_at = utc_now()

        logger.info(
            "Starting conversation sync",
            page_id=page.facebook_page_id,
            mode="incremental" if since else "full",
        )

        pending: list[Conversation] = []
        try:
            async for thread in self.graph.iter_conversations(page.facebook_page_id, page.access_token, since):
                conversations = self._conversations_from_thread(user_id, page, thread)
                if not conversations:
                    result.skipped += 1
                    continue
                pending.extend(conversations)
                if len(pending) >= UPSERT_CHUNK_SIZE:
                    inserted, updated = await self.storage.upsert_conversations(pending)
                    result.inserted += inserted
                    result.updated += updated
                    pending = []
        except GraphAPIError as e:
            logger.error("Conversation sync failed", page_id=page.facebook_page_id, error=e.message)
            result.errors.append(e.message)

        if pending:
            inserted, updated = await self.storage.upsert_conversations(pending)
            result.inserted += inserted
            result.updated += updated

        if not result.errors:
            page.last_synced_at = started_at
            page.updated_at = utc_now()
            await self.storage.save_page(page)

        logger.info(
            "Conversation sync finished",
            page_id=page.facebook_page_id,
            inserted=result.inserted,
            updated=result.updated,
            skipped=result.skipped,
            errors=len(result.errors),
        )
        return result

    async def sync_user_pages(self, user_id: str) -> list[SyncResult]:
        """Sync every active page of a user."""
        results = []
        for page in await self.storage.list_pages(user_id, active_only=True):
            results.append(await self.sync_page(user_id, page))
        return results

    async def sync_all_pages(self) -> list[SyncResult]:
        """Incrementally sync every active page, least recently synced first.

        A page that cannot be synced is reported in its result and does not
        stop the others.
        """
        pages = await self.storage.list_pages(active_only=True)
        pages.sort(key=lambda p: (p.last_synced_at is not None, p.last_synced_at or utc_now()))

        results = []
        for page in pages:
            try:
                results.append(await self.sync_page(page.user_id, page))
            except AppException as e:
                logger.warning("Page skipped in background sync", page_id=page.facebook_page_id, error=e.message)
                results.append(SyncResult(page_id=page.id, errors=[e.message]))
        return results

    async def record_event(self, event: IncomingMessengerEvent) -> Conversation | None:
        """Create or refresh the conversation a webhook event belongs to.

        Returns None when the page is not connected.
        """
        page = await self.storage.get_page_by_facebook_id(event.page_id)
        if page is None:
            logger.info("Webhook for unknown page", page_id=event.page_id)
            return None

        contact_id = event.contact_id
        conversation = await self.storage.get_conversation_by_sender(page.facebook_page_id, contact_id)
        if conversation is None:
            conversation = Conversation(
                user_id=page.user_id,
                page_id=page.facebook_page_id,
                sender_id=contact_id,
            )

        conversation.last_message = event.text or conversation.last_message
        conversation.last_message_time = event.timestamp or utc_now()
        conversation.message_count += 1
        if not event.is_echo and conversation.conversation_status == ConversationStatus.INACTIVE:
            conversation.conversation_status = ConversationStatus.ACTIVE

        await self.storage.upsert_conversations([conversation])
        stored = await self.storage.get_conversation_by_sender(page.facebook_page_id, contact_id)
        logger.debug(
            "Conversation updated from webhook",
            page_id=page.facebook_page_id,
            sender=mask_id(contact_id),
            echo=event.is_echo,
        )
        return stored
