"""Tests for storage backends."""

from datetime import timedelta

import pytest

from messenger_outreach.models import (
    AutomationRule,
    AutomationStop,
    BatchStatus,
    Conversation,
    ConversationStatus,
    ConversationTag,
    DeliveryErrorType,
    DeliveryStatus,
    Message,
    MessageDelivery,
    MessageStatus,
    StopReason,
    Tag,
    utc_now,
)
from messenger_outreach.services.dispatch.batching import build_batches


@pytest.mark.asyncio
async def test_page_crud(storage, user, page):
    """Test page lookups by internal and Facebook id."""
    retrieved = await storage.get_page(page.id)
    assert retrieved is not None
    assert retrieved.access_token == "page-token"

    by_fb_id = await storage.get_page_by_facebook_id("page-1")
    assert by_fb_id.id == page.id
    assert await storage.get_page_by_facebook_id("page-1", user_id="someone-else") is None

    page.is_active = False
    await storage.save_page(page)
    assert await storage.list_pages(user.id, active_only=True) == []

    assert await storage.delete_page(page.id) is True
    assert await storage.get_page(page.id) is None


@pytest.mark.asyncio
async def test_returned_models_are_copies(storage, page):
    retrieved = await storage.get_page(page.id)
    retrieved.name = "Changed"

    assert (await storage.get_page(page.id)).name == "Santos Bakery"


@pytest.mark.asyncio
async def test_upsert_conversations_keeps_identity(storage, user):
    """Upserting on (page, sender) keeps the first id and creation time."""
    first = Conversation(user_id=user.id, page_id="page-1", sender_id="psid-1", sender_name="Ana")
    inserted, updated = await storage.upsert_conversations([first])
    assert (inserted, updated) == (1, 0)

    again = Conversation(user_id=user.id, page_id="page-1", sender_id="psid-1", sender_name="Ana Cruz")
    inserted, updated = await storage.upsert_conversations([again])
    assert (inserted, updated) == (0, 1)
    assert again.id == first.id

    stored = await storage.get_conversation_by_sender("page-1", "psid-1")
    assert stored.sender_name == "Ana Cruz"
    assert stored.created_at == first.created_at


@pytest.mark.asyncio
async def test_list_conversations_filters_and_paginates(storage, make_conversation):
    for i in range(5):
        await make_conversation(f"psid-{i}", minutes_ago=i * 10)
    await make_conversation("psid-old", minutes_ago=600, conversation_status=ConversationStatus.INACTIVE)

    page_one, total = await storage.list_conversations(page_ids=["page-1"], limit=2)
    assert total == 6
    assert [c.sender_id for c in page_one] == ["psid-0", "psid-1"]

    active, total = await storage.list_conversations(status=ConversationStatus.ACTIVE, limit=None)
    assert total == 5
    assert len(active) == 5

    quiet, _ = await storage.list_conversations(
        last_message_before=utc_now() - timedelta(minutes=25), limit=None
    )
    assert {c.sender_id for c in quiet} == {"psid-3", "psid-4", "psid-old"}

    other_page, total = await storage.list_conversations(page_ids=["page-2"])
    assert other_page == []
    assert total == 0


@pytest.mark.asyncio
async def test_conversation_tags(storage, user, make_conversation):
    conv = await make_conversation("psid-1")
    tag = await storage.save_tag(Tag(name="VIP", created_by=user.id))

    added = await storage.add_conversation_tags([ConversationTag(conversation_id=conv.id, tag_id=tag.id)])
    assert added == 1
    # Existing pairs are ignored
    added = await storage.add_conversation_tags([ConversationTag(conversation_id=conv.id, tag_id=tag.id)])
    assert added == 0

    assert [t.name for t in await storage.list_conversation_tags(conv.id)] == ["VIP"]
    assert await storage.conversation_ids_with_tags([tag.id]) == {conv.id}

    assert await storage.delete_tag(tag.id) is True
    assert await storage.list_conversation_tags(conv.id) == []


@pytest.mark.asyncio
async def test_claim_batch_only_once(storage, user, page):
    """A pending batch can be claimed by one worker only."""
    message = Message(title="Promo", content="Hi", page_id=page.id, created_by=user.id)
    await storage.save_message(message)
    batches = build_batches(message.id, ["a", "b", "c"], size=2)
    await storage.save_batches(batches)

    next_batch = await storage.next_open_batch(message.id)
    assert next_batch.batch_number == 1

    claimed = await storage.claim_batch(next_batch.id)
    assert claimed.status == BatchStatus.PROCESSING
    assert claimed.started_at is not None
    assert await storage.claim_batch(next_batch.id) is None

    assert (await storage.next_open_batch(message.id)).batch_number == 2
    assert await storage.max_batch_number(message.id) == 2

    assert await storage.cancel_open_batches(message.id) == 2
    statuses = [b.status for b in await storage.list_batches(message.id)]
    assert statuses == [BatchStatus.CANCELLED, BatchStatus.CANCELLED]


@pytest.mark.asyncio
async def test_retryable_deliveries_use_latest_attempt(storage, user, page):
    message = Message(title="Promo", content="Hi", page_id=page.id, created_by=user.id)
    await storage.save_message(message)

    def delivery(recipient, status, attempt):
        return MessageDelivery(
            message_id=message.id,
            recipient_id=recipient,
            status=status,
            error_type=DeliveryErrorType.NETWORK if status == DeliveryStatus.FAILED else None,
            attempt_count=attempt,
        )

    await storage.save_delivery(delivery("a", DeliveryStatus.FAILED, 1))
    await storage.save_delivery(delivery("a", DeliveryStatus.SENT, 2))
    await storage.save_delivery(delivery("b", DeliveryStatus.FAILED, 1))
    await storage.save_delivery(delivery("c", DeliveryStatus.FAILED, 3))

    retryable = await storage.retryable_deliveries(message.id, max_attempts=3)
    assert [d.recipient_id for d in retryable] == ["b"]


@pytest.mark.asyncio
async def test_due_scheduled_messages(storage, user, page):
    now = utc_now()
    due = Message(
        title="Due",
        content="Hi",
        page_id=page.id,
        created_by=user.id,
        status=MessageStatus.SCHEDULED,
        scheduled_for=now - timedelta(minutes=1),
    )
    later = Message(
        title="Later",
        content="Hi",
        page_id=page.id,
        created_by=user.id,
        status=MessageStatus.SCHEDULED,
        scheduled_for=now + timedelta(hours=1),
    )
    draft = Message(title="Draft", content="Hi", page_id=page.id, created_by=user.id)
    for message in (due, later, draft):
        await storage.save_message(message)

    result = await storage.list_due_scheduled(now, limit=10)
    assert [m.title for m in result] == ["Due"]


@pytest.mark.asyncio
async def test_delete_message_cascades(storage, user, page):
    message = Message(title="Promo", content="Hi", page_id=page.id, created_by=user.id)
    await storage.save_message(message)
    await storage.save_batches(build_batches(message.id, ["a"], size=2))

    assert await storage.delete_message(message.id) is True
    assert await storage.list_batches(message.id) == []
    assert await storage.delete_message(message.id) is False


@pytest.mark.asyncio
async def test_automation_stops_are_unique_per_conversation(storage, user):
    rule = AutomationRule(user_id=user.id, name="Nudge", custom_prompt="Be nice", time_interval_hours=24)
    await storage.save_rule(rule)

    for reason in (StopReason.MAX_FOLLOW_UPS_REACHED, StopReason.USER_REPLIED):
        await storage.save_stop(
            AutomationStop(rule_id=rule.id, conversation_id="conv-1", sender_id="psid-1", stopped_reason=reason)
        )

    stops = await storage.list_stops(rule.id)
    assert len(stops) == 1
    assert stops[0].stopped_reason == StopReason.USER_REPLIED

    assert await storage.delete_rule(rule.id) is True
    assert await storage.list_stops(rule.id) == []
