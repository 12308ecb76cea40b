"""Tests for AI follow-up automations."""

from datetime import timedelta
from unittest.mock import AsyncMock

import httpx
import pytest

from messenger_outreach.core.exceptions import LLMError
from messenger_outreach.models import (
    AutomationExecution,
    AutomationRule,
    ConversationLine,
    ConversationTag,
    ExecutionStatus,
    LanguageStyle,
    StopReason,
    Tag,
    utc_now,
)
from messenger_outreach.services.ai.automation import AutomationRunner, build_follow_up_prompt
from messenger_outreach.services.facebook.client import GraphAPIClient


@pytest.fixture
def provider():
    provider = AsyncMock()
    provider.complete_json.return_value = {"message": "Kumusta po? May bagong flavors kami!"}
    return provider


@pytest.fixture
def runner(storage, fake_adapter, provider):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": []})

    graph = GraphAPIClient(app_id="app", app_secret="secret", transport=httpx.MockTransport(handler))
    return AutomationRunner(storage, fake_adapter, provider, graph)


def make_rule(user, **kwargs):
    defaults = {
        "user_id": user.id,
        "name": "Quiet leads",
        "custom_prompt": "Remind them about our weekend promo",
        "time_interval_minutes": 30,
        "run_24_7": True,
    }
    defaults.update(kwargs)
    return AutomationRule(**defaults)


def test_follow_up_prompt_lists_previous_messages(user):
    rule = make_rule(user, language_style=LanguageStyle.ENGLISH)
    lines = [ConversationLine(from_customer=True, text="Thanks!")]

    first = build_follow_up_prompt(rule, "Ana", lines, [])
    third = build_follow_up_prompt(rule, "Ana", lines, ["Hello again", "Still there?"])

    assert "FOLLOW-UP #1" in first
    assert "Remind them about our weekend promo" in first
    assert "Ana: Thanks!" in first
    assert "Write in clear, friendly English." in first
    assert "FOLLOW-UP #3" in third
    assert 'Message #2: "Still there?"' in third


@pytest.mark.asyncio
async def test_skip_reasons(runner, storage, user, page):
    disabled = await runner.run_rule(make_rule(user, enabled=False))
    assert disabled.skipped_reason == "Rule disabled"

    night = utc_now().replace(hour=3)
    closed = await runner.run_rule(make_rule(user, run_24_7=False), now=night)
    assert closed.skipped_reason == "Outside active hours"

    no_interval = await runner.run_rule(make_rule(user, time_interval_minutes=None))
    assert no_interval.skipped_reason == "No time interval configured"

    no_pages = await runner.run_rule(make_rule(user, page_id="missing"))
    assert no_pages.skipped_reason == "No active pages"

    limited = make_rule(user, max_messages_per_day=1)
    await storage.save_execution(
        AutomationExecution(
            rule_id=limited.id,
            conversation_id="conv-1",
            recipient_id="psid-1",
            status=ExecutionStatus.SENT,
        )
    )
    result = await runner.run_rule(limited)
    assert result.skipped_reason == "Daily limit reached"


@pytest.mark.asyncio
async def test_sends_to_quiet_conversations(runner, storage, fake_adapter, user, page, make_conversation):
    quiet = await make_conversation("psid-quiet", sender_name="Ana Reyes", minutes_ago=120)
    await make_conversation("psid-recent", minutes_ago=5)
    rule = make_rule(user, page_id=page.id)
    await storage.save_rule(rule)

    result = await runner.run_rule(rule)

    assert (result.eligible, result.sent, result.failed) == (1, 1, 0)
    assert fake_adapter.recipients == ["psid-quiet"]
    assert fake_adapter.sent[0].content == "Kumusta po? May bagong flavors kami!"
    assert fake_adapter.sent[0].message_tag == "ACCOUNT_UPDATE"

    executions = await storage.list_executions(rule.id)
    assert executions[0].conversation_id == quiet.id
    assert executions[0].follow_up_number == 1
    assert (await storage.get_rule(rule.id)).last_executed_at is not None

    again = await runner.run_rule(rule)
    assert again.sent == 0


@pytest.mark.asyncio
async def test_tag_filters(runner, storage, fake_adapter, user, page, make_conversation):
    lead = await make_conversation("psid-lead", minutes_ago=120)
    customer = await make_conversation("psid-customer", minutes_ago=120)
    await make_conversation("psid-untagged", minutes_ago=120)
    leads = Tag(name="Lead", created_by=user.id)
    customers = Tag(name="Customer", created_by=user.id)
    await storage.save_tag(leads)
    await storage.save_tag(customers)
    await storage.add_conversation_tags(
        [
            ConversationTag(conversation_id=lead.id, tag_id=leads.id),
            ConversationTag(conversation_id=customer.id, tag_id=leads.id),
            ConversationTag(conversation_id=customer.id, tag_id=customers.id),
        ]
    )

    result = await runner.run_rule(make_rule(user, include_tag_ids=[leads.id], exclude_tag_ids=[customers.id]))

    assert result.sent == 1
    assert fake_adapter.recipients == ["psid-lead"]


@pytest.mark.asyncio
async def test_max_follow_ups_stops_conversation(runner, storage, fake_adapter, user, page, make_conversation):
    await make_conversation("psid-1", minutes_ago=120)
    rule = make_rule(user, max_follow_ups=1)

    result = await runner.run_rule(rule)

    assert (result.sent, result.stopped) == (1, 1)
    stops = await storage.list_stops(rule.id)
    assert stops[0].stopped_reason == StopReason.MAX_FOLLOW_UPS_REACHED
    assert stops[0].follow_ups_sent == 1

    later = await runner.run_rule(rule, now=utc_now() + timedelta(hours=2))
    assert later.eligible == 0
    assert fake_adapter.recipients == ["psid-1"]


@pytest.mark.asyncio
async def test_generation_failure_is_recorded(runner, storage, provider, fake_adapter, user, page, make_conversation):
    await make_conversation("psid-1", minutes_ago=120)
    provider.complete_json.side_effect = LLMError("All LLM providers failed")
    rule = make_rule(user)

    result = await runner.run_rule(rule)

    assert (result.sent, result.failed) == (0, 1)
    assert fake_adapter.sent == []
    executions = await storage.list_executions(rule.id)
    assert executions[0].status == ExecutionStatus.FAILED
    assert executions[0].error_message == "All LLM providers failed"


@pytest.mark.asyncio
async def test_send_failure_is_recorded(runner, storage, fake_adapter, user, page, make_conversation):
    await make_conversation("psid-1", minutes_ago=120)
    fake_adapter.fail("psid-1")
    rule = make_rule(user)

    result = await runner.run_rule(rule)

    assert result.failed == 1
    assert (await storage.list_executions(rule.id))[0].error_message == "Send failed (other)"


@pytest.mark.asyncio
async def test_reply_stops_follow_ups_and_removes_tag(runner, storage, user, page, make_conversation):
    conversation = await make_conversation("psid-1", minutes_ago=120)
    pending = Tag(name="Awaiting reply", created_by=user.id)
    await storage.save_tag(pending)
    await storage.add_conversation_tags([ConversationTag(conversation_id=conversation.id, tag_id=pending.id)])
    rule = make_rule(user, stop_on_reply=True, remove_tag_on_reply=pending.id)
    await storage.save_rule(rule)
    await runner.run_rule(rule)

    handled = await runner.handle_reply(conversation)

    assert handled == 1
    stops = await storage.list_stops(rule.id)
    assert stops[0].stopped_reason == StopReason.USER_REPLIED
    assert await storage.list_conversation_tags(conversation.id) == []


@pytest.mark.asyncio
async def test_run_all_runs_enabled_rules(runner, storage, user, page, make_conversation):
    await make_conversation("psid-1", minutes_ago=120)
    await storage.save_rule(make_rule(user))
    await storage.save_rule(make_rule(user, name="Off", enabled=False))

    results = await runner.run_all()

    assert len(results) == 1
    assert results[0].sent == 1
