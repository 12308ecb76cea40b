"""Tests for automation rule, cron and lead scoring endpoints."""

from unittest.mock import AsyncMock

import httpx
import pytest

from messenger_outreach.api.dependencies import get_lead_scorer
from messenger_outreach.models import Message, MessageStatus, utc_now
from messenger_outreach.services.ai.lead_scorer import LeadScorer
from messenger_outreach.services.ai.provider import get_llm_provider
from messenger_outreach.services.facebook.client import GraphAPIClient, get_graph_client

RULE = {
    "name": "Quiet leads",
    "custom_prompt": "Invite them back with a free delivery promo",
    "time_interval_hours": 24,
    "language_style": "english",
}


@pytest.fixture
def provider(app):
    provider = AsyncMock()
    provider.complete_json.return_value = {"message": "Hi! Free delivery this week.", "score": 80}

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": []})

    graph = GraphAPIClient(app_id="app", app_secret="secret", transport=httpx.MockTransport(handler))
    app.dependency_overrides[get_llm_provider] = lambda: provider
    app.dependency_overrides[get_graph_client] = lambda: graph
    app.dependency_overrides[get_lead_scorer] = lambda: LeadScorer(provider, delay_seconds=0)
    return provider


@pytest.mark.asyncio
async def test_rule_crud(auth_client, page):
    created = await auth_client.post("/automations", json={**RULE, "page_id": page.id})
    assert created.status_code == 201
    rule = created.json()
    assert rule["enabled"] is True
    assert rule["message_tag"] == "ACCOUNT_UPDATE"

    updated = await auth_client.patch(f"/automations/{rule['id']}", json={"enabled": False})
    assert updated.json()["enabled"] is False
    assert updated.json()["custom_prompt"] == RULE["custom_prompt"]

    detail = (await auth_client.get(f"/automations/{rule['id']}")).json()
    assert detail["stats"] == {"sent": 0, "failed": 0, "stopped": 0}

    assert len((await auth_client.get("/automations")).json()) == 1
    assert (await auth_client.delete(f"/automations/{rule['id']}")).status_code == 204
    assert (await auth_client.get(f"/automations/{rule['id']}")).status_code == 404


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides,message",
    [
        ({"custom_prompt": " "}, "custom_prompt is required"),
        ({"time_interval_hours": None}, "At least one time interval is required"),
        ({"include_tag_ids": ["t1"], "exclude_tag_ids": ["t1"]}, "A tag cannot be both included and excluded"),
    ],
)
async def test_rule_validation(auth_client, overrides, message):
    response = await auth_client.post("/automations", json={**RULE, **overrides})

    assert response.status_code == 400
    assert response.json()["message"] == message


@pytest.mark.asyncio
async def test_trigger_rule(auth_client, page, provider, fake_adapter, make_conversation):
    await make_conversation("psid-1", minutes_ago=60 * 48)
    rule = (await auth_client.post("/automations", json={**RULE, "run_24_7": True})).json()

    result = (await auth_client.post(f"/automations/{rule['id']}/trigger")).json()

    assert result["sent"] == 1
    assert fake_adapter.sent[0].content == "Hi! Free delivery this week."
    detail = (await auth_client.get(f"/automations/{rule['id']}")).json()
    assert detail["stats"]["sent"] == 1


@pytest.mark.asyncio
async def test_cron_runs_automations(client, auth_client, page, provider, fake_adapter, make_conversation):
    await make_conversation("psid-1", minutes_ago=60 * 48)
    await auth_client.post("/automations", json={**RULE, "run_24_7": True})

    response = await client.post("/cron/ai-automations")

    data = response.json()
    assert (data["success"], data["rules"], data["sent"]) == (True, 1, 1)


@pytest.mark.asyncio
async def test_cron_sends_scheduled_messages(client, storage, user, page, fake_adapter):
    message = Message(
        title="Reminder",
        content="Open today until 9pm",
        page_id=page.id,
        created_by=user.id,
        recipient_type="selected",
        selected_recipients=["psid-1"],
        status=MessageStatus.SCHEDULED,
        scheduled_for=utc_now(),
    )
    await storage.save_message(message)

    data = (await client.get("/cron/send-scheduled")).json()

    assert data["processed"] == 1
    assert data["results"][0]["status"] == "sent"
    assert fake_adapter.recipients == ["psid-1"]


@pytest.mark.asyncio
async def test_cron_secret_required_when_configured(client, test_settings):
    test_settings.cron_secret = "s3cret"

    denied = await client.get("/cron/send-scheduled")
    allowed = await client.get("/cron/send-scheduled", headers={"Authorization": "Bearer s3cret"})

    assert denied.status_code == 401
    assert allowed.status_code == 200


@pytest.mark.asyncio
async def test_score_leads_endpoint(auth_client, storage, page, provider, make_conversation):
    conversation = await make_conversation("psid-1", sender_name="Ana Reyes")

    response = await auth_client.post("/ai/score-leads", json={"conversation_ids": [conversation.id]})

    data = response.json()
    assert data["scores"][0]["quality"] == "Hot"
    assert data["summary"]["Hot"] == 1
    assert data["summary"]["fallback"] == 0
    assert [t.name for t in await storage.list_conversation_tags(conversation.id)] == ["🔥 Hot Lead"]


@pytest.mark.asyncio
async def test_score_leads_requires_ids(auth_client, provider):
    response = await auth_client.post("/ai/score-leads", json={"conversation_ids": []})

    assert response.status_code == 422
