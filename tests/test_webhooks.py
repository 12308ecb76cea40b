"""Tests for the Messenger webhook."""

import hashlib
import hmac
import json

import pytest

from messenger_outreach.models import AutomationExecution, AutomationRule, ExecutionStatus, StopReason

APP_SECRET = "test-app-secret"


def page_event(text="Available pa po?", sender="psid-1", echo=False):
    message = {"mid": "m_1", "text": text}
    if echo:
        message["is_echo"] = True
    return {
        "object": "page",
        "entry": [
            {
                "id": "page-1",
                "time": 1714557600000,
                "messaging": [
                    {
                        "sender": {"id": "page-1" if echo else sender},
                        "recipient": {"id": sender if echo else "page-1"},
                        "timestamp": 1714557600000,
                        "message": message,
                    }
                ],
            }
        ],
    }


@pytest.mark.asyncio
async def test_verification_handshake(client):
    response = await client.get(
        "/webhook",
        params={"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "12345"},
    )

    assert response.status_code == 200
    assert response.text == "12345"


@pytest.mark.asyncio
async def test_verification_rejects_wrong_token(client):
    response = await client.get(
        "/webhook",
        params={"hub.mode": "subscribe", "hub.verify_token": "Token123", "hub.challenge": "12345"},
    )

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_incoming_message_records_conversation(client, storage, page):
    response = await client.post("/webhook", json=page_event())

    assert response.json() == {"status": "EVENT_RECEIVED"}
    conversation = await storage.get_conversation_by_sender("page-1", "psid-1")
    assert conversation.last_message == "Available pa po?"
    assert conversation.message_count == 1


@pytest.mark.asyncio
async def test_echo_updates_contact_conversation(client, storage, page):
    await client.post("/webhook", json=page_event(text="Yes po, available!", echo=True))

    conversation = await storage.get_conversation_by_sender("page-1", "psid-1")
    assert conversation.last_message == "Yes po, available!"


@pytest.mark.asyncio
async def test_reply_stops_automation(client, storage, user, page, make_conversation):
    conversation = await make_conversation("psid-1", minutes_ago=120)
    rule = AutomationRule(
        user_id=user.id,
        name="Follow up",
        custom_prompt="Check in",
        time_interval_hours=1,
        stop_on_reply=True,
    )
    await storage.save_rule(rule)
    await storage.save_execution(
        AutomationExecution(
            rule_id=rule.id,
            conversation_id=conversation.id,
            recipient_id="psid-1",
            generated_message="Kumusta po?",
            status=ExecutionStatus.SENT,
        )
    )

    await client.post("/webhook", json=page_event(text="Ok po, order ako"))

    stops = await storage.list_stops(rule.id)
    assert stops[0].stopped_reason == StopReason.USER_REPLIED


@pytest.mark.asyncio
async def test_signature_checked_when_app_secret_set(client, storage, page, test_settings):
    test_settings.facebook_app_secret = APP_SECRET
    body = json.dumps(page_event()).encode()

    bad = await client.post(
        "/webhook",
        content=body,
        headers={"Content-Type": "application/json", "X-Hub-Signature-256": "sha256=bad"},
    )
    assert bad.status_code == 403

    signature = hmac.new(APP_SECRET.encode(), body, hashlib.sha256).hexdigest()
    good = await client.post(
        "/webhook",
        content=body,
        headers={"Content-Type": "application/json", "X-Hub-Signature-256": f"sha256={signature}"},
    )
    assert good.json() == {"status": "EVENT_RECEIVED"}


@pytest.mark.asyncio
async def test_malformed_body_is_acknowledged(client):
    response = await client.post("/webhook", content=b"not json", headers={"Content-Type": "application/json"})

    assert response.status_code == 200
    assert response.json() == {"status": "ERROR"}
