"""Tests for the Messenger channel adapter."""

import hashlib
import hmac
import json

import httpx
import pytest

from messenger_outreach.models import DeliveryErrorType, MediaAttachment, MediaType, OutgoingMessage
from messenger_outreach.services.channels.messenger import MessengerAdapter
from messenger_outreach.services.facebook.client import GraphAPIClient

WEBHOOK_PAYLOAD = {
    "object": "page",
    "entry": [
        {
            "id": "page-1",
            "time": 1714557600000,
            "messaging": [
                {
                    "sender": {"id": "psid-1"},
                    "recipient": {"id": "page-1"},
                    "timestamp": 1714557600000,
                    "message": {"mid": "m_1", "text": "Magkano po?"},
                },
                {
                    "sender": {"id": "page-1"},
                    "recipient": {"id": "psid-1"},
                    "timestamp": 1714557660000,
                    "message": {"mid": "m_2", "text": "350 pesos po", "is_echo": True},
                },
                {
                    "sender": {"id": "psid-1"},
                    "recipient": {"id": "page-1"},
                    "timestamp": 1714557700000,
                    "read": {"watermark": 1714557660000},
                },
            ],
        }
    ],
}


def make_adapter(handler=None, app_secret="app-secret"):
    handler = handler or (lambda request: httpx.Response(200, json={"message_id": "mid.1"}))
    graph = GraphAPIClient(app_id="app", app_secret="secret", transport=httpx.MockTransport(handler))
    return MessengerAdapter(graph_client=graph, app_secret=app_secret)


@pytest.mark.asyncio
async def test_parse_webhook_messages_and_echoes():
    events = await make_adapter().parse_webhook(WEBHOOK_PAYLOAD)

    assert len(events) == 2
    incoming, echo = events
    assert incoming.page_id == "page-1"
    assert incoming.text == "Magkano po?"
    assert incoming.contact_id == "psid-1"
    assert incoming.timestamp.year == 2024
    assert echo.is_echo is True
    assert echo.contact_id == "psid-1"


@pytest.mark.asyncio
async def test_parse_webhook_ignores_other_objects():
    assert await make_adapter().parse_webhook({"object": "instagram", "entry": []}) == []


def test_validate_webhook_signature():
    adapter = make_adapter()
    body = json.dumps(WEBHOOK_PAYLOAD).encode()
    signature = "sha256=" + hmac.new(b"app-secret", body, hashlib.sha256).hexdigest()

    assert adapter.validate_webhook(body, signature) is True
    assert adapter.validate_webhook(body, "sha256=deadbeef") is False
    assert adapter.validate_webhook(body, "") is False
    assert make_adapter(app_secret="").validate_webhook(body, signature) is False


@pytest.mark.asyncio
async def test_send_message_text_and_attachments():
    payloads = []

    def handler(request: httpx.Request) -> httpx.Response:
        payloads.append(json.loads(request.content))
        return httpx.Response(200, json={"message_id": f"mid.{len(payloads)}"})

    adapter = make_adapter(handler)
    result = await adapter.send_message(
        OutgoingMessage(
            recipient_id="psid-1",
            content="New arrivals!",
            page_access_token="page-token",
            attachments=[
                MediaAttachment(type=MediaType.IMAGE, url="https://cdn.example.com/a.jpg"),
                MediaAttachment(type=MediaType.FILE, filename="broken.pdf", error="File type not supported"),
            ],
        )
    )

    assert result.success is True
    assert result.message_id == "mid.1"
    assert len(payloads) == 2
    assert payloads[1]["message"]["attachment"]["type"] == "image"


@pytest.mark.asyncio
async def test_send_message_failure_is_classified():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            400,
            json={"error": {"message": "No matching user found", "code": 100, "error_subcode": 2018001}},
        )

    result = await make_adapter(handler).send_message(
        OutgoingMessage(recipient_id="psid-9", content="Hi", page_access_token="page-token")
    )

    assert result.success is False
    assert result.error_type == DeliveryErrorType.INVALID_RECIPIENT
    assert result.error == "No matching user found"


@pytest.mark.asyncio
async def test_send_message_with_nothing_to_send():
    result = await make_adapter().send_message(
        OutgoingMessage(recipient_id="psid-1", content="", page_access_token="page-token")
    )

    assert result.success is False
    assert result.error_type == DeliveryErrorType.OTHER
