"""Tests for name placeholders."""

import pytest

from messenger_outreach.models import Message, RecipientType
from messenger_outreach.services.dispatch.personalization import apply_name, parse_name, personalize


def test_parse_name():
    assert parse_name("Juan dela Cruz") == {"first_name": "Juan", "last_name": "dela Cruz"}
    assert parse_name("Cher") == {"first_name": "Cher"}
    assert parse_name("   ") is None
    assert parse_name(None) is None


def test_apply_name_keeps_missing_parts():
    content = "Hi {first_name} {last_name}!"
    assert apply_name(content, {"first_name": "Cher"}) == "Hi Cher {last_name}!"


@pytest.mark.asyncio
async def test_personalize_from_selected_contacts(storage, user, page):
    message = Message(
        title="Promo",
        content="Hi {first_name}!",
        page_id=page.id,
        created_by=user.id,
        recipient_type=RecipientType.SELECTED,
        selected_recipients=["psid-1"],
        selected_contacts_data=[{"sender_id": "psid-1", "sender_name": "Ana Reyes"}],
    )

    assert await personalize(message.content, "psid-1", message, storage) == "Hi Ana!"


@pytest.mark.asyncio
async def test_personalize_from_conversation(storage, user, page, make_conversation):
    await make_conversation("psid-2", sender_name="Ben Torres")
    message = Message(title="Promo", content="Hello {last_name}", page_id=page.id, created_by=user.id)

    result = await personalize(message.content, "psid-2", message, storage, page.facebook_page_id)
    assert result == "Hello Torres"


@pytest.mark.asyncio
async def test_personalize_skips_placeholder_names(storage, user, page, make_conversation):
    """The default "Facebook User" name is not used for greetings."""
    await make_conversation("psid-3")
    message = Message(title="Promo", content="Hi {first_name}", page_id=page.id, created_by=user.id)

    assert await personalize(message.content, "psid-3", message, storage) == "Hi {first_name}"
