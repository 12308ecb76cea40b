"""Recipient name placeholders in message content."""

import structlog

from messenger_outreach.core.logging import mask_id
from messenger_outreach.models import DEFAULT_SENDER_NAME, Message
from messenger_outreach.storage.base import StorageBackend

logger = structlog.get_logger()

FIRST_NAME = "{first_name}"
LAST_NAME = "{last_name}"


def parse_name(full_name: str | None) -> dict[str, str] | None:
    """Split a display name into first name and the rest."""
    if not full_name or not full_name.strip():
        return None
    parts = full_name.split()
    if len(parts) == 1:
        return {"first_name": parts[0]}
    return {"first_name": parts[0], "last_name": " ".join(parts[1:])}


def _usable_name(name: str | None) -> bool:
    return bool(name and name.strip() and name.strip() != DEFAULT_SENDER_NAME)


def has_placeholders(content: str) -> bool:
    return FIRST_NAME in content or LAST_NAME in content


def apply_name(content: str, name: dict[str, str]) -> str:
    if name.get("first_name"):
        content = content.replace(FIRST_NAME, name["first_name"])
    if name.get("last_name"):
        content = content.replace(LAST_NAME, name["last_name"])
    return content


async def lookup_name(
    recipient_id: str,
    message: Message,
    storage: StorageBackend,
    facebook_page_id: str | None = None,
) -> dict[str, str] | None:
    """Find a recipient's name from the message's contact data, then the conversation."""
    for contact in message.selected_contacts_data:
        if contact.get("sender_id") == recipient_id and _usable_name(contact.get("sender_name")):
            return parse_name(contact["sender_name"])

    if facebook_page_id is None:
        page = await storage.get_page(message.page_id)
        if page is None:
            return None
        facebook_page_id = page.facebook_page_id

    conversation = await storage.get_conversation_by_sender(facebook_page_id, recipient_id)
    if conversation is None or not _usable_name(conversation.sender_name):
        return None
    return parse_name(conversation.sender_name)


async def personalize(
    content: str,
    recipient_id: str,
    message: Message,
    storage: StorageBackend,
    facebook_page_id: str | None = None,
) -> str:
    """Replace {first_name} and {last_name}; unknown names leave content as is."""
    if not has_placeholders(content):
        return content

    name = await lookup_name(recipient_id, message, storage, facebook_page_id)
    if name is None:
        logger.debug("No personalization data", recipient=mask_id(recipient_id))
        return content
    return apply_name(content, name)
