"""Recent Messenger history as prompt context."""

import structlog

from messenger_outreach.core.exceptions import GraphAPIError
from messenger_outreach.core.logging import mask_id
from messenger_outreach.models import Conversation, ConversationLine
from messenger_outreach.services.facebook.client import GraphAPIClient

logger = structlog.get_logger()


async def fetch_transcript(
    graph: GraphAPIClient,
    conversation: Conversation,
    page_access_token: str,
    limit: int = 10,
) -> list[ConversationLine]:
    """Last ``limit`` messages with a contact, oldest first.

    Graph failures give an empty transcript.
    """
    try:
        raw = await graph.get_conversation_messages(conversation.sender_id, page_access_token, limit)
    except GraphAPIError as e:
        logger.warning(
            "Could not fetch conversation messages",
            sender=mask_id(conversation.sender_id),
            error=e.message,
        )
        return []

    lines = []
    for item in reversed(raw[:limit]):
        sender = (item.get("from") or {}).get("id")
        lines.append(
            ConversationLine(
                from_customer=sender == conversation.sender_id,
                text=item.get("message") or "(No text)",
            )
        )
    return lines


def format_transcript(lines: list[ConversationLine], contact_name: str, business_label: str = "Business") -> str:
    return "\n".join(f"{contact_name if line.from_customer else business_label}: {line.text}" for line in lines)
