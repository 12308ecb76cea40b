"""Facebook Messenger channel adapter."""

import hashlib
import hmac
from datetime import datetime, timezone
from typing import Any

import structlog

from messenger_outreach.core.config import settings
from messenger_outreach.core.exceptions import GraphAPIError
from messenger_outreach.core.logging import mask_id
from messenger_outreach.models import (
    DeliveryErrorType,
    IncomingMessengerEvent,
    OutgoingMessage,
    SendResult,
)
from messenger_outreach.services.channels.base import ChannelAdapter
from messenger_outreach.services.facebook.client import GraphAPIClient, get_graph_client

logger = structlog.get_logger()


class MessengerAdapter(ChannelAdapter):
    """Messenger channel adapter.

    Handles:
    - Webhook parsing for ``object == "page"`` payloads
    - Sending text and media through the Send API
    - X-Hub-Signature-256 validation
    """

    def __init__(
        self,
        graph_client: GraphAPIClient | None = None,
        app_secret: str | None = None,
    ) -> None:
        self.graph = graph_client or get_graph_client()
        self.app_secret = app_secret if app_secret is not None else settings.facebook_app_secret

    @property
    def channel_name(self) -> str:
        return "messenger"

    async def parse_webhook(self, payload: dict[str, Any]) -> list[IncomingMessengerEvent]:
        """Parse a page webhook payload.

        Facebook batches events:
        - object: "page"
        - entry[]: {id: page id, time, messaging[]}
        - messaging[]: {sender: {id}, recipient: {id}, timestamp, message: {mid, text, is_echo}}
        """
        if payload.get("object") != "page":
            logger.debug("Webhook is not a page event", object=payload.get("object"))
            return []

        events: list[IncomingMessengerEvent] = []
        for entry in payload.get("entry", []):
            page_id = str(entry.get("id", ""))
            for item in entry.get("messaging", []):
                message = item.get("message")
                sender_id = item.get("sender", {}).get("id")
                recipient_id = item.get("recipient", {}).get("id")
                if not message or not sender_id or not recipient_id:
                    continue

                timestamp = item.get("timestamp")
                events.append(
                    IncomingMessengerEvent(
                        page_id=page_id or str(recipient_id),
                        sender_id=str(sender_id),
                        recipient_id=str(recipient_id),
                        text=message.get("text"),
                        timestamp=(
                            datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc)
                            if timestamp
                            else None
                        ),
                        is_echo=bool(message.get("is_echo")),
                        message_id=message.get("mid"),
                        raw_payload=item,
                    )
                )

        logger.info("Parsed Messenger webhook", events=len(events))
        return events

    async def send_message(self, message: OutgoingMessage) -> SendResult:
        """Send text first, then each usable attachment as its own message."""
        message_id: str | None = None
        try:
            if message.content:
                response = await self.graph.send_text(
                    message.recipient_id,
                    message.content,
                    message.page_access_token,
                    tag=message.message_tag,
                )
                message_id = response.get("message_id")

            for attachment in message.attachments:
                if not attachment.sendable:
                    logger.debug(
                        "Skipping unusable attachment",
                        filename=attachment.filename,
                        error=attachment.error,
                    )
                    continue
                response = await self.graph.send_attachment(
                    message.recipient_id,
                    attachment,
                    message.page_access_token,
                    tag=message.message_tag,
                )
                message_id = message_id or response.get("message_id")

        except GraphAPIError as e:
            logger.warning(
                "Messenger send failed",
                recipient=mask_id(message.recipient_id),
                fb_code=e.fb_code,
                error_type=e.error_type,
            )
            return SendResult(
                recipient_id=message.recipient_id,
                success=False,
                message_id=message_id,
                error=e.message,
                error_type=DeliveryErrorType(e.error_type),
                retry_after=e.retry_after,
            )

        if message_id is None:
            return SendResult(
                recipient_id=message.recipient_id,
                success=False,
                error="Nothing to send",
                error_type=DeliveryErrorType.OTHER,
            )

        return SendResult(recipient_id=message.recipient_id, success=True, message_id=message_id)

    def validate_webhook(self, request_data: bytes, signature: str) -> bool:
        """Validate the X-Hub-Signature-256 header (HMAC-SHA256 with the app secret)."""
        if not signature or not signature.startswith("sha256="):
            logger.warning("Missing or malformed webhook signature")
            return False
        if not self.app_secret:
            logger.warning("App secret not configured, cannot validate webhook")
            return False

        expected = hmac.new(
            self.app_secret.encode("utf-8"),
            request_data,
            hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(expected, signature[len("sha256=") :])


# Singleton instance
_messenger_adapter: MessengerAdapter | None = None


def get_messenger_adapter() -> MessengerAdapter:
    """Get or create the Messenger adapter singleton."""
    global _messenger_adapter
    if _messenger_adapter is None:
        _messenger_adapter = MessengerAdapter()
    return _messenger_adapter
