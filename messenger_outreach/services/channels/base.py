"""Abstract base class for channel adapters."""

from abc import ABC, abstractmethod
from typing import Any

from messenger_outreach.models import IncomingMessengerEvent, OutgoingMessage, SendResult


class ChannelAdapter(ABC):
    """Abstract base class for communication channel adapters.

    The dispatcher and the automation runner only talk to this interface,
    so tests can swap in a fake channel.
    """

    @property
    @abstractmethod
    def channel_name(self) -> str:
        """Get the channel name identifier."""
        ...

    @abstractmethod
    async def parse_webhook(self, payload: dict[str, Any]) -> list[IncomingMessengerEvent]:
        """Parse incoming webhook payload into normalized events.

        Args:
            payload: Raw webhook payload from the channel

        Returns:
            Events found in the payload, empty if none are messages
        """
        ...

    @abstractmethod
    async def send_message(self, message: OutgoingMessage) -> SendResult:
        """Send a message through the channel.

        Failures are reported in the returned SendResult, never raised.
        """
        ...

    @abstractmethod
    def validate_webhook(self, request_data: bytes, signature: str) -> bool:
        """Validate webhook signature for security.

        Args:
            request_data: Raw request body
            signature: Signature header value

        Returns:
            True if valid, False otherwise
        """
        ...

    async def send_text(
        self,
        recipient_id: str,
        text: str,
        page_access_token: str,
        message_tag: str | None = None,
    ) -> SendResult:
        """Convenience method to send a simple text message."""
        message = OutgoingMessage(
            recipient_id=recipient_id,
            content=text,
            page_access_token=page_access_token,
            message_tag=message_tag,
        )
        return await self.send_message(message)
