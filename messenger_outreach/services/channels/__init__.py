"""Communication channel adapters."""

from messenger_outreach.services.channels.base import ChannelAdapter
from messenger_outreach.services.channels.messenger import MessengerAdapter, get_messenger_adapter

__all__ = ["ChannelAdapter", "MessengerAdapter", "get_messenger_adapter"]
