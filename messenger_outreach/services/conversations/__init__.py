"""Conversation sync and tagging."""

from messenger_outreach.services.conversations.sync import ConversationSyncService
from messenger_outreach.services.conversations.tagging import BulkTagAction, TagService

__all__ = ["BulkTagAction", "ConversationSyncService", "TagService"]
