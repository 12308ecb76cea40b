"""Storage layer - Supabase and in-memory implementations."""

from messenger_outreach.storage.base import StorageBackend
from messenger_outreach.storage.memory import InMemoryStorage
from messenger_outreach.storage.supabase import SupabaseStorage

__all__ = ["StorageBackend", "InMemoryStorage", "SupabaseStorage"]
