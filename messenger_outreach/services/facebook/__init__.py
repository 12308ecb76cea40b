"""Facebook Graph API access and error classification."""

from messenger_outreach.services.facebook.client import (
    GraphAPIClient,
    calculate_token_expiry,
    get_graph_client,
    is_token_expiring_soon,
    parse_graph_time,
)
from messenger_outreach.services.facebook.errors import classify, retry_delay, user_friendly_message
from messenger_outreach.services.facebook.tokens import refresh_expiring_tokens, refresh_page_token

__all__ = [
    "GraphAPIClient",
    "calculate_token_expiry",
    "classify",
    "get_graph_client",
    "is_token_expiring_soon",
    "parse_graph_time",
    "refresh_expiring_tokens",
    "refresh_page_token",
    "retry_delay",
    "user_friendly_message",
]
