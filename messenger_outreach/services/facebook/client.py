"""Facebook Graph API client.

Covers the OAuth token flow, page and conversation reads, and the
Messenger Send API.
"""

from datetime import datetime, timedelta
from typing import Any, AsyncIterator
from urllib.parse import urlencode

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from messenger_outreach.core.config import settings
from messenger_outreach.core.exceptions import ConfigurationError, GraphAPIError
from messenger_outreach.core.logging import mask_id
from messenger_outreach.models import DeliveryErrorType, MediaAttachment, utc_now
from messenger_outreach.services.facebook import errors

logger = structlog.get_logger()

CONVERSATION_FIELDS = (
    "participants,updated_time,message_count,"
    "messages.limit(1){message,from,created_time}"
)
PAGE_FIELDS = "id,name,access_token,category,picture,followers_count"
PROFILE_FIELDS = "id,name,email,picture"
TOKEN_EXPIRING_SOON_DAYS = 7


def calculate_token_expiry(
    expires_in: int | None,
    now: datetime | None = None,
    default_days: int | None = None,
) -> datetime:
    """Expiry of a token given its ``expires_in`` seconds, 60 days when absent."""
    now = now or utc_now()
    if expires_in:
        return now + timedelta(seconds=int(expires_in))
    return now + timedelta(days=default_days or settings.facebook_long_lived_token_days)


def is_token_expiring_soon(
    expires_at: datetime | None,
    now: datetime | None = None,
    days: int = TOKEN_EXPIRING_SOON_DAYS,
) -> bool:
    if expires_at is None:
        return False
    return expires_at - (now or utc_now()) <= timedelta(days=days)


def parse_graph_time(value: str | None) -> datetime | None:
    """Parse Graph timestamps such as ``2024-05-01T10:00:00+0000``."""
    if not value:
        return None
    if len(value) > 5 and value[-5] in "+-" and value[-4:].isdigit():
        value = f"{value[:-2]}:{value[-2:]}"
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparseable Graph timestamp", value=value)
        return None


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, GraphAPIError) and exc.retryable


class GraphAPIClient:
    """Async Graph API client over httpx.

    GET requests are retried on rate-limit, temporary and network failures;
    sends are not, the dispatcher decides what to do with a failed send.
    """

    def __init__(
        self,
        app_id: str | None = None,
        app_secret: str | None = None,
        graph_version: str | None = None,
        timeout: float | None = None,
        max_retries: int = 3,
        retry_base_delay: float = errors.BASE_RETRY_DELAY,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.app_id = app_id or settings.facebook_app_id
        self.app_secret = app_secret or settings.facebook_app_secret
        self.graph_version = graph_version or settings.facebook_graph_version
        self.base_url = f"https://graph.facebook.com/{self.graph_version}"
        self.timeout = timeout or settings.facebook_request_timeout
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    def _url(self, path: str) -> str:
        if path.startswith("http"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def _make_request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make one request and turn Graph errors into GraphAPIError."""
        client = await self._get_client()

        try:
            response = await client.request(method, self._url(path), params=params, json=json_data)
        except httpx.RequestError as e:
            logger.warning("Graph API request failed", path=path.split("?")[0], error=str(e))
            raise GraphAPIError(
                f"Network error: {e}",
                error_type=DeliveryErrorType.NETWORK.value,
                retryable=True,
            ) from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code >= 400 or "error" in data:
            exc = errors.to_exception(
                data,
                status_code=response.status_code,
                retry_after=response.headers.get("Retry-After"),
            )
            logger.warning(
                "Graph API error",
                path=path.split("?")[0],
                status_code=response.status_code,
                fb_code=exc.fb_code,
                fb_subcode=exc.fb_subcode,
                error_type=exc.error_type,
            )
            raise exc

        return data

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """GET with exponential backoff on retryable failures."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(
                multiplier=self.retry_base_delay,
                max=errors.MAX_RETRY_DELAY,
            ),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        ):
            with attempt:
                return await self._make_request("GET", path, params=params)
        raise AssertionError("unreachable")

    def _require_app_credentials(self) -> None:
        if not self.app_id or not self.app_secret:
            raise ConfigurationError("Facebook app id and secret are not configured")

    # ==================== OAuth ====================

    def build_oauth_url(self, state: str, redirect_uri: str | None = None) -> str:
        """Facebook login dialog URL for the configured scopes."""
        query = urlencode(
            {
                "client_id": self.app_id,
                "redirect_uri": redirect_uri or settings.oauth_redirect_uri,
                "state": state,
                "scope": ",".join(settings.facebook_scopes),
                "response_type": "code",
            }
        )
        return f"https://www.facebook.com/{self.graph_version}/dialog/oauth?{query}"

    async def exchange_code_for_token(
        self,
        code: str,
        redirect_uri: str | None = None,
    ) -> dict[str, Any]:
        """Exchange an authorization code for a short-lived user token."""
        self._require_app_credentials()
        return await self._get(
            "oauth/access_token",
            {
                "client_id": self.app_id,
                "client_secret": self.app_secret,
                "redirect_uri": redirect_uri or settings.oauth_redirect_uri,
                "code": code,
            },
        )

    async def exchange_for_long_lived_token(self, short_lived_token: str) -> dict[str, Any]:
        """Exchange a short-lived token for a ~60 day token."""
        self._require_app_credentials()
        return await self._get(
            "oauth/access_token",
            {
                "grant_type": "fb_exchange_token",
                "client_id": self.app_id,
                "client_secret": self.app_secret,
                "fb_exchange_token": short_lived_token,
            },
        )

    async def debug_token(self, token: str) -> dict[str, Any]:
        """Inspect a token with the app access token."""
        self._require_app_credentials()
        data = await self._get(
            "debug_token",
            {
                "input_token": token,
                "access_token": f"{self.app_id}|{self.app_secret}",
            },
        )
        return data.get("data", {})

    async def get_user_profile(self, token: str) -> dict[str, Any]:
        return await self._get("me", {"fields": PROFILE_FIELDS, "access_token": token})

    async def get_user_pages(self, token: str) -> list[dict[str, Any]]:
        """Pages the user manages, with their page access tokens."""
        pages: list[dict[str, Any]] = []
        path: str | None = "me/accounts"
        params: dict[str, Any] | None = {"fields": PAGE_FIELDS, "access_token": token, "limit": 100}
        while path:
            data = await self._get(path, params)
            pages.extend(data.get("data", []))
            path = data.get("paging", {}).get("next")
            params = None
        return pages

    async def get_page_access_token(self, page_id: str, user_token: str) -> str | None:
        data = await self._get(page_id, {"fields": "access_token", "access_token": user_token})
        return data.get("access_token")

    # ==================== Conversations ====================

    async def iter_conversations(
        self,
        page_id: str,
        token: str,
        since: datetime | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield page conversations, following ``paging.next``."""
        params: dict[str, Any] | None = {
            "fields": CONVERSATION_FIELDS,
            "access_token": token,
            "limit": 100,
        }
        if since:
            params["since"] = int(since.timestamp())

        path: str | None = f"{page_id}/conversations"
        pages_fetched = 0
        while path:
            data = await self._get(path, params)
            pages_fetched += 1
            for conversation in data.get("data", []):
                yield conversation
            path = data.get("paging", {}).get("next")
            # The next URL already carries the query string
            params = None

        logger.debug("Fetched conversations", page_id=page_id, pages=pages_fetched)

    async def get_conversation_messages(
        self,
        sender_id: str,
        token: str,
        limit: int = 25,
    ) -> list[dict[str, Any]]:
        """Most recent messages exchanged with ``sender_id``, newest first."""
        data = await self._get(
            "me/conversations",
            {
                "user_id": sender_id,
                "fields": f"messages.limit({limit}){{message,from,created_time}}",
                "access_token": token,
            },
        )
        threads = data.get("data", [])
        if not threads:
            return []
        return threads[0].get("messages", {}).get("data", [])

    # ==================== Send API ====================

    def _send_payload(self, recipient_id: str, message: dict[str, Any], tag: str | None) -> dict[str, Any]:
        payload: dict[str, Any] = {"recipient": {"id": recipient_id}, "message": message}
        if tag:
            payload["messaging_type"] = "MESSAGE_TAG"
            payload["tag"] = tag
        else:
            payload["messaging_type"] = "RESPONSE"
        return payload

    async def _send(self, payload: dict[str, Any], token: str) -> dict[str, Any]:
        data = await self._make_request(
            "POST",
            "me/messages",
            params={"access_token": token},
            json_data=payload,
        )
        logger.info(
            "Sent Messenger message",
            recipient=mask_id(payload["recipient"]["id"]),
            message_id=data.get("message_id"),
            tag=payload.get("tag"),
        )
        return data

    async def send_text(
        self,
        recipient_id: str,
        text: str,
        token: str,
        tag: str | None = None,
    ) -> dict[str, Any]:
        """Send a text message; returns ``{"recipient_id", "message_id"}``."""
        return await self._send(self._send_payload(recipient_id, {"text": text}, tag), token)

    async def send_attachment(
        self,
        recipient_id: str,
        attachment: MediaAttachment,
        token: str,
        tag: str | None = None,
    ) -> dict[str, Any]:
        """Send one media attachment by URL."""
        message = {
            "attachment": {
                "type": attachment.type.value,
                "payload": {"url": attachment.url, "is_reusable": attachment.is_reusable},
            }
        }
        return await self._send(self._send_payload(recipient_id, message, tag), token)


# Singleton instance
_graph_client: GraphAPIClient | None = None


def get_graph_client() -> GraphAPIClient:
    """Get or create the Graph API client singleton."""
    global _graph_client
    if _graph_client is None:
        _graph_client = GraphAPIClient()
    return _graph_client
