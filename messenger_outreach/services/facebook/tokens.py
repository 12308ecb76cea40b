"""Refresh page access tokens before they lapse."""

from datetime import datetime, timezone

import structlog

from messenger_outreach.core.exceptions import AppException
from messenger_outreach.models import FacebookPage, TokenRefreshResult, TokenRefreshStatus, User, utc_now
from messenger_outreach.services.facebook.client import (
    TOKEN_EXPIRING_SOON_DAYS,
    GraphAPIClient,
    calculate_token_expiry,
    is_token_expiring_soon,
)
from messenger_outreach.storage.base import StorageBackend

logger = structlog.get_logger()


def _expiry_from_debug(info: dict) -> datetime | None:
    """``expires_at`` of a debug_token payload; 0 means the token never expires."""
    expires_at = info.get("expires_at")
    if not expires_at:
        return None
    return datetime.fromtimestamp(int(expires_at), tz=timezone.utc)


async def _refresh_user_token(
    storage: StorageBackend,
    graph: GraphAPIClient,
    user: User,
    now: datetime,
) -> str:
    """Exchange the user's token for a fresh long-lived one and store it."""
    exchanged = await graph.exchange_for_long_lived_token(user.facebook_access_token)
    user.facebook_access_token = exchanged["access_token"]
    user.facebook_token_expires_at = calculate_token_expiry(exchanged.get("expires_in"), now)
    await storage.save_user(user)
    return user.facebook_access_token


async def refresh_page_token(
    storage: StorageBackend,
    graph: GraphAPIClient,
    page: FacebookPage,
    days: int = TOKEN_EXPIRING_SOON_DAYS,
    now: datetime | None = None,
    user_tokens: dict[str, str] | None = None,
) -> TokenRefreshResult:
    """Check one page token and replace it when it expires within ``days``.

    Invalid tokens cannot be refreshed and count as failures; the page
    owner has to log in again.
    """
    now = now or utc_now()
    user_tokens = {} if user_tokens is None else user_tokens
    result = TokenRefreshResult(page_id=page.id, page_name=page.name, status=TokenRefreshStatus.SKIPPED)

    try:
        info = await graph.debug_token(page.access_token)
        if not info.get("is_valid", False):
            result.status = TokenRefreshStatus.FAILED
            result.error = "Token is invalid"
            return result

        result.expires_at = _expiry_from_debug(info)
        if not is_token_expiring_soon(result.expires_at, now, days):
            return result

        user_token = user_tokens.get(page.user_id)
        if user_token is None:
            user = await storage.get_user(page.user_id)
            if user is None or not user.facebook_access_token:
                result.status = TokenRefreshStatus.FAILED
                result.error = "Page owner has no user token"
                return result
            user_token = await _refresh_user_token(storage, graph, user, now)
            user_tokens[page.user_id] = user_token

        token = await graph.get_page_access_token(page.facebook_page_id, user_token)
        if not token:
            result.status = TokenRefreshStatus.FAILED
            result.error = "No page token returned"
            return result

        page.access_token = token
        await storage.save_page(page)
        # Page tokens minted from a long-lived user token do not expire
        result.status = TokenRefreshStatus.REFRESHED
        result.expires_at = None
    except AppException as e:
        result.status = TokenRefreshStatus.FAILED
        result.error = e.message

    return result


async def refresh_expiring_tokens(
    storage: StorageBackend,
    graph: GraphAPIClient,
    days: int = TOKEN_EXPIRING_SOON_DAYS,
    now: datetime | None = None,
) -> list[TokenRefreshResult]:
    """Refresh every active page token that expires within ``days``."""
    user_tokens: dict[str, str] = {}
    results = []
    for page in await storage.list_pages(active_only=True):
        if not page.access_token:
            continue
        result = await refresh_page_token(storage, graph, page, days, now, user_tokens)
        if result.status == TokenRefreshStatus.FAILED:
            logger.warning("Page token refresh failed", page_id=page.facebook_page_id, error=result.error)
        results.append(result)

    logger.info(
        "Token refresh finished",
        checked=len(results),
        refreshed=sum(r.status == TokenRefreshStatus.REFRESHED for r in results),
        failed=sum(r.status == TokenRefreshStatus.FAILED for r in results),
    )
    return results
