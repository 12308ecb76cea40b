"""Connected Facebook pages of a user."""

from typing import Any

import structlog

from messenger_outreach.core.exceptions import ValidationFailed
from messenger_outreach.models import FacebookPage, User, utc_now
from messenger_outreach.services.facebook.client import GraphAPIClient
from messenger_outreach.storage.base import StorageBackend

logger = structlog.get_logger()


def page_from_graph(data: dict[str, Any], user_id: str, existing: FacebookPage | None = None) -> FacebookPage:
    """Build or refresh a page record from a ``me/accounts`` entry."""
    page = existing or FacebookPage(facebook_page_id=str(data["id"]), user_id=user_id)
    page.name = data.get("name") or page.name
    page.category = data.get("category") or page.category
    page.profile_picture = (data.get("picture") or {}).get("data", {}).get("url") or page.profile_picture
    page.follower_count = int(data.get("followers_count") or page.follower_count or 0)
    if data.get("access_token"):
        page.access_token = data["access_token"]
    page.updated_at = utc_now()
    return page


async def refresh_user_pages(
    storage: StorageBackend,
    graph: GraphAPIClient,
    user: User,
) -> list[FacebookPage]:
    """Store the pages the user manages; pages no longer returned are deactivated."""
    if not user.facebook_access_token:
        raise ValidationFailed("User has no Facebook access token, please log in again")

    fetched = await graph.get_user_pages(user.facebook_access_token)
    existing = {p.facebook_page_id: p for p in await storage.list_pages(user.id)}

    saved = []
    for data in fetched:
        if not data.get("id"):
            continue
        page = page_from_graph(data, user.id, existing.pop(str(data["id"]), None))
        saved.append(await storage.save_page(page))

    for stale in existing.values():
        if stale.is_active:
            stale.is_active = False
            stale.updated_at = utc_now()
            await storage.save_page(stale)

    logger.info("Pages refreshed", user_id=user.id, pages=len(saved), deactivated=len(existing))
    return saved
