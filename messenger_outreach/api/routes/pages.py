"""Connected Facebook page endpoints."""

from datetime import datetime

import structlog
from fastapi import APIRouter, status
from pydantic import BaseModel

from messenger_outreach.api.dependencies import CurrentUserDep, GraphDep, StorageDep
from messenger_outreach.core.exceptions import NotFound
from messenger_outreach.models import FacebookPage, utc_now
from messenger_outreach.services.facebook.pages import refresh_user_pages
from messenger_outreach.storage.base import StorageBackend

logger = structlog.get_logger()

router = APIRouter(prefix="/pages", tags=["Pages"])


# ==================== Pydantic Schemas ====================


class PageResponse(BaseModel):
    """Page without its access token."""

    id: str
    facebook_page_id: str
    name: str
    category: str | None
    profile_picture: str | None
    follower_count: int
    is_active: bool
    has_token: bool
    last_synced_at: datetime | None

    @classmethod
    def from_page(cls, page: FacebookPage) -> "PageResponse":
        return cls(
            **page.model_dump(
                include={
                    "id",
                    "facebook_page_id",
                    "name",
                    "category",
                    "profile_picture",
                    "follower_count",
                    "is_active",
                    "last_synced_at",
                }
            ),
            has_token=bool(page.access_token),
        )


async def get_owned_page(storage: StorageBackend, user_id: str, page_id: str) -> FacebookPage:
    page = await storage.get_page(page_id)
    if page is None or page.user_id != user_id:
        raise NotFound("Facebook page", page_id)
    return page


# ==================== Page Endpoints ====================


@router.get("", response_model=list[PageResponse])
async def list_pages(user: CurrentUserDep, storage: StorageDep) -> list[PageResponse]:
    pages = await storage.list_pages(user.id)
    return [PageResponse.from_page(p) for p in pages]


@router.post("/sync", response_model=list[PageResponse])
async def sync_pages(user: CurrentUserDep, storage: StorageDep, graph: GraphDep) -> list[PageResponse]:
    """Refresh the user's pages and page tokens from Facebook."""
    pages = await refresh_user_pages(storage, graph, user)
    return [PageResponse.from_page(p) for p in pages]


@router.post("/{page_id}/toggle", response_model=PageResponse)
async def toggle_page(page_id: str, user: CurrentUserDep, storage: StorageDep) -> PageResponse:
    page = await get_owned_page(storage, user.id, page_id)
    page.is_active = not page.is_active
    page.updated_at = utc_now()
    await storage.save_page(page)
    logger.info("Page toggled", page_id=page.id, is_active=page.is_active)
    return PageResponse.from_page(page)


@router.delete("/{page_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_page(page_id: str, user: CurrentUserDep, storage: StorageDep) -> None:
    await get_owned_page(storage, user.id, page_id)
    await storage.delete_page(page_id)
    logger.info("Page disconnected", page_id=page_id)
