"""Tag management endpoints."""

from fastapi import APIRouter, status
from pydantic import BaseModel, Field

from messenger_outreach.api.dependencies import CurrentUserDep, TagServiceDep
from messenger_outreach.models import Tag

router = APIRouter(prefix="/tags", tags=["Tags"])


# ==================== Pydantic Schemas ====================


class TagCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    color: str | None = Field(default=None, pattern=r"^#[0-9A-Fa-f]{6}$")


class TagUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    color: str | None = Field(default=None, pattern=r"^#[0-9A-Fa-f]{6}$")


# ==================== Tag Endpoints ====================


@router.get("", response_model=list[Tag])
async def list_tags(user: CurrentUserDep, tags: TagServiceDep) -> list[Tag]:
    return await tags.list_tags(user.id)


@router.post("", response_model=Tag, status_code=status.HTTP_201_CREATED)
async def create_tag(data: TagCreate, user: CurrentUserDep, tags: TagServiceDep) -> Tag:
    return await tags.create_tag(user.id, data.name, data.color)


@router.get("/{tag_id}", response_model=Tag)
async def get_tag(tag_id: str, user: CurrentUserDep, tags: TagServiceDep) -> Tag:
    return await tags.get_tag(user.id, tag_id)


@router.patch("/{tag_id}", response_model=Tag)
async def update_tag(tag_id: str, data: TagUpdate, user: CurrentUserDep, tags: TagServiceDep) -> Tag:
    return await tags.update_tag(user.id, tag_id, name=data.name, color=data.color)


@router.delete("/{tag_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_tag(tag_id: str, user: CurrentUserDep, tags: TagServiceDep) -> None:
    """Delete a tag and remove it from every conversation."""
    await tags.delete_tag(user.id, tag_id)
