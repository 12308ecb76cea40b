"""User and connected Facebook page models."""

from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, Field

from messenger_outreach.models.common import new_id, utc_now


class UserRole(str, Enum):
    """Role of an application user."""

    ADMIN = "admin"
    MANAGER = "manager"
    EDITOR = "editor"
    MEMBER = "member"


class User(BaseModel):
    """A page admin who signed in with Facebook."""

    id: str = Field(default_factory=new_id)
    facebook_id: str = Field(..., description="Facebook user id")
    name: str = ""
    email: str | None = None
    profile_picture: str | None = None
    role: UserRole = UserRole.MEMBER

    # Long-lived user token
    facebook_access_token: str | None = None
    facebook_token_expires_at: datetime | None = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def token_expired(self, now: datetime | None = None) -> bool:
        if not self.facebook_token_expires_at:
            return False
        return (now or utc_now()) >= self.facebook_token_expires_at

    def token_expiring_soon(self, now: datetime | None = None, days: int = 7) -> bool:
        """Check whether the stored token lapses within ``days``."""
        if not self.facebook_token_expires_at:
            return False
        return self.facebook_token_expires_at - (now or utc_now()) <= timedelta(days=days)


class FacebookPage(BaseModel):
    """A Facebook Page connected by a user."""

    id: str = Field(default_factory=new_id)
    facebook_page_id: str = Field(..., description="Facebook page id")
    user_id: str = Field(..., description="Owning user id")
    name: str = ""
    category: str | None = None
    profile_picture: str | None = None
    follower_count: int = 0

    # Page access token used for the Send API
    access_token: str | None = None
    is_active: bool = True
    last_synced_at: datetime | None = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class TokenRefreshStatus(str, Enum):
    SKIPPED = "skipped"
    REFRESHED = "refreshed"
    FAILED = "failed"


class TokenRefreshResult(BaseModel):
    """Outcome of checking one page token."""

    page_id: str
    page_name: str = ""
    status: TokenRefreshStatus
    expires_at: datetime | None = None
    error: str | None = None
