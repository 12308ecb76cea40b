"""FastAPI dependencies for dependency injection."""

import hashlib
import hmac
import secrets
from typing import Annotated

from fastapi import Cookie, Depends, Header

from messenger_outreach.core.config import Settings, settings
from messenger_outreach.core.exceptions import NotAuthenticated
from messenger_outreach.models import User
from messenger_outreach.services.ai.automation import AutomationRunner
from messenger_outreach.services.ai.lead_scorer import LeadScorer
from messenger_outreach.services.ai.pipeline import PipelineService
from messenger_outreach.services.ai.provider import LLMProvider, get_llm_provider
from messenger_outreach.services.channels.base import ChannelAdapter
from messenger_outreach.services.channels.messenger import get_messenger_adapter
from messenger_outreach.services.contact_timing.service import ContactTimingService
from messenger_outreach.services.conversations.sync import ConversationSyncService
from messenger_outreach.services.conversations.tagging import TagService
from messenger_outreach.services.dispatch.dispatcher import MessageDispatcher
from messenger_outreach.services.dispatch.rate_limit import RateLimitTracker
from messenger_outreach.services.facebook.client import GraphAPIClient, get_graph_client
from messenger_outreach.services.media.service import MediaService
from messenger_outreach.storage.base import StorageBackend
from messenger_outreach.storage.memory import InMemoryStorage

SESSION_COOKIE = "fb-auth-user"
LEGACY_SESSION_COOKIE = "fb-user-id"
OAUTH_STATE_COOKIE = "fb-oauth-state"


# Storage singleton
_storage: StorageBackend | None = None


def get_storage() -> StorageBackend:
    """Get the storage backend singleton.

    Uses Supabase when it is configured, in-memory storage otherwise.
    """
    global _storage
    if _storage is None:
        if settings.supabase_url and settings.supabase_service_role_key:
            from messenger_outreach.storage.supabase import SupabaseStorage

            _storage = SupabaseStorage(
                url=settings.supabase_url,
                service_key=settings.supabase_service_role_key,
                bucket=settings.supabase_storage_bucket,
            )
        else:
            _storage = InMemoryStorage()
    return _storage


def get_app_settings() -> Settings:
    return settings


# Shared across requests so every dispatch sees the same per-page window
_rate_limiter: RateLimitTracker | None = None


def get_rate_limiter() -> RateLimitTracker:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimitTracker(
            max_calls=settings.page_rate_limit_calls,
            period=settings.page_rate_limit_period_seconds,
        )
    return _rate_limiter


# Type aliases for cleaner dependency injection
StorageDep = Annotated[StorageBackend, Depends(get_storage)]
SettingsDep = Annotated[Settings, Depends(get_app_settings)]
GraphDep = Annotated[GraphAPIClient, Depends(get_graph_client)]
AdapterDep = Annotated[ChannelAdapter, Depends(get_messenger_adapter)]
LLMDep = Annotated[LLMProvider, Depends(get_llm_provider)]
RateLimiterDep = Annotated[RateLimitTracker, Depends(get_rate_limiter)]


def get_contact_timing_service(storage: StorageDep) -> ContactTimingService:
    return ContactTimingService(storage)


ContactTimingServiceDep = Annotated[ContactTimingService, Depends(get_contact_timing_service)]


def get_dispatcher(
    storage: StorageDep,
    adapter: AdapterDep,
    rate_limiter: RateLimiterDep,
    app_settings: SettingsDep,
    timing: ContactTimingServiceDep,
) -> MessageDispatcher:
    return MessageDispatcher(
        storage, adapter, rate_limiter=rate_limiter, settings=app_settings, timing=timing
    )


def get_tag_service(storage: StorageDep) -> TagService:
    return TagService(storage)


def get_sync_service(storage: StorageDep, graph: GraphDep) -> ConversationSyncService:
    return ConversationSyncService(storage, graph)


def get_media_service(storage: StorageDep, app_settings: SettingsDep) -> MediaService:
    return MediaService(storage, app_settings)


def get_lead_scorer(provider: LLMDep) -> LeadScorer:
    return LeadScorer(provider)


def get_pipeline_service(storage: StorageDep, provider: LLMDep) -> PipelineService:
    return PipelineService(storage, provider)


def get_automation_runner(
    storage: StorageDep,
    adapter: AdapterDep,
    provider: LLMDep,
    graph: GraphDep,
) -> AutomationRunner:
    return AutomationRunner(storage, adapter, provider, graph)


DispatcherDep = Annotated[MessageDispatcher, Depends(get_dispatcher)]
TagServiceDep = Annotated[TagService, Depends(get_tag_service)]
SyncServiceDep = Annotated[ConversationSyncService, Depends(get_sync_service)]
MediaServiceDep = Annotated[MediaService, Depends(get_media_service)]
LeadScorerDep = Annotated[LeadScorer, Depends(get_lead_scorer)]
AutomationRunnerDep = Annotated[AutomationRunner, Depends(get_automation_runner)]
PipelineServiceDep = Annotated[PipelineService, Depends(get_pipeline_service)]


# ==================== Session ====================


def _signature(value: str, secret: str) -> str:
    return hmac.new(secret.encode(), value.encode(), hashlib.sha256).hexdigest()


def sign_session(user_id: str, secret: str | None = None) -> str:
    """Cookie value carrying a user id and its HMAC-SHA256 signature."""
    return f"{user_id}.{_signature(user_id, secret or settings.session_secret)}"


def read_session(value: str | None, secret: str | None = None) -> str | None:
    """User id from a signed cookie value, None when missing or tampered."""
    if not value or "." not in value:
        return None
    user_id, signature = value.rsplit(".", 1)
    expected = _signature(user_id, secret or settings.session_secret)
    if not user_id or not hmac.compare_digest(signature, expected):
        return None
    return user_id


def new_oauth_state() -> str:
    return secrets.token_urlsafe(24)


async def get_current_user(
    storage: StorageDep,
    app_settings: SettingsDep,
    fb_auth_user: Annotated[str | None, Cookie(alias=SESSION_COOKIE)] = None,
    fb_user_id: Annotated[str | None, Cookie(alias=LEGACY_SESSION_COOKIE)] = None,
) -> User:
    """Resolve the signed-in user from the session cookie."""
    user_id = read_session(fb_auth_user, app_settings.session_secret) or read_session(
        fb_user_id, app_settings.session_secret
    )
    if user_id is None:
        raise NotAuthenticated()
    user = await storage.get_user(user_id)
    if user is None:
        raise NotAuthenticated("Session user no longer exists")
    return user


CurrentUserDep = Annotated[User, Depends(get_current_user)]


async def verify_cron_secret(
    app_settings: SettingsDep,
    authorization: Annotated[str | None, Header()] = None,
) -> bool:
    """Require ``Bearer <CRON_SECRET>`` when a cron secret is configured."""
    if not app_settings.cron_secret:
        return True
    expected = f"Bearer {app_settings.cron_secret}"
    if not authorization or not hmac.compare_digest(authorization, expected):
        raise NotAuthenticated("Invalid cron credentials")
    return True
