"""Diagnostics for the signed-in user's setup."""

from collections import Counter
from typing import Any

import structlog
from fastapi import APIRouter

from messenger_outreach.api.dependencies import (
    CurrentUserDep,
    LLMDep,
    RateLimiterDep,
    SettingsDep,
    StorageDep,
)
from messenger_outreach.core.exceptions import AppException
from messenger_outreach.models import utc_now

logger = structlog.get_logger()

router = APIRouter(prefix="/diagnostics", tags=["Diagnostics"])


@router.get("")
async def diagnostics(
    user: CurrentUserDep,
    storage: StorageDep,
    app_settings: SettingsDep,
    llm: LLMDep,
    rate_limiter: RateLimiterDep,
) -> dict[str, Any]:
    """Configuration flags, storage reachability, token and dispatch status."""
    recommendations: list[str] = []

    environment = {
        "app_env": app_settings.app_env,
        "facebook_app_configured": bool(app_settings.facebook_app_id and app_settings.facebook_app_secret),
        "supabase_configured": bool(app_settings.supabase_url and app_settings.supabase_service_role_key),
        "webhook_verify_token_set": bool(app_settings.webhook_verify_token),
        "cron_secret_set": bool(app_settings.cron_secret),
        "llm_configured": llm.configured,
    }
    if not environment["facebook_app_configured"]:
        recommendations.append("Set FACEBOOK_APP_ID and FACEBOOK_APP_SECRET.")
    if not environment["llm_configured"]:
        recommendations.append("Set an LLM API key to enable lead scoring and automations.")

    try:
        storage_ok = await storage.health_check()
    except AppException as e:
        logger.warning("Diagnostics storage check failed", error=e.message)
        storage_ok = False
    if not storage_ok:
        recommendations.append("Storage is unreachable.")

    if user.token_expired():
        recommendations.append("Facebook token expired. Please log in again.")
    elif user.token_expiring_soon():
        recommendations.append("Facebook token expires within 7 days. Please log in again.")

    pages = await storage.list_pages(user.id)
    page_status = [
        {
            "id": page.id,
            "name": page.name,
            "is_active": page.is_active,
            "has_token": bool(page.access_token),
            "last_synced_at": page.last_synced_at.isoformat() if page.last_synced_at else None,
        }
        for page in pages
    ]
    if not pages:
        recommendations.append("No Facebook pages connected.")
    elif not any(p["has_token"] for p in page_status):
        recommendations.append("No page has an access token. Reconnect your pages.")

    messages = await storage.list_messages(user.id, limit=500)
    by_status = Counter(m.status.value for m in messages)

    return {
        "status": "ok",
        "timestamp": utc_now().isoformat(),
        "environment": environment,
        "storage": {"backend": type(storage).__name__, "healthy": storage_ok},
        "authentication": {
            "user_id": user.id,
            "token_expires_at": (
                user.facebook_token_expires_at.isoformat() if user.facebook_token_expires_at else None
            ),
            "token_expired": user.token_expired(),
            "token_expiring_soon": user.token_expiring_soon(),
        },
        "pages": page_status,
        "dispatch": {
            "messages_by_status": dict(by_status),
            "rate_limited_pages": rate_limiter.tracked_keys,
        },
        "recommendations": recommendations,
        "message": "Issues found - see recommendations" if recommendations else "All systems operational",
    }
