"""Facebook login and session endpoints."""

from typing import Annotated, Any
from urllib.parse import urlencode

import structlog
from fastapi import APIRouter, Cookie
from fastapi.responses import JSONResponse, RedirectResponse

from messenger_outreach.api.dependencies import (
    LEGACY_SESSION_COOKIE,
    OAUTH_STATE_COOKIE,
    SESSION_COOKIE,
    CurrentUserDep,
    GraphDep,
    SettingsDep,
    StorageDep,
    new_oauth_state,
    sign_session,
)
from messenger_outreach.core.exceptions import GraphAPIError, ValidationFailed
from messenger_outreach.models import User, utc_now
from messenger_outreach.services.facebook.client import calculate_token_expiry
from messenger_outreach.services.facebook.pages import refresh_user_pages

logger = structlog.get_logger()

router = APIRouter(prefix="/auth", tags=["Auth"])


def _dashboard_redirect(base_url: str, **params: Any) -> RedirectResponse:
    return RedirectResponse(f"{base_url.rstrip('/')}/dashboard?{urlencode(params)}", status_code=302)


@router.get("/facebook")
async def facebook_login(graph: GraphDep, app_settings: SettingsDep) -> RedirectResponse:
    """Redirect to the Facebook login dialog."""
    state = new_oauth_state()
    response = RedirectResponse(graph.build_oauth_url(state, app_settings.oauth_redirect_uri), status_code=302)
    response.set_cookie(
        OAUTH_STATE_COOKIE,
        state,
        max_age=600,
        httponly=True,
        secure=app_settings.is_production,
        samesite="lax",
    )
    return response


@router.get("/facebook/callback")
async def facebook_callback(
    storage: StorageDep,
    graph: GraphDep,
    app_settings: SettingsDep,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    error_description: str | None = None,
    expected_state: Annotated[str | None, Cookie(alias=OAUTH_STATE_COOKIE)] = None,
) -> RedirectResponse:
    """Finish the OAuth flow: tokens, user, pages and session cookie."""
    base_url = app_settings.app_base_url
    if error:
        logger.warning("Facebook OAuth error", error=error, description=error_description)
        return _dashboard_redirect(base_url, error="facebook_auth_failed", message=error_description or error)
    if not code:
        return _dashboard_redirect(base_url, error="missing_code")
    if not state or not expected_state or state != expected_state:
        return _dashboard_redirect(base_url, error="invalid_state")

    try:
        short_lived = await graph.exchange_code_for_token(code, app_settings.oauth_redirect_uri)
        long_lived = await graph.exchange_for_long_lived_token(short_lived["access_token"])
        token = long_lived["access_token"]

        token_info = await graph.debug_token(token)
        if not token_info.get("is_valid"):
            raise ValidationFailed("Token validation failed")
        profile = await graph.get_user_profile(token)
    except (GraphAPIError, ValidationFailed) as e:
        logger.error("Facebook OAuth callback failed", error=e.message)
        return _dashboard_redirect(base_url, error="facebook_auth_failed", message=e.message)

    user = await storage.get_user_by_facebook_id(str(profile["id"])) or User(facebook_id=str(profile["id"]))
    user.name = profile.get("name") or user.name
    user.email = profile.get("email") or user.email
    user.profile_picture = (profile.get("picture") or {}).get("data", {}).get("url") or user.profile_picture
    user.facebook_access_token = token
    user.facebook_token_expires_at = calculate_token_expiry(
        long_lived.get("expires_in"), default_days=app_settings.facebook_long_lived_token_days
    )
    user.updated_at = utc_now()
    await storage.save_user(user)

    pages_count = 0
    try:
        pages_count = len(await refresh_user_pages(storage, graph, user))
    except GraphAPIError as e:
        # Login still succeeds, pages can be refreshed later
        logger.warning("Fetching pages failed", user_id=user.id, error=e.message)

    logger.info("User signed in", user_id=user.id, pages=pages_count)
    response = _dashboard_redirect(base_url, success="facebook_connected", pages=pages_count)
    response.set_cookie(
        SESSION_COOKIE,
        sign_session(user.id, app_settings.session_secret),
        max_age=app_settings.session_max_age_days * 24 * 3600,
        httponly=True,
        secure=app_settings.is_production,
        samesite="lax",
    )
    response.delete_cookie(OAUTH_STATE_COOKIE)
    return response


@router.get("/me")
async def me(user: CurrentUserDep, storage: StorageDep) -> dict[str, Any]:
    """The signed-in user with token status."""
    pages = await storage.list_pages(user.id)
    return {
        "user": {
            "id": user.id,
            "facebook_id": user.facebook_id,
            "name": user.name,
            "email": user.email,
            "profile_picture": user.profile_picture,
            "role": user.role.value,
        },
        "token": {
            "expires_at": (
                user.facebook_token_expires_at.isoformat() if user.facebook_token_expires_at else None
            ),
            "expired": user.token_expired(),
            "expiring_soon": user.token_expiring_soon(),
        },
        "pages": len(pages),
    }


@router.post("/logout")
async def logout() -> JSONResponse:
    """Clear the session cookies."""
    response = JSONResponse({"success": True})
    response.delete_cookie(SESSION_COOKIE)
    response.delete_cookie(LEGACY_SESSION_COOKIE)
    return response
