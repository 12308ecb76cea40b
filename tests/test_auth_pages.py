"""Tests for Facebook login, session and page endpoints."""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from messenger_outreach.api.dependencies import OAUTH_STATE_COOKIE, SESSION_COOKIE, read_session
from messenger_outreach.services.facebook.client import GraphAPIClient, get_graph_client

SESSION_SECRET = "test-session-secret"

ACCOUNTS = [
    {"id": "page-2", "name": "Santos Catering", "access_token": "page-2-token", "followers_count": 120},
]


def graph_handler(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    params = request.url.params
    if path.endswith("/oauth/access_token"):
        if params.get("grant_type") == "fb_exchange_token":
            return httpx.Response(200, json={"access_token": "long-token", "expires_in": 5_184_000})
        return httpx.Response(200, json={"access_token": "short-token"})
    if path.endswith("/debug_token"):
        return httpx.Response(200, json={"data": {"is_valid": True}})
    if path.endswith("/me/accounts"):
        return httpx.Response(200, json={"data": ACCOUNTS})
    if path.endswith("/me"):
        return httpx.Response(200, json={"id": "fb-user-2", "name": "Jose Cruz", "email": "jose@example.com"})
    return httpx.Response(404, json={"error": {"message": "Unknown path", "code": 803}})


@pytest.fixture
def graph(app):
    client = GraphAPIClient(app_id="app", app_secret="secret", transport=httpx.MockTransport(graph_handler))
    app.dependency_overrides[get_graph_client] = lambda: client
    return client


@pytest.mark.asyncio
async def test_login_redirects_to_facebook(client, graph):
    response = await client.get("/auth/facebook")

    assert response.status_code == 302
    location = urlparse(response.headers["location"])
    assert location.netloc == "www.facebook.com"
    query = parse_qs(location.query)
    assert query["client_id"] == ["app"]
    assert query["state"][0] == response.cookies[OAUTH_STATE_COOKIE]


@pytest.mark.asyncio
async def test_callback_creates_user_and_session(client, storage, graph):
    client.cookies.set(OAUTH_STATE_COOKIE, "state-1")

    response = await client.get("/auth/facebook/callback", params={"code": "abc", "state": "state-1"})

    assert response.status_code == 302
    assert "success=facebook_connected" in response.headers["location"]
    assert "pages=1" in response.headers["location"]

    user = await storage.get_user_by_facebook_id("fb-user-2")
    assert user.name == "Jose Cruz"
    assert user.facebook_access_token == "long-token"
    assert read_session(response.cookies[SESSION_COOKIE], SESSION_SECRET) == user.id
    pages = await storage.list_pages(user.id)
    assert [p.facebook_page_id for p in pages] == ["page-2"]


@pytest.mark.asyncio
async def test_callback_rejects_state_mismatch(client, storage, graph):
    client.cookies.set(OAUTH_STATE_COOKIE, "state-1")

    response = await client.get("/auth/facebook/callback", params={"code": "abc", "state": "forged"})

    assert "error=invalid_state" in response.headers["location"]
    assert await storage.get_user_by_facebook_id("fb-user-2") is None


@pytest.mark.asyncio
async def test_callback_reports_facebook_error(client, graph):
    response = await client.get(
        "/auth/facebook/callback", params={"error": "access_denied", "error_description": "Denied"}
    )

    assert "error=facebook_auth_failed" in response.headers["location"]


@pytest.mark.asyncio
async def test_me_and_logout(auth_client, page):
    me = (await auth_client.get("/auth/me")).json()

    assert me["user"]["name"] == "Maria Santos"
    assert me["token"]["expired"] is False
    assert me["token"]["expiring_soon"] is False
    assert me["pages"] == 1

    response = await auth_client.post("/auth/logout")
    assert response.json() == {"success": True}


@pytest.mark.asyncio
async def test_tampered_session_is_rejected(client, user):
    client.cookies.set(SESSION_COOKIE, f"{user.id}.forged")

    response = await client.get("/auth/me")

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_page_sync_deactivates_missing_pages(auth_client, storage, page, graph):
    response = await auth_client.post("/pages/sync")

    assert [p["facebook_page_id"] for p in response.json()] == ["page-2"]
    assert response.json()[0]["has_token"] is True
    assert "access_token" not in response.json()[0]
    assert (await storage.get_page(page.id)).is_active is False


@pytest.mark.asyncio
async def test_toggle_and_delete_page(auth_client, storage, page):
    toggled = (await auth_client.post(f"/pages/{page.id}/toggle")).json()
    assert toggled["is_active"] is False

    assert (await auth_client.delete(f"/pages/{page.id}")).status_code == 204
    assert (await auth_client.get("/pages")).json() == []
