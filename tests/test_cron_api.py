"""Tests for page token refresh and the maintenance cron endpoints."""

from datetime import timedelta

import httpx
import pytest

from messenger_outreach.models import (
    DeliveryErrorType,
    FacebookPage,
    Message,
    MessageStatus,
    RecipientType,
    TokenRefreshStatus,
    utc_now,
)
from messenger_outreach.services.dispatch.dispatcher import MessageDispatcher
from messenger_outreach.services.facebook.client import GraphAPIClient, get_graph_client
from messenger_outreach.services.facebook.tokens import refresh_expiring_tokens


def token_graph(requests):
    """Graph stub: ``page-token`` expires in two days, ``long-token`` in thirty."""
    now = utc_now()
    expiries = {
        "page-token": int((now + timedelta(days=2)).timestamp()),
        "long-token": int((now + timedelta(days=30)).timestamp()),
        "forever-token": 0,
    }

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        path = request.url.path
        if path.endswith("/debug_token"):
            token = request.url.params["input_token"]
            if token not in expiries:
                return httpx.Response(200, json={"data": {"is_valid": False}})
            return httpx.Response(200, json={"data": {"is_valid": True, "expires_at": expiries[token]}})
        if path.endswith("/oauth/access_token"):
            return httpx.Response(200, json={"access_token": "new-user-token", "expires_in": 5184000})
        if path.endswith("/page-1"):
            return httpx.Response(200, json={"id": "page-1", "access_token": "new-page-token"})
        if path.endswith("/conversations"):
            return httpx.Response(200, json={"data": []})
        return httpx.Response(404, json={"error": {"message": "Unknown path", "code": 803}})

    return GraphAPIClient(
        app_id="app", app_secret="secret", retry_base_delay=0, transport=httpx.MockTransport(handler)
    )


async def add_page(storage, user, facebook_page_id, token, **kwargs):
    page = FacebookPage(
        facebook_page_id=facebook_page_id,
        user_id=user.id,
        name=f"Page {facebook_page_id}",
        access_token=token,
        **kwargs,
    )
    await storage.save_page(page)
    return page


@pytest.mark.asyncio
async def test_refresh_expiring_tokens(storage, user, page):
    requests = []
    long_lived = await add_page(storage, user, "page-2", "long-token")
    forever = await add_page(storage, user, "page-3", "forever-token")
    revoked = await add_page(storage, user, "page-4", "revoked-token")
    await add_page(storage, user, "page-5", None)

    results = {r.page_id: r for r in await refresh_expiring_tokens(storage, token_graph(requests))}

    assert results[page.id].status == TokenRefreshStatus.REFRESHED
    assert results[long_lived.id].status == TokenRefreshStatus.SKIPPED
    assert results[long_lived.id].expires_at is not None
    assert results[forever.id].status == TokenRefreshStatus.SKIPPED
    assert results[revoked.id].status == TokenRefreshStatus.FAILED
    assert results[revoked.id].error == "Token is invalid"
    assert len(results) == 4

    assert (await storage.get_page(page.id)).access_token == "new-page-token"
    owner = await storage.get_user(user.id)
    assert owner.facebook_access_token == "new-user-token"
    assert owner.facebook_token_expires_at > utc_now() + timedelta(days=59)
    exchanges = [r for r in requests if r.url.path.endswith("/oauth/access_token")]
    assert exchanges[0].url.params["fb_exchange_token"] == "user-token"


@pytest.mark.asyncio
async def test_refresh_fails_without_owner_token(storage, user, page):
    user.facebook_access_token = None
    await storage.save_user(user)

    results = await refresh_expiring_tokens(storage, token_graph([]))

    assert [r.status for r in results] == [TokenRefreshStatus.FAILED]
    assert results[0].error == "Page owner has no user token"
    assert (await storage.get_page(page.id)).access_token == "page-token"


@pytest.mark.asyncio
async def test_refresh_tokens_endpoint(app, client, page):
    app.dependency_overrides[get_graph_client] = lambda: token_graph([])

    data = (await client.post("/cron/refresh-tokens")).json()

    assert data["success"] is True
    assert data["stats"] == {"checked": 1, "refreshed": 1, "failed": 0}
    assert data["results"][0]["status"] == "refreshed"


@pytest.mark.asyncio
async def test_sync_all_pages_endpoint(app, client, storage, user, page):
    requests = []
    app.dependency_overrides[get_graph_client] = lambda: token_graph(requests)
    tokenless = await add_page(storage, user, "page-2", None)

    data = (await client.get("/cron/sync-all-pages")).json()

    assert (data["pages"], data["synced"], data["failed"]) == (2, 1, 1)
    errors = {r["page_id"]: r["error"] for r in data["results"]}
    assert errors[page.id] is None
    assert "no access token" in errors[tokenless.id]
    assert (await storage.get_page(page.id)).last_synced_at is not None
    assert any(r.url.path.endswith("/page-1/conversations") for r in requests)


@pytest.mark.asyncio
async def test_retry_failed_endpoint(client, storage, fake_adapter, user, page, test_settings, rate_limiter):
    fake_adapter.fail("b", DeliveryErrorType.NETWORK)
    message = Message(
        title="Flash sale",
        content="Hi!",
        page_id=page.id,
        created_by=user.id,
        recipient_type=RecipientType.SELECTED,
        selected_recipients=["a", "b"],
    )
    await storage.save_message(message)
    dispatcher = MessageDispatcher(storage, fake_adapter, rate_limiter=rate_limiter, settings=test_settings)
    await dispatcher.prepare_send(message.id, user.id)
    await dispatcher.run(message.id)
    fake_adapter.failures.clear()

    data = (await client.post("/cron/retry-failed")).json()

    assert data["retried"] == 1
    assert data["results"][0]["retry_attempt"] == 1
    stored = await storage.get_message(message.id)
    assert stored.status == MessageStatus.SENT
    assert stored.delivered_count == 2
