"""Tests for tag and conversation endpoints."""

from datetime import timedelta

import pytest

from messenger_outreach.models import utc_now


async def create_tag(auth_client, name, color="#22c55e"):
    response = await auth_client.post("/tags", json={"name": name, "color": color})
    assert response.status_code == 201, response.text
    return response.json()


@pytest.mark.asyncio
async def test_tag_crud(auth_client):
    tag = await create_tag(auth_client, "VIP")

    duplicate = await auth_client.post("/tags", json={"name": "VIP"})
    assert duplicate.status_code == 409

    bad_color = await auth_client.post("/tags", json={"name": "Other", "color": "green"})
    assert bad_color.status_code == 422

    updated = await auth_client.patch(f"/tags/{tag['id']}", json={"color": "#000000"})
    assert updated.json()["color"] == "#000000"
    assert updated.json()["name"] == "VIP"

    assert (await auth_client.delete(f"/tags/{tag['id']}")).status_code == 204
    assert (await auth_client.get(f"/tags/{tag['id']}")).status_code == 404


@pytest.mark.asyncio
async def test_list_conversations_with_tags(auth_client, page, make_conversation):
    recent = await make_conversation("psid-1", sender_name="Ana Reyes", minutes_ago=1)
    await make_conversation("psid-2", minutes_ago=30)
    tag = await create_tag(auth_client, "Lead")
    await auth_client.post(f"/conversations/{recent.id}/tags", json={"tag_ids": [tag["id"]]})

    data = (await auth_client.get("/conversations", params={"limit": 1})).json()

    assert data["total"] == 2
    assert data["has_more"] is True
    first = data["conversations"][0]
    assert first["conversation"]["sender_name"] == "Ana Reyes"
    assert [t["name"] for t in first["tags"]] == ["Lead"]


@pytest.mark.asyncio
async def test_list_conversations_with_naive_date_filter(auth_client, page, make_conversation):
    await make_conversation("psid-1", minutes_ago=1)
    await make_conversation("psid-2", minutes_ago=120)
    since = (utc_now() - timedelta(minutes=30)).replace(tzinfo=None).isoformat()

    response = await auth_client.get("/conversations", params={"start_date": since})

    assert response.status_code == 200
    assert [c["conversation"]["sender_id"] for c in response.json()["conversations"]] == ["psid-1"]


@pytest.mark.asyncio
async def test_conversation_tag_endpoints(auth_client, page, make_conversation):
    conversation = await make_conversation("psid-1")
    vip = await create_tag(auth_client, "VIP")
    lead = await create_tag(auth_client, "Lead")

    added = await auth_client.post(
        f"/conversations/{conversation.id}/tags", json={"tag_ids": [vip["id"], lead["id"]]}
    )
    assert sorted(t["name"] for t in added.json()) == ["Lead", "VIP"]

    removed = await auth_client.delete(f"/conversations/{conversation.id}/tags", params={"tag_ids": [vip["id"]]})
    assert removed.json() == {"removed": 1}

    tags = (await auth_client.get(f"/conversations/{conversation.id}/tags")).json()
    assert [t["name"] for t in tags] == ["Lead"]


@pytest.mark.asyncio
async def test_bulk_tags(auth_client, page, make_conversation):
    ids = [(await make_conversation(f"psid-{i}")).id for i in range(3)]
    vip = await create_tag(auth_client, "VIP")

    assigned = await auth_client.post(
        "/conversations/bulk-tags", json={"conversation_ids": ids, "tag_ids": [vip["id"]], "action": "assign"}
    )
    assert assigned.json()["added"] == 3

    invalid = await auth_client.post(
        "/conversations/bulk-tags", json={"conversation_ids": ids, "tag_ids": [vip["id"]], "action": "toggle"}
    )
    assert invalid.status_code == 400

    cleared = await auth_client.post("/conversations/bulk-tags", json={"conversation_ids": ids, "action": "remove"})
    assert cleared.json()["removed"] == 3


@pytest.mark.asyncio
async def test_auto_tag_endpoint(auth_client, page, make_conversation):
    conversation = await make_conversation("psid-1")
    tag = await create_tag(auth_client, "Promo")

    response = await auth_client.post(
        "/conversations/auto-tag", json={"conversation_ids": [conversation.id], "tag_ids": [tag["id"]]}
    )

    assert response.json() == {"success": True, "tagged": 1, "tags": 1, "added": 1}


@pytest.mark.asyncio
async def test_tagging_without_pages_is_forbidden(auth_client):
    tag = await create_tag(auth_client, "VIP")

    response = await auth_client.post(
        "/conversations/bulk-tags", json={"conversation_ids": ["conv-1"], "tag_ids": [tag["id"]]}
    )

    assert response.status_code == 403
