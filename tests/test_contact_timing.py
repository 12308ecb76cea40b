"""Tests for contact event tracking and the contact timing endpoints."""

from datetime import datetime, timedelta, timezone

import pytest

from messenger_outreach.core.exceptions import NotFound, ValidationFailed
from messenger_outreach.models import (
    ContactEventType,
    Conversation,
    Message,
    RecipientType,
    TimezoneConfidence,
    TimezoneSource,
    utc_now,
)
from messenger_outreach.services.contact_timing.service import ContactTimingService
from messenger_outreach.services.dispatch.dispatcher import MessageDispatcher

# Monday 15:00 UTC, 10:00 in New York
NOW = datetime(2025, 1, 20, 15, tzinfo=timezone.utc)


@pytest.fixture
def timing(storage):
    return ContactTimingService(storage)


async def weekly_replies(timing, conversation, weeks=4):
    """Attempts on Mondays at 14:00 UTC, each answered half an hour later."""
    for i in range(weeks):
        sent_at = NOW - timedelta(weeks=i, hours=1)
        await timing.track_send(conversation, message_id=f"mid.{i}", at=sent_at)
        await timing.record_response(conversation, at=sent_at + timedelta(minutes=30))


# ==================== Event tracking ====================


@pytest.mark.asyncio
async def test_reply_credits_latest_unanswered_attempt(timing, storage, make_conversation):
    conversation = await make_conversation("psid-1")
    old = await timing.track_send(conversation, at=NOW - timedelta(hours=30))
    earlier = await timing.track_send(conversation, at=NOW - timedelta(hours=3))
    latest = await timing.track_send(conversation, at=NOW - timedelta(hours=1))

    answered = await timing.record_response(conversation, at=NOW)
    assert answered.id == latest.id
    assert answered.response_timestamp == NOW
    assert answered.success_weight == 1.0

    answered = await timing.record_response(conversation, ContactEventType.MESSAGE_CLICKED, at=NOW)
    assert answered.id == earlier.id
    assert answered.success_weight == 0.5

    # Outside the 24 hour success window
    assert await timing.record_response(conversation, at=NOW) is None

    events = {e.id: e for e in await storage.list_contact_events(conversation.id)}
    assert not events[old.id].is_success
    inbound = [e for e in events.values() if not e.is_outbound]
    assert len(inbound) == 3
    assert all(e.is_success for e in inbound)


@pytest.mark.asyncio
async def test_track_send_to_unknown_contact(timing, page):
    assert await timing.track_send_to(page.facebook_page_id, "stranger", "mid.1") is None


@pytest.mark.asyncio
async def test_dispatcher_tracks_successful_sends(
    storage, fake_adapter, rate_limiter, test_settings, user, page, make_conversation
):
    known = await make_conversation("a")
    await make_conversation("c")
    fake_adapter.fail("c")
    message = Message(
        title="Flash sale",
        content="Hi!",
        page_id=page.id,
        created_by=user.id,
        recipient_type=RecipientType.SELECTED,
        selected_recipients=["a", "b", "c"],
    )
    await storage.save_message(message)
    dispatcher = MessageDispatcher(
        storage,
        fake_adapter,
        rate_limiter=rate_limiter,
        settings=test_settings,
        timing=ContactTimingService(storage),
    )

    await dispatcher.prepare_send(message.id, user.id)
    await dispatcher.run(message.id)

    events = await storage.list_contact_events(known.id)
    assert [e.event_type for e in events] == [ContactEventType.MESSAGE_SENT]
    assert events[0].message_id == "mid.1"
    assert events[0].sender_id == "a"
    failed = await storage.get_conversation_by_sender(page.facebook_page_id, "c")
    assert await storage.list_contact_events(failed.id) == []


@pytest.mark.asyncio
async def test_webhook_reply_answers_tracked_send(client, storage, page, make_conversation):
    conversation = await make_conversation("psid-1")
    timing = ContactTimingService(storage)
    sent_at = datetime(2024, 5, 1, 9, tzinfo=timezone.utc)
    attempt = await timing.track_send(conversation, at=sent_at)
    event = {
        "object": "page",
        "entry": [
            {
                "id": "page-1",
                "time": 1714557600000,
                "messaging": [
                    {
                        "sender": {"id": "psid-1"},
                        "recipient": {"id": "page-1"},
                        "timestamp": 1714557600000,
                        "message": {"mid": "m_1", "text": "Interested po"},
                    }
                ],
            }
        ],
    }

    response = await client.post("/webhook", json=event)

    assert response.json() == {"status": "EVENT_RECEIVED"}
    events = {e.id: e for e in await storage.list_contact_events(conversation.id)}
    assert events[attempt.id].is_success
    assert events[attempt.id].response_latency_hours == pytest.approx(1.0)


# ==================== Recommendations ====================


@pytest.mark.asyncio
async def test_compute_recommendation(timing, storage, user, make_conversation):
    await timing.save_config(user.id, {"epsilon_exploration": 0})
    conversation = await make_conversation("psid-1", "Ana Reyes")
    await weekly_replies(timing, conversation)

    [rec] = await timing.compute(user.id, now=NOW)

    assert rec.timezone == "America/New_York"
    assert rec.timezone_confidence == TimezoneConfidence.MEDIUM
    assert rec.timezone_source == TimezoneSource.ACTIVITY
    first = rec.recommended_windows[0]
    assert (first.dow, first.start) == ("Mon", "09:00")
    assert (rec.total_attempts, rec.total_successes, rec.overall_response_rate) == (4, 4, 1.0)
    assert rec.last_contact_attempt_at == NOW - timedelta(hours=1)
    assert rec.last_positive_signal_at == NOW - timedelta(minutes=30)
    assert rec.sender_name == "Ana Reyes"
    assert await storage.get_recommendation(conversation.id) is not None

    priors = {p.hour_of_week: p for p in await timing.storage.list_segment_priors(user.id)}
    assert priors[33].contact_count == 1
    assert priors[33].success_count > 0


@pytest.mark.asyncio
async def test_recompute_updates_existing_recommendation(timing, storage, user, make_conversation):
    conversation = await make_conversation("psid-1")
    [first] = await timing.compute(user.id, now=NOW)
    assert first.total_attempts == 0
    assert first.recommended_windows == []

    await weekly_replies(timing, conversation, weeks=1)
    [second] = await timing.compute(user.id, [conversation.id], now=NOW)

    assert second.id == first.id
    assert second.total_attempts == 1


@pytest.mark.asyncio
async def test_compute_ignores_other_users_conversations(timing, storage, user):
    foreign = Conversation(user_id="someone-else", page_id="page-9", sender_id="psid-9")
    await storage.save_conversation(foreign)

    assert await timing.compute(user.id, [foreign.id], now=NOW) == []


@pytest.mark.asyncio
async def test_manual_timezone_survives_recompute(timing, user, make_conversation):
    conversation = await make_conversation("psid-1")
    await weekly_replies(timing, conversation)

    [rec] = await timing.update_timezone(user.id, [conversation.id], "Asia/Tokyo", now=NOW)
    assert rec.timezone == "Asia/Tokyo"
    assert rec.timezone_source == TimezoneSource.MANUAL
    assert rec.timezone_confidence == TimezoneConfidence.HIGH

    [rec] = await timing.compute(user.id, now=NOW)
    assert rec.timezone == "Asia/Tokyo"


@pytest.mark.asyncio
async def test_update_timezone_validation(timing, user, make_conversation):
    conversation = await make_conversation("psid-1")

    with pytest.raises(ValidationFailed):
        await timing.update_timezone(user.id, [conversation.id], "Mars/Olympus_Mons")
    with pytest.raises(NotFound):
        await timing.update_timezone(user.id, ["missing"], "Asia/Manila")


@pytest.mark.asyncio
async def test_config_created_with_defaults(timing, storage, user):
    config = await timing.get_config(user.id)

    assert config.user_id == user.id
    assert config.top_k_windows == 6
    assert await storage.get_timing_config(user.id) is not None

    with pytest.raises(ValidationFailed):
        await timing.save_config(user.id, {"quiet_hours_start": "late"})


# ==================== API ====================


@pytest.mark.asyncio
async def test_recommendations_endpoint(auth_client, storage, user, make_conversation):
    timing = ContactTimingService(storage)
    ana = await make_conversation("psid-1", "Ana Reyes")
    ben = await make_conversation("psid-2", "Ben Cruz")
    await weekly_replies(timing, ana)
    await timing.track_send(ben, at=NOW - timedelta(days=2))

    response = await auth_client.post("/contact-timing/compute", json={})
    assert response.status_code == 200
    assert response.json()["processed"] == 2

    data = (await auth_client.get("/contact-timing/recommendations")).json()
    assert data["total"] == 2
    top = data["recommendations"][0]
    assert top["sender_name"] == "Ana Reyes"
    assert top["response_rate"] == 100.0
    assert top["timezone"] == "America/New_York"
    assert top["timezone_display"] in ("EST", "EDT")

    data = (await auth_client.get("/contact-timing/recommendations", params={"search": "ben"})).json()
    assert [r["sender_name"] for r in data["recommendations"]] == ["Ben Cruz"]

    data = (
        await auth_client.get(
            "/contact-timing/recommendations", params={"sort_by": "sender_name", "sort_order": "asc", "limit": 1}
        )
    ).json()
    assert [r["sender_name"] for r in data["recommendations"]] == ["Ana Reyes"]
    assert data["has_more"] is True


@pytest.mark.asyncio
async def test_cooldown_hides_recommendation(auth_client, storage, user, make_conversation):
    conversation = await make_conversation("psid-1")
    await ContactTimingService(storage).compute(user.id)

    until = (utc_now() + timedelta(days=3)).isoformat()
    response = await auth_client.patch(
        f"/contact-timing/recommendations/{conversation.id}", json={"cooldown_until": until, "notes": "Call first"}
    )
    assert response.status_code == 200
    assert response.json()["in_cooldown"] is True

    data = (await auth_client.get("/contact-timing/recommendations", params={"exclude_cooldown": True})).json()
    assert data["total"] == 0
    data = (await auth_client.get("/contact-timing/recommendations")).json()
    assert data["recommendations"][0]["notes"] == "Call first"


@pytest.mark.asyncio
async def test_update_timezone_endpoints(auth_client, storage, make_conversation):
    ana = await make_conversation("psid-1")
    ben = await make_conversation("psid-2")

    response = await auth_client.post(
        "/contact-timing/update-timezone", json={"conversation_id": ana.id, "timezone": "Asia/Manila"}
    )
    assert response.status_code == 200
    assert response.json()["recommendation"]["timezone_source"] == "manual_override"

    response = await auth_client.post(
        "/contact-timing/update-timezone", json={"conversation_id": ana.id, "timezone": "Nowhere/Land"}
    )
    assert response.status_code == 400
    assert response.json()["error"] == "VALIDATION_FAILED"

    response = await auth_client.post(
        "/contact-timing/bulk-update-timezone",
        json={"conversation_ids": [ana.id, ben.id], "timezone": "Europe/London"},
    )
    assert response.json()["updated"] == 2
    assert (await storage.get_recommendation(ben.id)).timezone == "Europe/London"


@pytest.mark.asyncio
async def test_config_endpoints(auth_client):
    config = (await auth_client.get("/contact-timing/config")).json()
    assert config["top_k_windows"] == 6

    response = await auth_client.put(
        "/contact-timing/config",
        json={"quiet_hours_start": "21:00", "quiet_hours_end": "07:00", "preferred_days": [1, 2, 3, 4, 5]},
    )
    assert response.status_code == 200
    assert response.json()["quiet_hours_start"] == "21:00"
    assert (await auth_client.get("/contact-timing/config")).json()["preferred_days"] == [1, 2, 3, 4, 5]


@pytest.mark.asyncio
async def test_contact_timing_requires_session(client):
    response = await client.get("/contact-timing/recommendations")

    assert response.status_code == 401
