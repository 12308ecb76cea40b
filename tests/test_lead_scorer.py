"""Tests for BANT lead scoring."""

from unittest.mock import AsyncMock

import httpx
import pytest

from messenger_outreach.core.exceptions import LLMError, NotFound
from messenger_outreach.models import ConversationLine, LeadQuality, LeadScore, ScoringConfig
from messenger_outreach.models.lead import PRICE_SHOPPER_SIGNAL
from messenger_outreach.services.ai.lead_scorer import LeadScorer, clamp_score, detect_price_shopper
from messenger_outreach.services.facebook.client import GraphAPIClient

LINES = [
    ConversationLine(from_customer=True, text="Magkano po yung ube cake?"),
    ConversationLine(from_customer=False, text="650 po for 8 inches"),
]


def scorer_with(response=None, error=None):
    provider = AsyncMock()
    if error is not None:
        provider.complete_json.side_effect = error
    else:
        provider.complete_json.return_value = response
    return LeadScorer(provider, delay_seconds=0), provider


def graph_with_messages(messages):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": [{"messages": {"data": messages}}]})

    return GraphAPIClient(app_id="app", app_secret="secret", transport=httpx.MockTransport(handler))


@pytest.mark.parametrize(
    "value,expected",
    [(65, 65), (150, 100), (-3, 0), ("72.6", 73), (None, 0), ("n/a", 0)],
)
def test_clamp_score(value, expected):
    assert clamp_score(value) == expected


def test_price_shopper_detection():
    config = ScoringConfig()
    assert detect_price_shopper(20, ["Asked how much"], 1, config) is True
    assert detect_price_shopper(45, ["Asked how much"], 1, config) is False
    assert detect_price_shopper(20, ["Asked how much"], 5, config) is False
    assert detect_price_shopper(20, ["Wants delivery"], 1, config) is False


@pytest.mark.asyncio
async def test_score_uses_model_response():
    scorer, provider = scorer_with(
        {
            "score": 130,
            "quality": "Cold",
            "budget": True,
            "need": True,
            "engagement": "high",
            "signals": ["Asked about delivery"],
            "reasoning": "Ready to order",
        }
    )

    result = await scorer.score("Ana", LINES)

    assert result.score == 100
    assert result.quality == LeadQuality.HOT
    assert result.has_budget is True
    assert result.has_authority is False
    assert result.recommended_action == "Follow up to gather more information"
    assert result.fallback is False
    prompt = provider.complete_json.await_args.args[0]
    assert "Ana: Magkano po yung ube cake?" in prompt
    assert "Business: 650 po for 8 inches" in prompt


@pytest.mark.asyncio
async def test_score_flags_price_shoppers():
    scorer, _ = scorer_with({"score": 15, "signals": ["Only asked the price"]})

    result = await scorer.score("Ana", LINES)

    assert result.is_price_shopper is True
    assert result.signals[-1] == PRICE_SHOPPER_SIGNAL
    assert result.quality == LeadQuality.UNQUALIFIED


@pytest.mark.asyncio
async def test_score_falls_back_on_llm_error():
    scorer, _ = scorer_with(error=LLMError("All LLM providers failed"))

    result = await scorer.score("Ana", LINES)

    assert result.fallback is True
    assert result.score == 25
    assert result.quality == LeadQuality.UNQUALIFIED
    assert result.signals == ["2 messages exchanged"]


@pytest.mark.asyncio
async def test_score_conversations_applies_quality_tags(storage, user, page, make_conversation):
    conversation = await make_conversation("psid-1", sender_name="Ana Reyes")
    scorer, provider = scorer_with({"score": 60, "signals": ["Needs 3 cakes"]})
    graph = graph_with_messages(
        [
            {"message": "Can you deliver Saturday?", "from": {"id": "psid-1"}},
            {"message": "Hi!", "from": {"id": "page-1"}},
        ]
    )

    scores = await scorer.score_conversations(storage, graph, user.id, [conversation.id])

    assert scores[0].conversation_id == conversation.id
    assert scores[0].quality == LeadQuality.WARM
    prompt = provider.complete_json.await_args.args[0]
    assert prompt.index("Business: Hi!") < prompt.index("Ana Reyes: Can you deliver Saturday?")
    assert [t.name for t in await storage.list_conversation_tags(conversation.id)] == ["🟠 Warm Lead"]


@pytest.mark.asyncio
async def test_rescoring_replaces_quality_tag(storage, user, page, make_conversation):
    conversation = await make_conversation("psid-1")
    scorer, _ = scorer_with(None)

    await scorer.apply_quality_tags(
        storage, user.id, [LeadScore(conversation_id=conversation.id, score=80, quality=LeadQuality.HOT)]
    )
    await scorer.apply_quality_tags(
        storage,
        user.id,
        [
            LeadScore(
                conversation_id=conversation.id,
                score=10,
                quality=LeadQuality.UNQUALIFIED,
                is_price_shopper=True,
            )
        ],
    )

    names = sorted(t.name for t in await storage.list_conversation_tags(conversation.id))
    assert names == ["⚪ Unqualified", "💰 Price Shopper"]
    assert len(await storage.list_tags(user.id)) == 5


@pytest.mark.asyncio
async def test_score_conversations_rejects_foreign_ids(storage, user, page):
    scorer, _ = scorer_with({"score": 50})

    with pytest.raises(NotFound):
        await scorer.score_conversations(storage, graph_with_messages([]), user.id, ["missing"])
