"""AI lead scoring endpoints."""

import structlog
from fastapi import APIRouter
from pydantic import BaseModel, Field

from messenger_outreach.api.dependencies import CurrentUserDep, GraphDep, LeadScorerDep, StorageDep
from messenger_outreach.models import LeadQuality, LeadScore

logger = structlog.get_logger()

router = APIRouter(prefix="/ai", tags=["AI"])


# ==================== Pydantic Schemas ====================


class ScoreLeadsRequest(BaseModel):
    conversation_ids: list[str] = Field(..., min_length=1, max_length=50)
    apply_tags: bool = True


class ScoreLeadsResponse(BaseModel):
    scores: list[LeadScore]
    summary: dict[str, int]


@router.post("/score-leads", response_model=ScoreLeadsResponse)
async def score_leads(
    data: ScoreLeadsRequest,
    user: CurrentUserDep,
    storage: StorageDep,
    graph: GraphDep,
    scorer: LeadScorerDep,
) -> ScoreLeadsResponse:
    """Score conversations with BANT and tag them with their lead quality."""
    scores = await scorer.score_conversations(
        storage,
        graph,
        user.id,
        data.conversation_ids,
        apply_tags=data.apply_tags,
    )
    summary = {quality.value: 0 for quality in LeadQuality}
    for result in scores:
        summary[result.quality.value] += 1
    summary["price_shoppers"] = sum(1 for s in scores if s.is_price_shopper)
    summary["fallback"] = sum(1 for s in scores if s.fallback)

    logger.info("Leads scored", user_id=user.id, scored=len(scores))
    return ScoreLeadsResponse(scores=scores, summary=summary)
