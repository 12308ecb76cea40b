"""Sales pipeline endpoints."""

from datetime import datetime
from typing import Any

import structlog
from fastapi import APIRouter, status
from pydantic import BaseModel, Field

from messenger_outreach.api.dependencies import CurrentUserDep, PipelineServiceDep, StorageDep
from messenger_outreach.models import Opportunity, OpportunityStatus, PipelineSettings, PipelineStage

logger = structlog.get_logger()

router = APIRouter(prefix="/pipeline", tags=["Pipeline"])


# ==================== Pydantic Schemas ====================


class StageCreate(BaseModel):
    name: str = ""
    description: str | None = None
    color: str | None = None
    analysis_prompt: str | None = None
    is_default: bool = False


class StageUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    color: str | None = None
    position: int | None = Field(default=None, ge=1)
    analysis_prompt: str | None = None
    is_default: bool | None = None


class SettingsUpdate(BaseModel):
    global_analysis_prompt: str = ""
    auto_analyze: bool = True


class OpportunityCreate(BaseModel):
    conversation_ids: list[str] = Field(default_factory=list)
    stage_id: str | None = None


class OpportunityUpdate(BaseModel):
    """A new ``stage_id`` moves the opportunity; ``reason`` goes to its history."""

    stage_id: str | None = None
    reason: str | None = None
    title: str | None = None
    value: float | None = Field(default=None, ge=0)
    currency: str | None = None
    probability: int | None = Field(default=None, ge=0, le=100)
    expected_close_date: datetime | None = None
    status: OpportunityStatus | None = None
    notes: str | None = None


class AnalyzeRequest(BaseModel):
    opportunity_ids: list[str] = Field(default_factory=list)
    keyword_only: bool = False


# ==================== Stage Endpoints ====================


@router.get("/stages")
async def list_stages(user: CurrentUserDep, pipeline: PipelineServiceDep) -> dict[str, Any]:
    """Stages in board order, each with its opportunity count."""
    stages, created = await pipeline.list_stages(user.id)
    opportunities = await pipeline.storage.list_opportunities(user.id)
    counts: dict[str, int] = {}
    for opportunity in opportunities:
        counts[opportunity.stage_id] = counts.get(opportunity.stage_id, 0) + 1
    return {
        "stages": [
            {**stage.model_dump(mode="json"), "opportunity_count": counts.get(stage.id, 0)} for stage in stages
        ],
        "created_defaults": created,
    }


@router.post("/stages", response_model=PipelineStage, status_code=status.HTTP_201_CREATED)
async def create_stage(data: StageCreate, user: CurrentUserDep, pipeline: PipelineServiceDep) -> PipelineStage:
    stage = await pipeline.create_stage(user.id, **data.model_dump())
    logger.info("Pipeline stage created", user_id=user.id, stage_id=stage.id)
    return stage


@router.patch("/stages/{stage_id}", response_model=PipelineStage)
async def update_stage(
    stage_id: str,
    data: StageUpdate,
    user: CurrentUserDep,
    pipeline: PipelineServiceDep,
) -> PipelineStage:
    return await pipeline.update_stage(user.id, stage_id, data.model_dump(exclude_unset=True))


@router.delete("/stages/{stage_id}", status_code=status.HTTP_204_NO_CONTENT)
async def archive_stage(stage_id: str, user: CurrentUserDep, pipeline: PipelineServiceDep) -> None:
    await pipeline.archive_stage(user.id, stage_id)


# ==================== Settings Endpoints ====================


@router.get("/settings", response_model=PipelineSettings)
async def get_settings(user: CurrentUserDep, pipeline: PipelineServiceDep) -> PipelineSettings:
    return await pipeline.get_settings(user.id)


@router.put("/settings", response_model=PipelineSettings)
async def save_settings(data: SettingsUpdate, user: CurrentUserDep, pipeline: PipelineServiceDep) -> PipelineSettings:
    return await pipeline.save_settings(user.id, data.global_analysis_prompt, data.auto_analyze)


# ==================== Opportunity Endpoints ====================


@router.get("/opportunities", response_model=list[Opportunity])
async def list_opportunities(
    user: CurrentUserDep,
    storage: StorageDep,
    stage_id: str | None = None,
) -> list[Opportunity]:
    return await storage.list_opportunities(user.id, stage_id=stage_id)


@router.post("/opportunities/bulk", status_code=status.HTTP_201_CREATED)
async def create_opportunities(
    data: OpportunityCreate,
    user: CurrentUserDep,
    pipeline: PipelineServiceDep,
) -> dict[str, Any]:
    """Add conversations to the pipeline, skipping ones already in it."""
    created, skipped = await pipeline.create_opportunities(user.id, data.conversation_ids, data.stage_id)
    return {
        "success": True,
        "created": len(created),
        "skipped": skipped,
        "opportunities": [o.model_dump(mode="json") for o in created],
    }


@router.get("/opportunities/{opportunity_id}")
async def get_opportunity(
    opportunity_id: str,
    user: CurrentUserDep,
    pipeline: PipelineServiceDep,
) -> dict[str, Any]:
    opportunity = await pipeline.get_opportunity(user.id, opportunity_id)
    history = await pipeline.storage.list_stage_changes(opportunity.id)
    return {
        "opportunity": opportunity.model_dump(mode="json"),
        "history": [change.model_dump(mode="json") for change in history],
    }


@router.patch("/opportunities/{opportunity_id}", response_model=Opportunity)
async def update_opportunity(
    opportunity_id: str,
    data: OpportunityUpdate,
    user: CurrentUserDep,
    pipeline: PipelineServiceDep,
) -> Opportunity:
    return await pipeline.update_opportunity(user.id, opportunity_id, data.model_dump(exclude_unset=True))


# ==================== Analysis ====================


@router.post("/analyze")
async def analyze(data: AnalyzeRequest, user: CurrentUserDep, pipeline: PipelineServiceDep) -> dict[str, Any]:
    """Let the model (or keyword matching) place opportunities in stages."""
    results = await pipeline.analyze(user.id, data.opportunity_ids, keyword_only=data.keyword_only)
    analyzed = [r for r in results if r.error is None]
    agreed = sum(1 for r in analyzed if r.both_agreed)

    logger.info("Pipeline analyzed", user_id=user.id, analyzed=len(analyzed), failed=len(results) - len(analyzed))
    return {
        "success": True,
        "analyzed": len(analyzed),
        "agreed": agreed,
        "disagreed": len(analyzed) - agreed,
        "failed": len(results) - len(analyzed),
        "results": [r.model_dump() for r in results],
    }
