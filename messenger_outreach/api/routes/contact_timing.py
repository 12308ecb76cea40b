"""Best-time-to-contact endpoints."""

from datetime import datetime
from typing import Annotated, Any, Literal

import structlog
from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from messenger_outreach.api.dependencies import ContactTimingServiceDep, CurrentUserDep, StorageDep
from messenger_outreach.api.routes.pages import get_owned_page
from messenger_outreach.models import ContactRecommendation, TimingConfig, utc_now
from messenger_outreach.services.contact_timing.timezone import timezone_display_name

logger = structlog.get_logger()

router = APIRouter(prefix="/contact-timing", tags=["Contact Timing"])

SortField = Literal[
    "composite_score",
    "max_confidence",
    "recency_score",
    "last_contact_attempt_at",
    "sender_name",
]


# ==================== Pydantic Schemas ====================


class ComputeRequest(BaseModel):
    conversation_ids: list[str] | None = Field(default=None, description="Every conversation if empty")


class TimezoneUpdate(BaseModel):
    conversation_id: str = Field(min_length=1)
    timezone: str


class BulkTimezoneUpdate(BaseModel):
    conversation_ids: list[str] = Field(min_length=1)
    timezone: str


class RecommendationUpdate(BaseModel):
    is_active: bool | None = None
    cooldown_until: datetime | None = None
    priority_score: float | None = Field(default=None, ge=0, le=1)
    notes: str | None = None


class TimingConfigUpdate(BaseModel):
    """Omitted fields are kept."""

    lambda_fast: float | None = Field(default=None, ge=0)
    lambda_slow: float | None = Field(default=None, ge=0)
    alpha_prior: float | None = Field(default=None, gt=0)
    beta_prior: float | None = Field(default=None, gt=0)
    hierarchical_kappa: float | None = Field(default=None, ge=0)
    epsilon_exploration: float | None = Field(default=None, ge=0, le=1)
    success_weight_reply: float | None = Field(default=None, ge=0)
    success_weight_click: float | None = Field(default=None, ge=0)
    success_weight_open: float | None = Field(default=None, ge=0)
    survival_gamma: float | None = Field(default=None, ge=0)
    top_k_windows: int | None = Field(default=None, ge=1)
    min_spacing_hours: int | None = Field(default=None, ge=0)
    daily_attempt_cap: int | None = Field(default=None, ge=0)
    weekly_attempt_cap: int | None = Field(default=None, ge=0)
    success_window_hours: int | None = Field(default=None, ge=1)
    w1_confidence: float | None = Field(default=None, ge=0)
    w2_recency: float | None = Field(default=None, ge=0)
    w3_priority: float | None = Field(default=None, ge=0)
    quiet_hours_start: str | None = None
    quiet_hours_end: str | None = None
    preferred_days: list[int] | None = None


def recommendation_view(rec: ContactRecommendation, now: datetime) -> dict[str, Any]:
    """Dashboard row: scores rounded, response rate in percent."""
    return {
        "id": rec.id,
        "conversation_id": rec.conversation_id,
        "sender_id": rec.sender_id,
        "sender_name": rec.sender_name,
        "page_id": rec.page_id,
        "timezone": rec.timezone,
        "timezone_display": timezone_display_name(rec.timezone, now),
        "timezone_confidence": rec.timezone_confidence.value,
        "timezone_source": rec.timezone_source.value,
        "recommended_windows": [w.model_dump() for w in rec.recommended_windows],
        "max_confidence": round(rec.max_confidence, 2),
        "recency_score": round(rec.recency_score, 2),
        "priority_score": round(rec.priority_score, 2),
        "composite_score": round(rec.composite_score, 2),
        "total_attempts": rec.total_attempts,
        "total_successes": rec.total_successes,
        "response_rate": round(rec.overall_response_rate * 100, 1),
        "last_positive_signal_at": rec.last_positive_signal_at,
        "last_contact_attempt_at": rec.last_contact_attempt_at,
        "is_active": rec.is_active,
        "in_cooldown": rec.in_cooldown(now),
        "cooldown_until": rec.cooldown_until,
        "notes": rec.notes,
        "last_computed_at": rec.last_computed_at,
    }


# ==================== Recommendation Endpoints ====================


@router.post("/compute")
async def compute(
    user: CurrentUserDep,
    timing: ContactTimingServiceDep,
    data: ComputeRequest | None = None,
) -> dict[str, Any]:
    """Recompute recommendations from the tracked events."""
    conversation_ids = data.conversation_ids if data else None
    results = await timing.compute(user.id, conversation_ids or None)
    now = utc_now()
    return {
        "success": True,
        "processed": len(results),
        "results": [recommendation_view(r, now) for r in results[:10]],
    }


@router.get("/recommendations")
async def list_recommendations(
    user: CurrentUserDep,
    storage: StorageDep,
    page_id: str | None = None,
    min_confidence: Annotated[float, Query(ge=0, le=1)] = 0.0,
    search: str | None = None,
    active_only: bool = False,
    exclude_cooldown: bool = False,
    sort_by: SortField = "composite_score",
    sort_order: Literal["asc", "desc"] = "desc",
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> dict[str, Any]:
    """Contacts ranked by when to reach them; ``page_id`` is the internal page id."""
    facebook_page_id = None
    if page_id:
        facebook_page_id = (await get_owned_page(storage, user.id, page_id)).facebook_page_id

    now = utc_now()
    recommendations, total = await storage.list_recommendations(
        user.id,
        page_id=facebook_page_id,
        min_confidence=min_confidence,
        search=search,
        active_only=active_only,
        available_at=now if exclude_cooldown else None,
        sort_by=sort_by,
        descending=sort_order == "desc",
        limit=limit,
        offset=offset,
    )
    return {
        "recommendations": [recommendation_view(r, now) for r in recommendations],
        "total": total,
        "limit": limit,
        "offset": offset,
        "has_more": offset + len(recommendations) < total,
    }


@router.patch("/recommendations/{conversation_id}")
async def update_recommendation(
    conversation_id: str,
    data: RecommendationUpdate,
    user: CurrentUserDep,
    timing: ContactTimingServiceDep,
) -> dict[str, Any]:
    rec = await timing.update_recommendation(user.id, conversation_id, data.model_dump(exclude_unset=True))
    return recommendation_view(rec, utc_now())


@router.post("/update-timezone")
async def update_timezone(
    data: TimezoneUpdate,
    user: CurrentUserDep,
    timing: ContactTimingServiceDep,
) -> dict[str, Any]:
    """Pin a contact's timezone; inference no longer overrides it."""
    results = await timing.update_timezone(user.id, [data.conversation_id], data.timezone)
    logger.info("Contact timezone set", conversation_id=data.conversation_id, timezone=data.timezone)
    return {"success": True, "recommendation": recommendation_view(results[0], utc_now())}


@router.post("/bulk-update-timezone")
async def bulk_update_timezone(
    data: BulkTimezoneUpdate,
    user: CurrentUserDep,
    timing: ContactTimingServiceDep,
) -> dict[str, Any]:
    results = await timing.update_timezone(user.id, data.conversation_ids, data.timezone)
    return {"success": True, "updated": len(results), "timezone": data.timezone}


# ==================== Config Endpoints ====================


@router.get("/config", response_model=TimingConfig)
async def get_config(user: CurrentUserDep, timing: ContactTimingServiceDep) -> TimingConfig:
    return await timing.get_config(user.id)


@router.put("/config", response_model=TimingConfig)
async def update_config(
    data: TimingConfigUpdate,
    user: CurrentUserDep,
    timing: ContactTimingServiceDep,
) -> TimingConfig:
    return await timing.save_config(user.id, data.model_dump(exclude_unset=True))
