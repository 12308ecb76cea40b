"""Sales pipeline models."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from messenger_outreach.models.common import new_id, utc_now

# Created for a user the first time their pipeline is opened
DEFAULT_STAGES: list[dict[str, str]] = [
    {"name": "New Lead", "description": "Fresh leads from Facebook Messenger", "color": "#6366f1"},
    {"name": "Contacted", "description": "Initial contact made", "color": "#3b82f6"},
    {"name": "Qualified", "description": "Lead is qualified and interested", "color": "#06b6d4"},
    {"name": "Proposal Sent", "description": "Proposal or quote sent", "color": "#8b5cf6"},
    {"name": "Negotiation", "description": "In negotiation phase", "color": "#f59e0b"},
    {"name": "Closed Won", "description": "Successfully closed deal", "color": "#10b981"},
    {"name": "Closed Lost", "description": "Lost the opportunity", "color": "#ef4444"},
]
DEFAULT_STAGE_COLOR = "#3b82f6"


class PipelineStage(BaseModel):
    """A column of a user's sales pipeline.

    ``analysis_prompt`` holds the criteria the model checks when deciding
    whether a contact belongs here; the ``is_default`` stage collects
    contacts the analysis could not place.
    """

    id: str = Field(default_factory=new_id)
    user_id: str
    name: str
    description: str | None = None
    color: str = DEFAULT_STAGE_COLOR
    position: int = 1
    analysis_prompt: str | None = None
    is_default: bool = False
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class PipelineSettings(BaseModel):
    user_id: str
    global_analysis_prompt: str = ""
    auto_analyze: bool = True
    updated_at: datetime = Field(default_factory=utc_now)


class OpportunityStatus(str, Enum):
    OPEN = "open"
    WON = "won"
    LOST = "lost"


class Opportunity(BaseModel):
    """A conversation being worked through the pipeline."""

    id: str = Field(default_factory=new_id)
    user_id: str
    conversation_id: str
    sender_id: str
    sender_name: str | None = None
    page_id: str | None = Field(default=None, description="Facebook page id")
    stage_id: str
    title: str | None = None
    value: float = 0.0
    currency: str = "PHP"
    probability: int = Field(default=0, ge=0, le=100)
    expected_close_date: datetime | None = None
    status: OpportunityStatus = OpportunityStatus.OPEN
    notes: str | None = None

    ai_analysis: dict[str, Any] | None = None
    ai_confidence: float | None = None
    both_prompts_agreed: bool | None = None
    ai_analyzed_at: datetime | None = None

    moved_to_stage_at: datetime = Field(default_factory=utc_now)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class StageChange(BaseModel):
    """One move of an opportunity between stages."""

    id: str = Field(default_factory=new_id)
    opportunity_id: str
    from_stage_id: str | None = None
    to_stage_id: str
    moved_by: str | None = Field(default=None, description="User id, None for the model")
    moved_by_ai: bool = False
    reason: str | None = None
    created_at: datetime = Field(default_factory=utc_now)


class StageAnalysis(BaseModel):
    stage_id: str
    stage_name: str
    belongs: bool = False
    confidence: float = 0.0
    reasoning: str = ""


class AnalysisOutcome(BaseModel):
    """Where the analysis put one opportunity."""

    opportunity_id: str
    contact_name: str | None = None
    final_stage_id: str
    both_agreed: bool = False
    confidence: float = 0.0
    recommended_stage: str = ""
    stage_matches: list[str] = Field(default_factory=list)
    method: str = "ai"
    error: str | None = None
