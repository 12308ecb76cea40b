"""AI follow-up automation rule endpoints."""

from typing import Any

import structlog
from fastapi import APIRouter, status
from pydantic import BaseModel, Field

from messenger_outreach.api.dependencies import AutomationRunnerDep, CurrentUserDep, StorageDep
from messenger_outreach.api.routes.pages import get_owned_page
from messenger_outreach.core.exceptions import NotFound, ValidationFailed
from messenger_outreach.models import (
    AutomationRule,
    AutomationRunResult,
    ExecutionStatus,
    LanguageStyle,
    utc_now,
)
from messenger_outreach.storage.base import StorageBackend

logger = structlog.get_logger()

router = APIRouter(prefix="/automations", tags=["Automations"])


# ==================== Pydantic Schemas ====================


class AutomationCreate(BaseModel):
    """Schema for creating an automation rule."""

    name: str = ""
    description: str | None = None
    enabled: bool = True
    time_interval_minutes: int | None = Field(default=None, ge=1)
    time_interval_hours: int | None = Field(default=None, ge=1)
    time_interval_days: int | None = Field(default=None, ge=1)
    page_id: str | None = None
    include_tag_ids: list[str] = Field(default_factory=list)
    exclude_tag_ids: list[str] = Field(default_factory=list)
    custom_prompt: str = ""
    language_style: LanguageStyle = LanguageStyle.TAGLISH
    message_tag: str = "ACCOUNT_UPDATE"
    max_messages_per_day: int = Field(default=100, ge=1)
    active_hours_start: int = Field(default=9, ge=0, le=23)
    active_hours_end: int = Field(default=21, ge=1, le=24)
    run_24_7: bool = False
    max_follow_ups: int | None = Field(default=None, ge=1)
    stop_on_reply: bool = False
    remove_tag_on_reply: str | None = None


class AutomationUpdate(BaseModel):
    """Schema for updating an automation rule; omitted fields are kept."""

    name: str | None = None
    description: str | None = None
    enabled: bool | None = None
    time_interval_minutes: int | None = Field(default=None, ge=1)
    time_interval_hours: int | None = Field(default=None, ge=1)
    time_interval_days: int | None = Field(default=None, ge=1)
    page_id: str | None = None
    include_tag_ids: list[str] | None = None
    exclude_tag_ids: list[str] | None = None
    custom_prompt: str | None = None
    language_style: LanguageStyle | None = None
    message_tag: str | None = None
    max_messages_per_day: int | None = Field(default=None, ge=1)
    active_hours_start: int | None = Field(default=None, ge=0, le=23)
    active_hours_end: int | None = Field(default=None, ge=1, le=24)
    run_24_7: bool | None = None
    max_follow_ups: int | None = Field(default=None, ge=1)
    stop_on_reply: bool | None = None
    remove_tag_on_reply: str | None = None


def validate_rule(rule: AutomationRule) -> None:
    """Reject rules that could never run or that target contradictory tags."""
    if not rule.name.strip():
        raise ValidationFailed("name is required")
    if not rule.custom_prompt.strip():
        raise ValidationFailed("custom_prompt is required")
    if rule.inactivity_threshold() is None:
        raise ValidationFailed("At least one time interval is required")
    overlap = set(rule.include_tag_ids) & set(rule.exclude_tag_ids)
    if overlap:
        raise ValidationFailed(
            "A tag cannot be both included and excluded",
            details={"tag_ids": sorted(overlap)},
        )


async def get_owned_rule(storage: StorageBackend, user_id: str, rule_id: str) -> AutomationRule:
    rule = await storage.get_rule(rule_id)
    if rule is None or rule.user_id != user_id:
        raise NotFound("Automation rule", rule_id)
    return rule


# ==================== Rule Endpoints ====================


@router.get("", response_model=list[AutomationRule])
async def list_rules(user: CurrentUserDep, storage: StorageDep) -> list[AutomationRule]:
    return await storage.list_rules(user_id=user.id)


@router.post("", response_model=AutomationRule, status_code=status.HTTP_201_CREATED)
async def create_rule(data: AutomationCreate, user: CurrentUserDep, storage: StorageDep) -> AutomationRule:
    if data.page_id:
        await get_owned_page(storage, user.id, data.page_id)
    rule = AutomationRule(user_id=user.id, **data.model_dump())
    validate_rule(rule)
    await storage.save_rule(rule)
    logger.info("Automation rule created", rule_id=rule.id, name=rule.name)
    return rule


@router.get("/{rule_id}")
async def get_rule(rule_id: str, user: CurrentUserDep, storage: StorageDep) -> dict[str, Any]:
    """A rule with its execution and stop counts."""
    rule = await get_owned_rule(storage, user.id, rule_id)
    executions = await storage.list_executions(rule_id)
    stops = await storage.list_stops(rule_id)
    return {
        "rule": rule.model_dump(mode="json"),
        "stats": {
            "sent": sum(1 for e in executions if e.status == ExecutionStatus.SENT),
            "failed": sum(1 for e in executions if e.status == ExecutionStatus.FAILED),
            "stopped": len(stops),
        },
    }


@router.patch("/{rule_id}", response_model=AutomationRule)
async def update_rule(
    rule_id: str,
    data: AutomationUpdate,
    user: CurrentUserDep,
    storage: StorageDep,
) -> AutomationRule:
    rule = await get_owned_rule(storage, user.id, rule_id)
    changes = data.model_dump(exclude_unset=True)
    if changes.get("page_id"):
        await get_owned_page(storage, user.id, changes["page_id"])

    updated = rule.model_copy(update={**changes, "updated_at": utc_now()})
    validate_rule(updated)
    return await storage.save_rule(updated)


@router.delete("/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_rule(rule_id: str, user: CurrentUserDep, storage: StorageDep) -> None:
    await get_owned_rule(storage, user.id, rule_id)
    await storage.delete_rule(rule_id)
    logger.info("Automation rule deleted", rule_id=rule_id)


@router.post("/{rule_id}/trigger", response_model=AutomationRunResult)
async def trigger_rule(
    rule_id: str,
    user: CurrentUserDep,
    storage: StorageDep,
    runner: AutomationRunnerDep,
) -> AutomationRunResult:
    """Run a rule now instead of waiting for the cron tick."""
    rule = await get_owned_rule(storage, user.id, rule_id)
    return await runner.run_rule(rule)
