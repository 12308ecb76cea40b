"""Sales pipeline stages, opportunities and AI stage placement."""

import asyncio
from typing import Any, Awaitable, Callable

import structlog

from messenger_outreach.core.exceptions import AppException, Conflict, NotFound, ValidationFailed
from messenger_outreach.models import (
    DEFAULT_STAGE_COLOR,
    DEFAULT_STAGES,
    AnalysisOutcome,
    Conversation,
    Opportunity,
    PipelineSettings,
    PipelineStage,
    StageAnalysis,
    StageChange,
    utc_now,
)
from messenger_outreach.services.ai.provider import LLMProvider
from messenger_outreach.storage.base import StorageBackend

logger = structlog.get_logger()

GLOBAL_SYSTEM_PROMPT = (
    "You are a sales pipeline analyst. Analyze contacts and recommend appropriate stages "
    "based on conversation history. You must respond with valid JSON only."
)

GLOBAL_PROMPT = """{instructions}

CONTACT INFORMATION:
- Name: {contact_name}
- Facebook ID: {sender_id}

CONVERSATION HISTORY:
{history}

AVAILABLE STAGES:
{stages}

Based on the global instructions and this contact's conversation history, which stage \
should this contact be in?
Respond ONLY with a JSON object in this exact format:
{{
  "recommended_stage": "Stage Name",
  "reasoning": "Brief explanation",
  "confidence": 0.85
}}"""

STAGE_SYSTEM_PROMPT = (
    'You are analyzing if a contact meets the specific criteria for the "{stage}" stage. '
    "You must respond with valid JSON only."
)

STAGE_PROMPT = """{criteria}

CONTACT INFORMATION:
- Name: {contact_name}
- Facebook ID: {sender_id}

CONVERSATION HISTORY:
{history}

Based on the specific criteria for the "{stage}" stage, does this contact belong in this stage?
Respond ONLY with a JSON object in this exact format:
{{
  "belongs": true,
  "confidence": 0.90,
  "reasoning": "Brief explanation"
}}"""

# Keyword matching used instead of the model when asked to
STAGE_KEYWORDS: dict[str, tuple[list[str], float]] = {
    "New Lead": (
        ["info", "information", "curious", "what do you", "tell me", "learn more", "browsing",
         "just looking", "exploring", "general", "about your"],
        1.0,
    ),
    "Qualified": (
        ["price", "pricing", "cost", "how much", "interested", "need", "looking for", "features",
         "available", "bulk", "quantity", "discount", "package"],
        1.5,
    ),
    "Hot Lead": (
        ["buy", "purchase", "order", "quote", "ready", "asap", "urgent", "need now", "when can",
         "delivery", "ship", "payment"],
        2.0,
    ),
}

NO_HISTORY = "No message history available."


def conversation_history(conversation: Conversation | None) -> str:
    if conversation is None or not conversation.last_message:
        return NO_HISTORY
    return f"Last message: {conversation.last_message}"


def clamp_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.0
    return min(1.0, max(0.0, confidence))


def fallback_stage(stages: list[PipelineStage]) -> PipelineStage:
    """The default stage, or the last one when none is marked."""
    return next((s for s in stages if s.is_default), stages[-1])


def decide_stage(
    stages: list[PipelineStage],
    recommended: str,
    global_confidence: float,
    analyses: list[StageAnalysis],
) -> tuple[PipelineStage, bool, float]:
    """Final stage from the global recommendation and the per-stage checks.

    The recommended stage is kept only when its own check agrees; the
    confidence is then the lower of the two. Otherwise the contact goes to
    the fallback stage with no confidence.
    """
    stage = next((s for s in stages if s.name.lower() == recommended.strip().lower()), None)
    if stage is not None:
        match = next((a for a in analyses if a.stage_id == stage.id and a.belongs), None)
        if match is not None:
            return stage, True, min(global_confidence, match.confidence)
    return fallback_stage(stages), False, 0.0


def keyword_scores(message: str, stages: list[PipelineStage]) -> list[tuple[PipelineStage, float, list[str]]]:
    """Keyword score per matching non-default stage, best first."""
    text = message.lower()
    scores = []
    for stage in stages:
        if stage.is_default or stage.name not in STAGE_KEYWORDS:
            continue
        keywords, weight = STAGE_KEYWORDS[stage.name]
        matches = [k for k in keywords if k in text]
        if matches:
            scores.append((stage, weight * len(matches), matches))
    scores.sort(key=lambda s: s[1], reverse=True)
    return scores


def keyword_stage(message: str, stages: list[PipelineStage]) -> tuple[PipelineStage, float, list[str]]:
    """Best keyword stage, its confidence and the names of every matching stage."""
    scores = keyword_scores(message, stages)
    if not scores:
        return fallback_stage(stages), 0.5, []

    winner, score, matches = scores[0]
    gap = score - scores[1][1] if len(scores) > 1 else score
    confidence = min(0.95, 0.6 + len(matches) * 0.1 + gap * 0.05)
    return winner, confidence, [s.name for s, _, _ in scores]


class PipelineService:
    """Manages a user's pipeline and places contacts in stages."""

    def __init__(
        self,
        storage: StorageBackend,
        provider: LLMProvider,
        delay_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.storage = storage
        self.provider = provider
        self.delay_seconds = delay_seconds
        self._sleep = sleep

    # ==================== Stages ====================

    async def list_stages(self, user_id: str) -> tuple[list[PipelineStage], bool]:
        """Active stages, creating the default pipeline on first use.

        Returns:
            (stages, whether the defaults were just created)
        """
        stages = await self.storage.list_stages(user_id)
        if stages:
            return stages, False
        if await self.storage.list_stages(user_id, active_only=False):
            return [], False

        for position, definition in enumerate(DEFAULT_STAGES, start=1):
            stage = PipelineStage(user_id=user_id, position=position, is_default=position == 1, **definition)
            await self.storage.save_stage(stage)
            stages.append(stage)
        logger.info("Default pipeline created", user_id=user_id, stages=len(stages))
        return stages, True

    async def get_stage(self, user_id: str, stage_id: str) -> PipelineStage:
        stage = await self.storage.get_stage(stage_id)
        if stage is None or stage.user_id != user_id or not stage.is_active:
            raise NotFound("Pipeline stage", stage_id)
        return stage

    async def _clear_default(self, user_id: str, keep_id: str) -> None:
        for other in await self.storage.list_stages(user_id, active_only=False):
            if other.is_default and other.id != keep_id:
                other.is_default = False
                await self.storage.save_stage(other)

    async def create_stage(
        self,
        user_id: str,
        name: str,
        description: str | None = None,
        color: str | None = None,
        analysis_prompt: str | None = None,
        is_default: bool = False,
    ) -> PipelineStage:
        if not name.strip():
            raise ValidationFailed("Stage name is required")
        existing = await self.storage.list_stages(user_id, active_only=False)
        stage = PipelineStage(
            user_id=user_id,
            name=name.strip(),
            description=description or None,
            color=color or DEFAULT_STAGE_COLOR,
            position=max((s.position for s in existing), default=0) + 1,
            analysis_prompt=analysis_prompt or None,
            is_default=is_default,
        )
        await self.storage.save_stage(stage)
        if is_default:
            await self._clear_default(user_id, stage.id)
        return stage

    async def update_stage(self, user_id: str, stage_id: str, changes: dict[str, Any]) -> PipelineStage:
        stage = await self.get_stage(user_id, stage_id)
        if "name" in changes and not (changes["name"] or "").strip():
            raise ValidationFailed("Stage name is required")
        for field, value in changes.items():
            setattr(stage, field, value)
        await self.storage.save_stage(stage)
        if changes.get("is_default"):
            await self._clear_default(user_id, stage.id)
        return stage

    async def archive_stage(self, user_id: str, stage_id: str) -> None:
        """Hide a stage; it must be empty first."""
        stage = await self.get_stage(user_id, stage_id)
        if await self.storage.list_opportunities(user_id, stage_id=stage.id):
            raise Conflict("Move the opportunities out of this stage first")
        stage.is_active = False
        await self.storage.save_stage(stage)

    # ==================== Settings ====================

    async def get_settings(self, user_id: str) -> PipelineSettings:
        return await self.storage.get_pipeline_settings(user_id) or PipelineSettings(user_id=user_id)

    async def save_settings(
        self,
        user_id: str,
        global_analysis_prompt: str,
        auto_analyze: bool = True,
    ) -> PipelineSettings:
        if not global_analysis_prompt.strip():
            raise ValidationFailed("global_analysis_prompt is required")
        settings = PipelineSettings(
            user_id=user_id, global_analysis_prompt=global_analysis_prompt, auto_analyze=auto_analyze
        )
        return await self.storage.save_pipeline_settings(settings)

    # ==================== Opportunities ====================

    async def get_opportunity(self, user_id: str, opportunity_id: str) -> Opportunity:
        opportunity = await self.storage.get_opportunity(opportunity_id)
        if opportunity is None or opportunity.user_id != user_id:
            raise NotFound("Opportunity", opportunity_id)
        return opportunity

    async def _move(
        self,
        opportunity: Opportunity,
        stage_id: str,
        reason: str,
        moved_by: str | None = None,
    ) -> bool:
        """Put an opportunity in a stage, recording the change; False when it was already there."""
        if opportunity.stage_id == stage_id:
            return False
        await self.storage.add_stage_change(
            StageChange(
                opportunity_id=opportunity.id,
                from_stage_id=opportunity.stage_id,
                to_stage_id=stage_id,
                moved_by=moved_by,
                moved_by_ai=moved_by is None,
                reason=reason,
            )
        )
        opportunity.stage_id = stage_id
        opportunity.moved_to_stage_at = utc_now()
        return True

    async def create_opportunities(
        self,
        user_id: str,
        conversation_ids: list[str],
        stage_id: str | None = None,
    ) -> tuple[list[Opportunity], int]:
        """Add conversations to the pipeline.

        Conversations already in the pipeline are skipped. New ones are
        analysed right away when auto-analysis is configured.

        Returns:
            (created opportunities, skipped count)
        """
        if not conversation_ids:
            raise ValidationFailed("conversation_ids is required")

        if stage_id:
            stage = await self.get_stage(user_id, stage_id)
        else:
            stages, _ = await self.list_stages(user_id)
            if not stages:
                raise ValidationFailed("No pipeline stages found")
            stage = next((s for s in stages if s.is_default), stages[0])

        created: list[Opportunity] = []
        skipped = 0
        for conversation_id in dict.fromkeys(conversation_ids):
            conversation = await self.storage.get_conversation(conversation_id)
            if conversation is None or conversation.user_id != user_id:
                raise NotFound("Conversation", conversation_id)
            if await self.storage.get_opportunity_by_conversation(user_id, conversation_id):
                skipped += 1
                continue

            opportunity = Opportunity(
                user_id=user_id,
                conversation_id=conversation.id,
                sender_id=conversation.sender_id,
                sender_name=conversation.sender_name,
                page_id=conversation.page_id,
                stage_id=stage.id,
                title=conversation.sender_name,
            )
            await self.storage.save_opportunity(opportunity)
            await self.storage.add_stage_change(
                StageChange(
                    opportunity_id=opportunity.id,
                    to_stage_id=stage.id,
                    moved_by=user_id,
                    reason="Added to pipeline",
                )
            )
            created.append(opportunity)

        logger.info("Opportunities created", user_id=user_id, created=len(created), skipped=skipped)

        settings = await self.get_settings(user_id)
        if created and settings.auto_analyze and settings.global_analysis_prompt:
            await self.analyze(user_id, [o.id for o in created])
            created = [await self.get_opportunity(user_id, o.id) for o in created]
        return created, skipped

    async def update_opportunity(self, user_id: str, opportunity_id: str, changes: dict[str, Any]) -> Opportunity:
        """Edit an opportunity; a new ``stage_id`` is a manual move."""
        opportunity = await self.get_opportunity(user_id, opportunity_id)
        stage_id = changes.pop("stage_id", None)
        reason = changes.pop("reason", None) or "Moved manually"
        for field, value in changes.items():
            setattr(opportunity, field, value)
        if stage_id:
            await self.get_stage(user_id, stage_id)
            await self._move(opportunity, stage_id, reason, moved_by=user_id)
        return await self.storage.save_opportunity(opportunity)

    # ==================== Analysis ====================

    async def _global_analysis(
        self,
        settings: PipelineSettings,
        opportunity: Opportunity,
        stages: list[PipelineStage],
        history: str,
    ) -> dict[str, Any]:
        prompt = GLOBAL_PROMPT.format(
            instructions=settings.global_analysis_prompt,
            contact_name=opportunity.sender_name or "Unknown",
            sender_id=opportunity.sender_id,
            history=history,
            stages="\n".join(
                f"{i}. {s.name}: {s.description or 'No description'}" for i, s in enumerate(stages, start=1)
            ),
        )
        return await self.provider.complete_json(
            prompt, system_prompt=GLOBAL_SYSTEM_PROMPT, temperature=0.3, max_tokens=1000
        )

    async def _stage_analysis(self, stage: PipelineStage, opportunity: Opportunity, history: str) -> StageAnalysis:
        if not stage.analysis_prompt:
            return StageAnalysis(
                stage_id=stage.id, stage_name=stage.name, reasoning="No analysis prompt configured"
            )
        prompt = STAGE_PROMPT.format(
            criteria=stage.analysis_prompt,
            contact_name=opportunity.sender_name or "Unknown",
            sender_id=opportunity.sender_id,
            history=history,
            stage=stage.name,
        )
        data = await self.provider.complete_json(
            prompt,
            system_prompt=STAGE_SYSTEM_PROMPT.format(stage=stage.name),
            temperature=0.3,
            max_tokens=500,
        )
        return StageAnalysis(
            stage_id=stage.id,
            stage_name=stage.name,
            belongs=bool(data.get("belongs")),
            confidence=clamp_confidence(data.get("confidence")),
            reasoning=str(data.get("reasoning") or ""),
        )

    async def _analyze_one(
        self,
        settings: PipelineSettings,
        opportunity: Opportunity,
        stages: list[PipelineStage],
        keyword_only: bool,
    ) -> AnalysisOutcome:
        history = conversation_history(await self.storage.get_conversation(opportunity.conversation_id))

        if keyword_only:
            message = "" if history == NO_HISTORY else history
            stage, confidence, matches = keyword_stage(message, stages)
            opportunity.ai_analysis = {"method": "keyword_matching", "stage_matches": matches}
            outcome = AnalysisOutcome(
                opportunity_id=opportunity.id,
                contact_name=opportunity.sender_name,
                final_stage_id=stage.id,
                both_agreed=True,
                confidence=confidence,
                recommended_stage=stage.name,
                stage_matches=matches,
                method="keyword",
            )
            reason = f"Keyword matching (confidence: {confidence:.2f})"
        else:
            global_result = await self._global_analysis(settings, opportunity, stages, history)
            analyses = [await self._stage_analysis(s, opportunity, history) for s in stages]
            recommended = str(global_result.get("recommended_stage") or "")
            stage, agreed, confidence = decide_stage(
                stages, recommended, clamp_confidence(global_result.get("confidence")), analyses
            )
            opportunity.ai_analysis = {
                "global_analysis": global_result,
                "stage_analyses": [a.model_dump() for a in analyses],
                "final_decision": {"stage_id": stage.id, "both_agreed": agreed, "confidence": confidence},
            }
            outcome = AnalysisOutcome(
                opportunity_id=opportunity.id,
                contact_name=opportunity.sender_name,
                final_stage_id=stage.id,
                both_agreed=agreed,
                confidence=confidence,
                recommended_stage=recommended,
                stage_matches=[a.stage_name for a in analyses if a.belongs],
            )
            if agreed:
                reason = f"AI analysis: {global_result.get('reasoning') or recommended}"
            else:
                reason = "AI analysis disagreement, moved to unmatched"

        opportunity.ai_confidence = outcome.confidence
        opportunity.both_prompts_agreed = outcome.both_agreed
        opportunity.ai_analyzed_at = utc_now()
        await self._move(opportunity, stage.id, reason)
        await self.storage.save_opportunity(opportunity)
        return outcome

    async def analyze(
        self,
        user_id: str,
        opportunity_ids: list[str],
        keyword_only: bool = False,
    ) -> list[AnalysisOutcome]:
        """Place opportunities in stages.

        The model gives a global recommendation and checks each stage's own
        criteria; see ``decide_stage``. With ``keyword_only`` the last message
        is matched against stage keywords instead. A failed analysis leaves
        the opportunity where it was and is reported in its outcome.
        """
        if not opportunity_ids:
            raise ValidationFailed("opportunity_ids is required")

        settings = await self.get_settings(user_id)
        if not keyword_only and not settings.global_analysis_prompt:
            raise ValidationFailed("Pipeline settings not configured")
        stages = await self.storage.list_stages(user_id)
        if not stages:
            raise ValidationFailed("No pipeline stages found")

        opportunities = []
        for opportunity_id in dict.fromkeys(opportunity_ids):
            opportunity = await self.storage.get_opportunity(opportunity_id)
            if opportunity is not None and opportunity.user_id == user_id:
                opportunities.append(opportunity)
        if not opportunities:
            raise NotFound("Opportunity", ",".join(opportunity_ids))

        outcomes = []
        for index, opportunity in enumerate(opportunities):
            try:
                outcome = await self._analyze_one(settings, opportunity, stages, keyword_only)
            except AppException as e:
                logger.warning("Pipeline analysis failed", opportunity_id=opportunity.id, error=e.message)
                outcome = AnalysisOutcome(
                    opportunity_id=opportunity.id,
                    contact_name=opportunity.sender_name,
                    final_stage_id=opportunity.stage_id,
                    method="keyword" if keyword_only else "ai",
                    error="Failed to analyze contact",
                )
            else:
                logger.info(
                    "Opportunity analyzed",
                    opportunity_id=opportunity.id,
                    agreed=outcome.both_agreed,
                    confidence=round(outcome.confidence, 2),
                )
            outcomes.append(outcome)
            if not keyword_only and self.delay_seconds > 0 and index < len(opportunities) - 1:
                await self._sleep(self.delay_seconds)
        return outcomes
