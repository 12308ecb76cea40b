"""AI services - LiteLLM provider, lead scoring, follow-up automations and the sales pipeline."""

from messenger_outreach.services.ai.automation import AutomationRunner, build_follow_up_prompt
from messenger_outreach.services.ai.lead_scorer import LeadScorer, fallback_score
from messenger_outreach.services.ai.pipeline import PipelineService, decide_stage, keyword_stage
from messenger_outreach.services.ai.provider import LLMProvider, LLMResponse, get_llm_provider

__all__ = [
    "AutomationRunner",
    "LLMProvider",
    "LLMResponse",
    "LeadScorer",
    "PipelineService",
    "build_follow_up_prompt",
    "decide_stage",
    "fallback_score",
    "get_llm_provider",
    "keyword_stage",
]
