"""LLM provider using LiteLLM for multi-provider abstraction."""

import json
import time
from dataclasses import dataclass, field
from typing import Any

import litellm
import structlog
from tenacity import retry, stop_after_attempt, wait_exponential

from messenger_outreach.core.config import settings
from messenger_outreach.core.exceptions import LLMError

logger = structlog.get_logger()


@dataclass
class LLMResponse:
    """Response from LLM completion."""

    content: str
    model: str
    tokens_input: int = 0
    tokens_output: int = 0
    finish_reason: str = "stop"
    latency_ms: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)


def strip_code_fences(content: str) -> str:
    """Remove a surrounding ```json fence from model output."""
    content = content.strip()
    if content.lower().startswith("```json"):
        content = content[7:]
    elif content.startswith("```"):
        content = content[3:]
    if content.endswith("```"):
        content = content[:-3]
    return content.strip()


def _api_key_for(model: str) -> str | None:
    if model.startswith("gemini/") or model.startswith("google/"):
        return settings.google_api_key or None
    if model.startswith("anthropic/") or model.startswith("claude"):
        return settings.anthropic_api_key or None
    return settings.openai_api_key or None


class LLMProvider:
    """LLM provider with a primary model and fallbacks.

    Uses LiteLLM for a unified API across OpenAI, Anthropic and Google.
    """

    def __init__(
        self,
        primary_model: str | None = None,
        fallback_models: list[str] | None = None,
        default_temperature: float = 0.7,
        default_max_tokens: int = 500,
    ) -> None:
        self.primary_model = primary_model or settings.litellm_primary_model
        self.fallback_models = fallback_models or [settings.litellm_fallback_model]
        self.default_temperature = default_temperature
        self.default_max_tokens = default_max_tokens

        logger.info(
            "LLM Provider initialized",
            primary=self.primary_model,
            fallbacks=self.fallback_models,
        )

    @property
    def configured(self) -> bool:
        return any(_api_key_for(m) for m in [self.primary_model, *self.fallback_models])

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _acompletion(self, model: str, messages: list[dict[str, str]], **kwargs: Any) -> Any:
        return await litellm.acompletion(
            model=model,
            messages=messages,
            api_key=_api_key_for(model),
            **kwargs,
        )

    async def complete(
        self,
        messages: list[dict[str, str]],
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        **kwargs: Any,
    ) -> LLMResponse:
        """Generate a completion, falling back to the next model on failure.

        Args:
            messages: List of message dicts with 'role' and 'content'
            system_prompt: Optional system prompt to prepend
            temperature: Sampling temperature (0-2)
            max_tokens: Maximum tokens to generate
            **kwargs: Additional parameters passed to LiteLLM

        Returns:
            LLMResponse with generated content and metadata
        """
        full_messages = []
        if system_prompt:
            full_messages.append({"role": "system", "content": system_prompt})
        full_messages.extend(messages)

        temp = temperature if temperature is not None else self.default_temperature
        max_tok = max_tokens or self.default_max_tokens

        last_error: Exception | None = None
        for model in dict.fromkeys([self.primary_model, *self.fallback_models]):
            start_time = time.perf_counter()
            try:
                response = await self._acompletion(
                    model, full_messages, temperature=temp, max_tokens=max_tok, **kwargs
                )
            except Exception as e:
                last_error = e
                logger.warning("LLM completion failed, trying fallback", model=model, error=str(e))
                continue

            latency_ms = (time.perf_counter() - start_time) * 1000
            usage = getattr(response, "usage", None)
            tokens_input = getattr(usage, "prompt_tokens", 0) or 0
            tokens_output = getattr(usage, "completion_tokens", 0) or 0

            logger.info(
                "LLM completion successful",
                model=model,
                tokens_in=tokens_input,
                tokens_out=tokens_output,
                latency_ms=round(latency_ms, 2),
            )
            return LLMResponse(
                content=response.choices[0].message.content or "",
                model=model,
                tokens_input=tokens_input,
                tokens_output=tokens_output,
                finish_reason=response.choices[0].finish_reason or "stop",
                latency_ms=latency_ms,
                metadata={"raw_response_id": getattr(response, "id", None)},
            )

        raise LLMError(f"All LLM providers failed: {last_error}", provider=self.primary_model)

    async def complete_json(self, prompt: str, **kwargs: Any) -> dict[str, Any]:
        """Complete a single prompt and parse the answer as a JSON object."""
        response = await self.complete([{"role": "user", "content": prompt}], **kwargs)
        try:
            data = json.loads(strip_code_fences(response.content))
        except json.JSONDecodeError as e:
            logger.warning("Failed to parse LLM JSON response", content=response.content[:200])
            raise LLMError(f"Invalid JSON from model: {e}", provider=response.model) from e
        if not isinstance(data, dict):
            raise LLMError("Expected a JSON object from model", provider=response.model)
        return data


# Singleton instance
_llm_provider: LLMProvider | None = None


def get_llm_provider() -> LLMProvider:
    """Get or create the LLM provider singleton."""
    global _llm_provider
    if _llm_provider is None:
        _llm_provider = LLMProvider()
    return _llm_provider
