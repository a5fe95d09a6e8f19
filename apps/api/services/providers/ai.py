"""OpenAI and Anthropic completion providers."""

from __future__ import annotations

import logging
import time
from typing import Dict, Optional

from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from config import settings
from services import pricing
from services.ledger_errors import ProviderError
from services.providers.types import AIGeneration, BaseAIProvider, ProviderResult

logger = logging.getLogger(__name__)


SYSTEM_PROMPT = (
    "You are an assistant specialised in digital marketing and data analysis. "
    "Give precise, professional answers."
)

PROMPT_TEMPLATES: Dict[str, str] = {
    "marketing_campaign": "As a digital marketing specialist, analyse and propose strategies for: {prompt}",
    "sms_campaign": "As an SMS marketing specialist, write an effective campaign for: {prompt}",
    "email_campaign": "As an email marketing specialist, design a strategy for: {prompt}",
    "audience_analysis": "As a data analyst, analyse the target audience for: {prompt}",
    "content_generation": "As a specialist copywriter, write persuasive content for: {prompt}",
}

ANTHROPIC_MODEL_IDS = {
    "claude-3-sonnet": "claude-3-sonnet-20240229",
}


def prepare_prompt(prompt: str, request_type: str) -> str:
    template = PROMPT_TEMPLATES.get(request_type)
    return template.format(prompt=prompt) if template else prompt


def _usable_key(api_key: str) -> Optional[str]:
    """Return the key unless it is empty or a placeholder."""
    if not api_key or "your_" in api_key or api_key == "test-key":
        return None
    return api_key


class OpenAIProvider(BaseAIProvider):
    provider_name = "openai"

    def __init__(self, api_key: str) -> None:
        key = _usable_key(api_key)
        self.client = AsyncOpenAI(api_key=key) if key else None

    async def generate(self, request: AIGeneration, *, budget_credits: int) -> ProviderResult:
        if self.client is None:
            raise ProviderError(self.provider_name, "OpenAI API key is not configured.", retryable=False)

        max_tokens = pricing.max_tokens_for_budget(
            request.model, request.prompt, budget_credits, request.max_tokens
        )
        started = time.monotonic()
        response = await self.client.chat.completions.create(
            model=request.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prepare_prompt(request.prompt, request.request_type)},
            ],
            max_tokens=max_tokens,
            temperature=request.temperature,
        )
        choice = response.choices[0]
        usage = response.usage
        return ProviderResult(
            success=True,
            units_consumed=int(usage.total_tokens if usage else 0),
            latency_ms=int((time.monotonic() - started) * 1000),
            output=choice.message.content,
            external_ref=response.id,
            provider=self.provider_name,
            details={
                "input_tokens": int(usage.prompt_tokens if usage else 0),
                "output_tokens": int(usage.completion_tokens if usage else 0),
                "finish_reason": choice.finish_reason,
            },
        )


class AnthropicProvider(BaseAIProvider):
    provider_name = "anthropic"

    def __init__(self, api_key: str) -> None:
        key = _usable_key(api_key)
        self.client = AsyncAnthropic(api_key=key) if key else None

    async def generate(self, request: AIGeneration, *, budget_credits: int) -> ProviderResult:
        if self.client is None:
            raise ProviderError(self.provider_name, "Anthropic API key is not configured.", retryable=False)

        max_tokens = pricing.max_tokens_for_budget(
            request.model, request.prompt, budget_credits, request.max_tokens
        )
        started = time.monotonic()
        response = await self.client.messages.create(
            model=ANTHROPIC_MODEL_IDS.get(request.model, request.model),
            max_tokens=max_tokens,
            temperature=request.temperature,
            system=SYSTEM_PROMPT,
            messages=[
                {"role": "user", "content": prepare_prompt(request.prompt, request.request_type)},
            ],
        )
        input_tokens = int(response.usage.input_tokens)
        output_tokens = int(response.usage.output_tokens)
        return ProviderResult(
            success=True,
            units_consumed=input_tokens + output_tokens,
            latency_ms=int((time.monotonic() - started) * 1000),
            output=response.content[0].text if response.content else "",
            external_ref=response.id,
            provider=self.provider_name,
            details={
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "finish_reason": response.stop_reason,
            },
        )


class RoutingAIProvider(BaseAIProvider):
    """Dispatches each request to the provider that serves its model."""

    provider_name = "router"

    def __init__(self, providers: Dict[str, BaseAIProvider]) -> None:
        self.providers = providers

    async def generate(self, request: AIGeneration, *, budget_credits: int) -> ProviderResult:
        provider_key = pricing.get_model(request.model).provider
        provider = self.providers.get(provider_key)
        if provider is None:
            raise ProviderError(provider_key, f"No provider registered for {request.model}.", retryable=False)
        return await provider.generate(request, budget_credits=budget_credits)

    def available(self) -> Dict[str, bool]:
        return {
            key: getattr(provider, "client", None) is not None
            for key, provider in self.providers.items()
        }


def get_ai_provider() -> BaseAIProvider:
    """FastAPI dependency returning the configured AI provider."""
    return RoutingAIProvider(
        {
            "openai": OpenAIProvider(settings.OPENAI_API_KEY),
            "anthropic": AnthropicProvider(settings.ANTHROPIC_API_KEY),
        }
    )
