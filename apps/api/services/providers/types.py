"""Contracts between the metering engine and external AI/messaging providers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional


Channel = Literal["sms", "email"]


@dataclass(frozen=True)
class AIGeneration:
    model: str
    prompt: str
    request_type: str = "text_generation"
    max_tokens: int = 1000
    temperature: float = 0.7


@dataclass(frozen=True)
class OutboundMessage:
    channel: Channel
    recipient: str
    body: str
    subject: Optional[str] = None


@dataclass
class ProviderResult:
    """What a provider reports back after doing (possibly billable) work."""

    success: bool
    units_consumed: int = 0
    latency_ms: int = 0
    output: Any = None
    external_ref: Optional[str] = None
    provider: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class BaseAIProvider(ABC):
    provider_name: str

    @abstractmethod
    async def generate(self, request: AIGeneration, *, budget_credits: int) -> ProviderResult:
        """Run one completion; ``units_consumed`` is the total token count."""
        raise NotImplementedError

    def available(self) -> Dict[str, bool]:
        return {}


class BaseMessagingProvider(ABC):
    provider_name: str

    @abstractmethod
    async def send(self, message: OutboundMessage) -> ProviderResult:
        """Deliver one message; raise ``ProviderError`` when it cannot be sent."""
        raise NotImplementedError
