"""Public provider contracts and factories."""

from services.providers.ai import get_ai_provider
from services.providers.messaging import get_messaging_provider, is_valid_email, normalize_phone
from services.providers.types import (
    AIGeneration,
    BaseAIProvider,
    BaseMessagingProvider,
    Channel,
    OutboundMessage,
    ProviderResult,
)

__all__ = [
    "AIGeneration",
    "BaseAIProvider",
    "BaseMessagingProvider",
    "Channel",
    "OutboundMessage",
    "ProviderResult",
    "get_ai_provider",
    "get_messaging_provider",
    "is_valid_email",
    "normalize_phone",
]
