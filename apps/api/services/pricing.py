"""Credit pricing for AI usage, message sends and credit packages.

One credit is worth USD 0.01 of provider cost. All functions here are pure.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from typing import Any, Dict, Optional, Tuple

from services.ledger_errors import UnknownModel, UnknownPackage


CREDITS_PER_USD = Decimal(100)
MESSAGE_CREDIT_COST = 1


@dataclass(frozen=True)
class ModelPrice:
    model: str
    name: str
    provider: str
    cost_per_token_usd: Decimal
    max_tokens: int
    capabilities: Tuple[str, ...]


@dataclass(frozen=True)
class CreditPackage:
    key: str
    name: str
    credits: int
    price: Decimal
    description: str
    bonus: int = 0

    @property
    def credits_granted(self) -> int:
        return self.credits + self.bonus


MODEL_CATALOG: Dict[str, ModelPrice] = {
    "gpt-4": ModelPrice(
        model="gpt-4",
        name="GPT-4",
        provider="openai",
        cost_per_token_usd=Decimal("0.00003"),
        max_tokens=8192,
        capabilities=("text", "code", "analysis"),
    ),
    "gpt-3.5-turbo": ModelPrice(
        model="gpt-3.5-turbo",
        name="GPT-3.5 Turbo",
        provider="openai",
        cost_per_token_usd=Decimal("0.000002"),
        max_tokens=4096,
        capabilities=("text", "code", "chat"),
    ),
    "claude-3-sonnet": ModelPrice(
        model="claude-3-sonnet",
        name="Claude 3 Sonnet",
        provider="anthropic",
        cost_per_token_usd=Decimal("0.000015"),
        max_tokens=4096,
        capabilities=("text", "analysis", "code"),
    ),
}

CREDIT_PACKAGES: Dict[str, CreditPackage] = {
    "basic": CreditPackage(
        key="basic",
        name="Basic Package",
        credits=100,
        price=Decimal("9.99"),
        description="100 AI credits",
    ),
    "premium": CreditPackage(
        key="premium",
        name="Premium Package",
        credits=500,
        bonus=100,
        price=Decimal("39.99"),
        description="500 credits + 20% bonus",
    ),
    "enterprise": CreditPackage(
        key="enterprise",
        name="Enterprise Package",
        credits=1000,
        bonus=300,
        price=Decimal("69.99"),
        description="1000 credits + 30% bonus",
    ),
    "mega": CreditPackage(
        key="mega",
        name="Mega Package",
        credits=2500,
        bonus=1000,
        price=Decimal("149.99"),
        description="2500 credits + 40% bonus",
    ),
}


def get_model(model: str) -> ModelPrice:
    price = MODEL_CATALOG.get(model)
    if price is None:
        raise UnknownModel(model)
    return price


def get_package(package: str) -> CreditPackage:
    entry = CREDIT_PACKAGES.get(package)
    if entry is None:
        raise UnknownPackage(package)
    return entry


def ai_cost(model: str, tokens_used: int) -> int:
    """Credits owed for ``tokens_used`` tokens; never less than 1."""
    price = get_model(model)
    usd_cost = Decimal(max(int(tokens_used), 0)) * price.cost_per_token_usd
    credits = (usd_cost * CREDITS_PER_USD).to_integral_value(rounding=ROUND_CEILING)
    return max(1, int(credits))


def estimate_prompt_tokens(prompt: str) -> int:
    return -(-len(prompt or "") // 4)


def estimate_ai_cost(model: str, prompt: str, max_tokens: int) -> int:
    """Conservative estimate assuming the completion uses all of ``max_tokens``."""
    return ai_cost(model, estimate_prompt_tokens(prompt) + max(int(max_tokens), 0))


def max_tokens_for_budget(model: str, prompt: str, budget_credits: int, requested: int) -> int:
    """Largest completion length whose estimated cost stays within ``budget_credits``."""
    price = get_model(model)
    budget_usd = Decimal(max(int(budget_credits), 0)) / CREDITS_PER_USD
    affordable_tokens = (budget_usd / price.cost_per_token_usd).to_integral_value(rounding=ROUND_FLOOR)
    completion_tokens = int(affordable_tokens) - estimate_prompt_tokens(prompt)
    return max(1, min(int(requested), price.max_tokens, completion_tokens))


def message_cost(delivered: int) -> int:
    """Messages are charged per successful delivery only."""
    return max(int(delivered), 0) * MESSAGE_CREDIT_COST


def to_minor_units(amount: Any) -> int:
    return int((Decimal(str(amount)) * 100).to_integral_value())


def catalog_payload(available_providers: Optional[Dict[str, bool]] = None) -> Dict[str, Any]:
    available_providers = available_providers or {}
    return {
        key: {
            "name": price.name,
            "provider": price.provider,
            "cost_per_token_usd": str(price.cost_per_token_usd),
            "max_tokens": price.max_tokens,
            "capabilities": list(price.capabilities),
            "available": bool(available_providers.get(price.provider, False)),
        }
        for key, price in MODEL_CATALOG.items()
    }


def packages_payload(currency: str) -> Dict[str, Any]:
    return {
        key: {
            "name": package.name,
            "credits": package.credits,
            "bonus": package.bonus,
            "credits_granted": package.credits_granted,
            "price": str(package.price),
            "currency": currency,
            "description": package.description,
        }
        for key, package in CREDIT_PACKAGES.items()
    }
