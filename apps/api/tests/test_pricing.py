from decimal import Decimal

import pytest

from services import pricing
from services.ledger_errors import UnknownModel, UnknownPackage


def test_ai_cost_rounds_up_and_never_drops_below_one_credit():
    # gpt-4: 500 tokens * 0.00003 USD = 0.015 USD = 1.5 credits
    assert pricing.ai_cost("gpt-4", 500) == 2
    # gpt-3.5-turbo: 1000 tokens * 0.000002 USD = 0.2 credits
    assert pricing.ai_cost("gpt-3.5-turbo", 1000) == 1
    assert pricing.ai_cost("gpt-3.5-turbo", 0) == 1
    # exact multiples are not rounded up
    assert pricing.ai_cost("gpt-4", 1000) == 3


def test_estimate_assumes_full_completion_length():
    assert pricing.estimate_prompt_tokens("") == 0
    assert pricing.estimate_prompt_tokens("abcde") == 2
    # 40 chars -> 10 prompt tokens, + 1000 completion tokens = 1010 * 0.00003 USD = 3.03 credits
    assert pricing.estimate_ai_cost("gpt-4", "x" * 40, 1000) == 4


def test_max_tokens_for_budget_caps_completion_to_affordable_length():
    # 3 credits = 0.03 USD = 1000 gpt-4 tokens, minus 10 prompt tokens
    assert pricing.max_tokens_for_budget("gpt-4", "x" * 40, 3, 4000) == 990
    assert pricing.max_tokens_for_budget("gpt-4", "x" * 40, 1000, 500) == 500
    assert pricing.max_tokens_for_budget("gpt-4", "x" * 40, 10_000, 20_000) == 8192
    assert pricing.max_tokens_for_budget("gpt-4", "x" * 40, 0, 500) == 1


def test_messages_are_charged_per_delivery():
    assert pricing.message_cost(0) == 0
    assert pricing.message_cost(7) == 7


def test_packages_include_bonus_credits():
    assert pricing.get_package("basic").credits_granted == 100
    premium = pricing.get_package("premium")
    assert premium.credits_granted == 600
    assert premium.price == Decimal("39.99")
    assert pricing.get_package("enterprise").credits_granted == 1300
    assert pricing.get_package("mega").credits_granted == 3500


def test_unknown_model_and_package_raise():
    with pytest.raises(UnknownModel):
        pricing.get_model("gpt-5-ultra")
    with pytest.raises(UnknownPackage) as exc:
        pricing.get_package("platinum")
    assert exc.value.to_dict()["error"] == "UNKNOWN_PACKAGE"


def test_minor_units_and_payloads():
    assert pricing.to_minor_units(Decimal("39.99")) == 3999
    assert pricing.to_minor_units("9.99") == 999

    packages = pricing.packages_payload("EUR")
    assert packages["premium"]["credits_granted"] == 600
    assert packages["premium"]["currency"] == "EUR"

    catalog = pricing.catalog_payload({"openai": True})
    assert catalog["gpt-4"]["available"] is True
    assert catalog["claude-3-sonnet"]["available"] is False
    assert catalog["claude-3-sonnet"]["provider"] == "anthropic"
