"""Stripe PaymentIntent helpers and webhook event mapping."""

from __future__ import annotations

import asyncio
from decimal import Decimal
import json
import logging
from typing import Any, Dict, Optional

import stripe

from config import settings
from models.user import User
from services import pricing
from services.ledger_errors import ProviderError
from services.settlement import PaymentEvent

logger = logging.getLogger(__name__)


HANDLED_EVENT_TYPES = ("payment_intent.succeeded", "payment_intent.payment_failed")
FAILED_INTENT_STATUSES = ("canceled", "requires_payment_method")


def _as_dict(obj: Any) -> Dict[str, Any]:
    if isinstance(obj, dict):
        return obj
    return json.loads(str(obj))


def stripe_configured() -> bool:
    return bool((settings.STRIPE_SECRET_KEY or "").strip())


def _client() -> Any:
    if not stripe_configured():
        raise ProviderError("stripe", "Stripe is not configured.", retryable=False)
    stripe.api_key = settings.STRIPE_SECRET_KEY
    return stripe


async def ensure_customer(account: User) -> str:
    """Return the Stripe customer id for ``account``, creating one if needed."""
    if account.stripe_customer_id:
        return account.stripe_customer_id
    client = _client()
    try:
        customer = await asyncio.to_thread(
            client.Customer.create,
            email=account.email,
            name=account.name or None,
            metadata={"user_id": account.id},
        )
    except stripe.StripeError as exc:
        raise ProviderError("stripe", f"Could not create Stripe customer: {exc}") from exc
    return customer["id"]


async def create_payment_intent(
    account: User,
    package: pricing.CreditPackage,
    *,
    currency: str,
    customer_id: str,
) -> Dict[str, Any]:
    client = _client()
    try:
        intent = await asyncio.to_thread(
            client.PaymentIntent.create,
            amount=pricing.to_minor_units(package.price),
            currency=currency.lower(),
            customer=customer_id,
            automatic_payment_methods={"enabled": True},
            metadata={
                "user_id": account.id,
                "package": package.key,
                "credits": str(package.credits_granted),
            },
        )
    except stripe.StripeError as exc:
        raise ProviderError("stripe", f"Could not create payment intent: {exc}") from exc
    logger.info("Created payment intent %s for account %s (%s)", intent["id"], account.id, package.key)
    return {
        "id": intent["id"],
        "client_secret": intent["client_secret"],
        "amount": intent["amount"],
        "currency": intent["currency"],
        "status": intent["status"],
    }


async def retrieve_payment_intent(payment_intent_id: str) -> Dict[str, Any]:
    client = _client()
    try:
        intent = await asyncio.to_thread(client.PaymentIntent.retrieve, payment_intent_id)
    except stripe.StripeError as exc:
        raise ProviderError("stripe", f"Could not retrieve payment intent: {exc}") from exc
    return _as_dict(intent)


def construct_event(payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
    """Verify and decode a webhook body.

    Signature verification is delegated to the Stripe SDK whenever a webhook
    secret is configured. Raises ``ValueError`` for anything unverifiable.
    """
    secret = (settings.STRIPE_WEBHOOK_SECRET or "").strip()
    if secret:
        if not signature:
            raise ValueError("Missing Stripe-Signature header.")
        try:
            return _as_dict(stripe.Webhook.construct_event(payload, signature, secret))
        except stripe.SignatureVerificationError as exc:
            raise ValueError("Invalid webhook signature.") from exc
    try:
        return json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValueError("Webhook body is not valid JSON.") from exc


def _observed_amount(intent: Dict[str, Any]) -> Optional[Decimal]:
    amount = intent.get("amount_received") or intent.get("amount")
    if amount is None:
        return None
    return Decimal(int(amount)) / 100


def _failure_message(intent: Dict[str, Any]) -> str:
    error = intent.get("last_payment_error") or {}
    return str(error.get("message") or "payment_failed")


def payment_event_from_webhook(event: Dict[str, Any]) -> Optional[PaymentEvent]:
    """Map a Stripe event onto a ``PaymentEvent``; ``None`` for unhandled types."""
    event_type = event.get("type", "")
    if event_type not in HANDLED_EVENT_TYPES:
        return None
    intent = (event.get("data") or {}).get("object") or {}
    if not intent.get("id"):
        return None
    if event_type == "payment_intent.succeeded":
        return PaymentEvent(
            external_ref=intent["id"],
            outcome="succeeded",
            amount_observed=_observed_amount(intent),
        )
    return PaymentEvent(external_ref=intent["id"], outcome="failed", failure_reason=_failure_message(intent))


def payment_event_from_intent(intent: Dict[str, Any]) -> Optional[PaymentEvent]:
    """Map a retrieved PaymentIntent; ``None`` while it is still in flight."""
    status = intent.get("status")
    if status == "succeeded":
        return PaymentEvent(
            external_ref=intent["id"],
            outcome="succeeded",
            amount_observed=_observed_amount(intent),
        )
    if status in FAILED_INTENT_STATUSES and intent.get("last_payment_error"):
        return PaymentEvent(external_ref=intent["id"], outcome="failed", failure_reason=_failure_message(intent))
    if status == "canceled":
        return PaymentEvent(external_ref=intent["id"], outcome="failed", failure_reason="canceled")
    return None
