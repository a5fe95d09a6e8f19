"""Billing and credits router."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import SUPPORTED_CURRENCIES, settings
from database import get_db
from models.transaction import TRANSACTION_KINDS
from models.user import User
from routers.auth_scope import require_active_account
from routers.rate_limit import rate_limit
from services import payments, pricing
from services.accounts import account_payload
from services.settlement import create_pending_purchase, settle
from services.transactions import (
    activity_since,
    find_by_external_ref,
    list_transactions,
    transaction_payload,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class PaymentIntentRequest(BaseModel):
    package: str = Field(min_length=1, max_length=50)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)


class ConfirmPaymentRequest(BaseModel):
    payment_intent_id: str = Field(min_length=1, max_length=255)


def _require_billing() -> None:
    if not settings.BILLING_ENABLED:
        raise HTTPException(status_code=503, detail="Billing is disabled. Enable BILLING_ENABLED to buy credits.")
    if not payments.stripe_configured():
        raise HTTPException(status_code=503, detail="Stripe is not configured.")


@router.get("/packages")
async def credit_packages():
    return pricing.packages_payload(settings.DEFAULT_CURRENCY)


@router.get("/credits")
async def credits_summary(
    account: User = Depends(require_active_account),
    db: AsyncSession = Depends(get_db),
):
    since = datetime.now(timezone.utc) - timedelta(days=30)
    activity = await activity_since(account.id, db, since)
    recent, _ = await list_transactions(account.id, db, limit=10)
    usage = activity.get("usage", {})
    purchases = activity.get("purchase", {})
    return {
        **account_payload(account),
        "last_30_days": {
            "credits_used": usage.get("credits", 0),
            "operations": usage.get("count", 0),
            "credits_purchased": purchases.get("credits", 0),
            "purchases": purchases.get("count", 0),
        },
        "recent_transactions": [transaction_payload(item) for item in recent],
    }


@router.get("/transactions")
async def transaction_history(
    kind: Optional[List[str]] = Query(default=None),
    status: Optional[str] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    account: User = Depends(require_active_account),
    db: AsyncSession = Depends(get_db),
):
    unknown = [value for value in kind or [] if value not in TRANSACTION_KINDS]
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown transaction kind: {', '.join(unknown)}")

    items, total = await list_transactions(account.id, db, kinds=kind, status=status, page=page, limit=limit)
    return {
        "transactions": [transaction_payload(item) for item in items],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }


@router.post("/payment-intent")
async def create_payment_intent(
    request: PaymentIntentRequest,
    _rate_limit: None = Depends(rate_limit("billing_payment_intent", limit=20, window_seconds=3600)),
    account: User = Depends(require_active_account),
    db: AsyncSession = Depends(get_db),
):
    _require_billing()
    package = pricing.get_package(request.package)
    currency = (request.currency or settings.DEFAULT_CURRENCY).upper()
    if currency not in SUPPORTED_CURRENCIES:
        raise HTTPException(status_code=400, detail=f"Unsupported currency: {currency}")

    customer_id = await payments.ensure_customer(account)
    if account.stripe_customer_id != customer_id:
        account.stripe_customer_id = customer_id
        await db.flush()

    intent = await payments.create_payment_intent(account, package, currency=currency, customer_id=customer_id)
    transaction = await create_pending_purchase(
        db,
        account.id,
        package.key,
        external_ref=intent["id"],
        currency=currency,
        customer_id=customer_id,
    )
    return {
        "client_secret": intent["client_secret"],
        "payment_intent_id": intent["id"],
        "transaction_id": transaction.id,
        "amount": str(package.price),
        "currency": currency,
        "credits": package.credits_granted,
    }


@router.post("/confirm")
async def confirm_payment(
    request: ConfirmPaymentRequest,
    account: User = Depends(require_active_account),
    db: AsyncSession = Depends(get_db),
):
    """Client-side confirmation: re-read the PaymentIntent and settle it."""
    _require_billing()
    transaction = await find_by_external_ref(request.payment_intent_id, db, kind="purchase")
    if transaction is None or transaction.user_id != account.id:
        raise HTTPException(status_code=404, detail="Payment not found")

    intent = await payments.retrieve_payment_intent(request.payment_intent_id)
    event = payments.payment_event_from_intent(intent)
    if event is None:
        return {
            "applied": False,
            "transaction_id": transaction.id,
            "status": transaction.status,
            "payment_status": intent.get("status"),
        }

    outcome = await settle(db, event)
    return {**outcome.to_dict(), "payment_status": intent.get("status")}


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
):
    payload = await request.body()
    try:
        event = payments.construct_event(payload, stripe_signature)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    payment_event = payments.payment_event_from_webhook(event)
    if payment_event is None:
        logger.info("Ignoring Stripe event %s", event.get("type"))
        return {"received": True, "handled": False}

    outcome = await settle(db, payment_event)
    return {"received": True, "handled": True, **outcome.to_dict()}
