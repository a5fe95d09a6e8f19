"""Payment settlement, refunds and admin grants.

Webhook handling is split in two: ``plan_settlement`` is a pure function of
the stored transaction and the incoming event, and ``settle`` applies the
plan. The status flip and the balance credit are committed together, and the
flip is conditional on the row still being ``pending``, so replayed or
concurrent deliveries of the same event credit the account at most once.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
import logging
from typing import Optional
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.transaction import Transaction
from services import accounts, pricing
from services.ledger_errors import InsufficientCredits, InvalidTransition
from services.transactions import (
    BonusEntry,
    PurchaseEntry,
    RefundEntry,
    check_transition,
    create_transaction,
    find_by_external_ref,
    get_transaction,
    transition,
)

logger = logging.getLogger(__name__)


PAYMENT_OUTCOMES = ("succeeded", "failed")


@dataclass(frozen=True)
class PaymentEvent:
    external_ref: str
    outcome: str
    amount_observed: Optional[Decimal] = None
    failure_reason: Optional[str] = None


@dataclass(frozen=True)
class SettlementPlan:
    next_status: Optional[str]
    credit_delta: int = 0
    reason: Optional[str] = None

    @property
    def no_op(self) -> bool:
        return self.next_status is None


@dataclass
class SettlementOutcome:
    applied: bool
    transaction_id: Optional[str] = None
    status: Optional[str] = None
    credits_applied: int = 0
    balance: Optional[int] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "applied": self.applied,
            "transaction_id": self.transaction_id,
            "status": self.status,
            "credits_applied": self.credits_applied,
            "balance": self.balance,
            "reason": self.reason,
        }


@dataclass
class RefundOutcome:
    original: Transaction
    refund: Transaction
    credits_clawed_back: int
    clawback_skipped: bool
    balance: Optional[int] = None


def plan_settlement(status: str, credit_delta: int, monetary_amount, event: PaymentEvent) -> SettlementPlan:
    """Decide what a payment event does to a purchase in ``status``."""
    if event.outcome not in PAYMENT_OUTCOMES:
        raise ValueError(f"Unknown payment outcome: {event.outcome}")
    if status != "pending":
        return SettlementPlan(next_status=None, reason=f"already_{status}")
    if event.outcome == "failed":
        return SettlementPlan(next_status="failed", reason=event.failure_reason or "payment_failed")
    if event.amount_observed is not None and pricing.to_minor_units(event.amount_observed) != pricing.to_minor_units(
        monetary_amount or 0
    ):
        return SettlementPlan(next_status="failed", reason="amount_mismatch")
    return SettlementPlan(next_status="completed", credit_delta=int(credit_delta))


def refund_clawback(credit_delta: int, monetary_amount: Decimal, refund_amount: Decimal) -> int:
    """Credits to take back for a (possibly partial) refund of a purchase."""
    credits = max(int(credit_delta), 0)
    if monetary_amount <= 0 or refund_amount >= monetary_amount:
        return credits
    return int((Decimal(credits) * refund_amount / monetary_amount).to_integral_value(rounding="ROUND_FLOOR"))


async def create_pending_purchase(
    db: AsyncSession,
    account_id: str,
    package_key: str,
    *,
    external_ref: str,
    currency: Optional[str] = None,
    payment_method: str = "card",
    customer_id: Optional[str] = None,
) -> Transaction:
    package = pricing.get_package(package_key)
    await accounts.get_active_account(account_id, db)
    transaction = await create_transaction(
        db,
        account_id,
        PurchaseEntry(
            package=package.key,
            credits=package.credits,
            bonus=package.bonus,
            amount=package.price,
            currency=currency or settings.DEFAULT_CURRENCY,
            external_ref=external_ref,
            payment_method=payment_method,
            customer_id=customer_id,
        ),
        status="pending",
    )
    await db.commit()
    return transaction


async def settle(db: AsyncSession, event: PaymentEvent) -> SettlementOutcome:
    """Apply a payment-provider outcome to its pending purchase exactly once."""
    transaction = await find_by_external_ref(event.external_ref, db, kind="purchase")
    if transaction is None:
        logger.warning("No purchase found for payment reference %s", event.external_ref)
        return SettlementOutcome(applied=False, reason="unknown_reference")

    plan = plan_settlement(transaction.status, transaction.credit_delta, transaction.monetary_amount, event)
    if plan.no_op:
        logger.warning(
            "Ignoring %s event for transaction %s in status %s",
            event.outcome,
            transaction.id,
            transaction.status,
        )
        return SettlementOutcome(
            applied=False,
            transaction_id=transaction.id,
            status=transaction.status,
            reason=plan.reason,
        )

    transaction_id = transaction.id
    try:
        await transition(db, transaction_id, plan.next_status, failure_reason=plan.reason)
    except InvalidTransition as exc:
        await db.rollback()
        logger.warning("Payment event for %s lost a concurrent race: %s", transaction_id, exc.message)
        return SettlementOutcome(
            applied=False,
            transaction_id=transaction_id,
            status=exc.current_status,
            reason=f"already_{exc.current_status}",
        )

    balance = None
    if plan.credit_delta:
        balance = await accounts.credit(transaction.user_id, plan.credit_delta, db)
    await db.commit()

    if plan.next_status == "completed":
        logger.info(
            "Credited %s credits to account %s for transaction %s",
            plan.credit_delta,
            transaction.user_id,
            transaction.id,
        )
    else:
        if plan.reason == "amount_mismatch":
            logger.warning(
                "Amount mismatch for transaction %s: observed %s expected %s",
                transaction.id,
                event.amount_observed,
                transaction.monetary_amount,
            )
        logger.info("Payment failed for transaction %s: %s", transaction.id, plan.reason)

    return SettlementOutcome(
        applied=True,
        transaction_id=transaction.id,
        status=plan.next_status,
        credits_applied=plan.credit_delta,
        balance=balance,
        reason=plan.reason,
    )


async def refund(
    db: AsyncSession,
    transaction_id: str,
    *,
    reason: str,
    actor_id: Optional[str] = None,
    amount: Optional[Decimal] = None,
) -> RefundOutcome:
    """Refund a completed purchase and claw back its credits when affordable."""
    original = await get_transaction(transaction_id, db)
    if original.kind != "purchase":
        raise InvalidTransition(
            original.id,
            original.status,
            "refunded",
            message="Only purchase transactions can be refunded.",
        )
    check_transition(original, "refunded")

    monetary_amount = Decimal(str(original.monetary_amount or 0))
    refund_amount = monetary_amount if amount is None else Decimal(str(amount))
    refund_id = str(uuid.uuid4())
    original = await transition(
        db,
        original.id,
        "refunded",
        refund_amount=refund_amount,
        refund_reason=reason,
        refund_transaction_id=refund_id,
    )

    clawback = refund_clawback(original.credit_delta, monetary_amount, refund_amount)
    skipped = False
    balance = None
    if clawback:
        try:
            balance = await accounts.debit(original.user_id, clawback, db)
        except InsufficientCredits as exc:
            skipped = True
            balance = exc.available
            await accounts.flag_for_reconciliation(
                original.user_id,
                db,
                note=f"Refund clawback of {clawback} credits skipped for {original.id}",
            )
            logger.warning(
                "Refund clawback skipped for account %s: needed %s, available %s",
                original.user_id,
                clawback,
                exc.available,
            )

    refund_transaction = await create_transaction(
        db,
        original.user_id,
        RefundEntry(
            original_transaction_id=original.id,
            credits_clawed_back=0 if skipped else clawback,
            amount=refund_amount,
            currency=original.currency,
            reason=reason,
            actor_id=actor_id,
            clawback_skipped=skipped,
        ),
        status="completed",
        transaction_id=refund_id,
    )
    await db.commit()
    logger.info(
        "Refunded transaction %s (%s %s) by %s; clawback=%s skipped=%s",
        original.id,
        refund_amount,
        original.currency,
        actor_id,
        clawback,
        skipped,
    )
    return RefundOutcome(
        original=original,
        refund=refund_transaction,
        credits_clawed_back=0 if skipped else clawback,
        clawback_skipped=skipped,
        balance=balance,
    )


async def grant_credits(
    db: AsyncSession,
    account_id: str,
    amount: int,
    *,
    reason: str,
    actor_id: Optional[str] = None,
) -> tuple:
    """Admin grant: always a new completed bonus transaction."""
    credits = int(amount)
    if credits <= 0:
        raise ValueError("amount must be greater than 0")
    await accounts.get_account(account_id, db)
    balance = await accounts.credit(account_id, credits, db)
    transaction = await create_transaction(
        db,
        account_id,
        BonusEntry(credits=credits, reason=reason, actor_id=actor_id),
        status="completed",
    )
    await db.commit()
    logger.info("Admin %s granted %s credits to account %s: %s", actor_id, credits, account_id, reason)
    return transaction, balance
