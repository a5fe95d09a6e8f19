"""Follow-up work for usage that could not be settled and stale payments."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.transaction import Transaction
from models.user import User
from services import accounts
from services.ledger_errors import InsufficientCredits, InvalidTransition
from services.transactions import transition

logger = logging.getLogger(__name__)


async def pending_usage(account_id: str, db: AsyncSession) -> List[Transaction]:
    result = await db.execute(
        select(Transaction)
        .where(
            Transaction.user_id == account_id,
            Transaction.kind == "usage",
            Transaction.status == "pending",
        )
        .order_by(Transaction.created_at.asc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def flagged_accounts(db: AsyncSession, *, limit: int = 100) -> List[User]:
    result = await db.execute(
        select(User)
        .where(User.needs_reconciliation.is_(True))
        .order_by(User.updated_at.asc())
        .limit(max(int(limit), 1))
    )
    return list(result.scalars().all())


async def reconcile_account(account_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Settle pending usage oldest first while the balance covers it.

    Stops at the first entry the account cannot afford. The reconciliation
    flag is cleared only when nothing is left outstanding.
    """
    await accounts.get_account(account_id, db)
    settled: List[str] = []
    outstanding = [(item.id, -int(item.credit_delta or 0)) for item in await pending_usage(account_id, db)]
    remaining = list(outstanding)

    for transaction_id, cost in outstanding:
        try:
            await accounts.debit(account_id, cost, db)
            await transition(db, transaction_id, "completed")
        except InsufficientCredits:
            await db.rollback()
            break
        except InvalidTransition:
            await db.rollback()
            remaining.remove((transaction_id, cost))
            continue
        await db.commit()
        settled.append(transaction_id)
        remaining.remove((transaction_id, cost))

    unsettled = sum(cost for _, cost in remaining)
    if remaining:
        await db.execute(
            update(User)
            .where(User.id == account_id)
            .values(unsettled_credits=unsettled)
            .execution_options(synchronize_session=False)
        )
    else:
        await accounts.clear_reconciliation(account_id, db)
    await db.commit()

    balance = await accounts.get_balance(account_id, db)
    logger.info(
        "Reconciled account %s: settled=%s outstanding=%s unsettled_credits=%s",
        account_id,
        len(settled),
        len(remaining),
        unsettled,
    )
    return {
        "account_id": account_id,
        "settled_transaction_ids": settled,
        "outstanding_transaction_ids": [transaction_id for transaction_id, _ in remaining],
        "unsettled_credits": unsettled,
        "balance": balance,
        "needs_reconciliation": bool(remaining),
    }


async def expire_pending_payments(db: AsyncSession, *, older_than_hours: Optional[int] = None) -> int:
    """Cancel purchases still pending after the payment TTL."""
    hours = settings.PENDING_PAYMENT_TTL_HOURS if older_than_hours is None else older_than_hours
    cutoff = datetime.now(timezone.utc) - timedelta(hours=max(int(hours), 0))
    result = await db.execute(
        select(Transaction.id).where(
            Transaction.kind == "purchase",
            Transaction.status == "pending",
            Transaction.created_at < cutoff,
        )
    )
    expired = 0
    for transaction_id in result.scalars().all():
        try:
            await transition(db, transaction_id, "cancelled", failure_reason="expired")
        except InvalidTransition:
            await db.rollback()
            continue
        await db.commit()
        expired += 1
    if expired:
        logger.info("Expired %s pending payments older than %sh", expired, hours)
    return expired
