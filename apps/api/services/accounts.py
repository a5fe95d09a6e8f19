"""Account balance operations.

``debit`` and ``credit`` are single conditional UPDATE statements so that
concurrent requests from several server processes can never drive a balance
below zero or lose an update. Neither function commits; the caller commits
together with the Transaction row that explains the change.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.user import ACCOUNT_ROLES, User
from services.ledger_errors import AccountInactive, AccountNotFound, InsufficientCredits
from services.transactions import BonusEntry, create_transaction

logger = logging.getLogger(__name__)


def _validate_amount(amount: int) -> int:
    value = int(amount)
    if value < 0:
        raise ValueError("amount must be >= 0")
    return value


async def get_account(account_id: str, db: AsyncSession) -> User:
    result = await db.execute(
        select(User).where(User.id == account_id).execution_options(populate_existing=True)
    )
    account = result.scalar_one_or_none()
    if account is None:
        raise AccountNotFound(account_id)
    return account


async def get_active_account(account_id: str, db: AsyncSession) -> User:
    account = await get_account(account_id, db)
    if not account.is_active:
        raise AccountInactive(account_id)
    return account


async def get_balance(account_id: str, db: AsyncSession) -> int:
    result = await db.execute(select(User.balance).where(User.id == account_id))
    balance = result.scalar_one_or_none()
    if balance is None:
        raise AccountNotFound(account_id)
    return int(balance)


async def debit(account_id: str, amount: int, db: AsyncSession) -> int:
    """Atomically take ``amount`` credits; returns the new balance."""
    value = _validate_amount(amount)
    result = await db.execute(
        update(User)
        .where(User.id == account_id, User.balance >= value)
        .values(balance=User.balance - value, total_debited=User.total_debited + value)
        .returning(User.balance)
        .execution_options(synchronize_session=False)
    )
    new_balance = result.scalar_one_or_none()
    if new_balance is None:
        available = await get_balance(account_id, db)
        raise InsufficientCredits(required=value, available=available)
    return int(new_balance)


async def credit(account_id: str, amount: int, db: AsyncSession) -> int:
    """Atomically add ``amount`` credits; returns the new balance."""
    value = _validate_amount(amount)
    result = await db.execute(
        update(User)
        .where(User.id == account_id)
        .values(balance=User.balance + value, total_credited=User.total_credited + value)
        .returning(User.balance)
        .execution_options(synchronize_session=False)
    )
    new_balance = result.scalar_one_or_none()
    if new_balance is None:
        raise AccountNotFound(account_id)
    return int(new_balance)


async def flag_for_reconciliation(
    account_id: str,
    db: AsyncSession,
    *,
    unsettled_credits: int = 0,
    note: Optional[str] = None,
) -> None:
    await db.execute(
        update(User)
        .where(User.id == account_id)
        .values(
            needs_reconciliation=True,
            unsettled_credits=User.unsettled_credits + max(int(unsettled_credits), 0),
            reconciliation_note=note,
        )
        .execution_options(synchronize_session=False)
    )
    logger.warning("Account %s flagged for reconciliation: %s", account_id, note)


async def clear_reconciliation(account_id: str, db: AsyncSession) -> None:
    await db.execute(
        update(User)
        .where(User.id == account_id)
        .values(needs_reconciliation=False, unsettled_credits=0, reconciliation_note=None)
        .execution_options(synchronize_session=False)
    )


async def create_account(
    db: AsyncSession,
    *,
    email: str,
    name: Optional[str] = None,
    account_id: Optional[str] = None,
    role: Optional[str] = None,
) -> User:
    """Create a user account and grant the signup bonus.

    The bonus goes through ``credit`` and a completed bonus transaction so the
    lifetime counters agree with the balance from the first moment.
    """
    admin_emails = {value.strip().lower() for value in settings.ADMIN_EMAILS}
    resolved_role = role or ("admin" if email.strip().lower() in admin_emails else "user")
    account = User(email=email, name=name, role=resolved_role, balance=0, total_debited=0, total_credited=0)
    if account_id:
        account.id = account_id
    db.add(account)
    await db.flush()

    bonus = max(int(settings.SIGNUP_BONUS_CREDITS), 0)
    if bonus:
        await credit(account.id, bonus, db)
        await create_transaction(
            db,
            account.id,
            BonusEntry(credits=bonus, reason="signup_bonus"),
            status="completed",
        )
    await db.commit()
    await db.refresh(account)
    logger.info("Created account %s with %s signup credits", account.id, bonus)
    return account


async def get_or_create_account(
    db: AsyncSession,
    *,
    email: str,
    name: Optional[str] = None,
) -> Tuple[User, bool]:
    """Return ``(account, created)``; a concurrent first sign-in for the same email wins once."""
    result = await db.execute(select(User).where(User.email == email))
    account = result.scalar_one_or_none()
    if account is not None:
        return account, False

    try:
        return await create_account(db, email=email, name=name), True
    except IntegrityError:
        await db.rollback()
        result = await db.execute(
            select(User).where(User.email == email).execution_options(populate_existing=True)
        )
        account = result.scalar_one_or_none()
        if account is None:
            raise
        logger.info("Account for %s was created concurrently; reusing %s", email, account.id)
        return account, False


async def set_role(account_id: str, role: str, db: AsyncSession) -> User:
    if role not in ACCOUNT_ROLES:
        raise ValueError(f"role must be one of {', '.join(ACCOUNT_ROLES)}")
    account = await get_account(account_id, db)
    previous = account.role
    account.role = role
    await db.commit()
    await db.refresh(account)
    logger.info("Account %s role changed from %s to %s", account_id, previous, role)
    return account


async def deactivate_account(account_id: str, db: AsyncSession) -> User:
    account = await get_account(account_id, db)
    account.is_active = False
    await db.commit()
    await db.refresh(account)
    return account


def account_payload(account: User) -> dict:
    return {
        "account_id": account.id,
        "email": account.email,
        "name": account.name,
        "role": account.role,
        "is_active": bool(account.is_active),
        "balance": int(account.balance or 0),
        "total_debited": int(account.total_debited or 0),
        "total_credited": int(account.total_credited or 0),
        "needs_reconciliation": bool(account.needs_reconciliation),
        "unsettled_credits": int(account.unsettled_credits or 0),
    }
