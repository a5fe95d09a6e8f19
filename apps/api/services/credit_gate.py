"""Request-time admission control against the account balance."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from services.accounts import get_active_account
from services.ledger_errors import InsufficientCredits


async def admit(account_id: str, required: int, db: AsyncSession) -> int:
    """Return the current balance, or raise if ``required`` is not affordable.

    This is a cheap pre-check only; the debit that follows is still the
    conditional update in ``services.accounts``.
    """
    account = await get_active_account(account_id, db)
    balance = int(account.balance or 0)
    needed = max(int(required), 0)
    if needed > balance:
        raise InsufficientCredits(required=needed, available=balance)
    return balance
