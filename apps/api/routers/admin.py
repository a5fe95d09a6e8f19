"""Administrative ledger operations."""

from __future__ import annotations

from decimal import Decimal
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, require_admin
from services.accounts import account_payload, deactivate_account, set_role
from services.reconciliation import flagged_accounts, reconcile_account
from services.settlement import grant_credits, refund
from services.transactions import transaction_payload

router = APIRouter()


class GrantCreditsRequest(BaseModel):
    account_id: str = Field(min_length=1)
    amount: int = Field(gt=0, le=1_000_000)
    reason: str = Field(min_length=1, max_length=500)


class RefundRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)
    amount: Optional[Decimal] = Field(default=None, gt=0)


class RoleUpdateRequest(BaseModel):
    role: Literal["user", "premium", "admin"]


@router.post("/credits")
async def admin_grant_credits(
    request: GrantCreditsRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    transaction, balance = await grant_credits(
        db,
        request.account_id,
        request.amount,
        reason=request.reason,
        actor_id=admin.user_id,
    )
    return {
        "transaction": transaction_payload(transaction),
        "balance": balance,
    }


@router.post("/transactions/{transaction_id}/refund")
async def admin_refund(
    transaction_id: str,
    request: RefundRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    outcome = await refund(
        db,
        transaction_id,
        reason=request.reason,
        actor_id=admin.user_id,
        amount=request.amount,
    )
    return {
        "original": transaction_payload(outcome.original),
        "refund": transaction_payload(outcome.refund),
        "credits_clawed_back": outcome.credits_clawed_back,
        "clawback_skipped": outcome.clawback_skipped,
        "balance": outcome.balance,
    }


@router.get("/reconciliation")
async def admin_reconciliation_queue(
    limit: int = Query(default=100, ge=1, le=500),
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    accounts = await flagged_accounts(db, limit=limit)
    return {
        "accounts": [
            {**account_payload(account), "reconciliation_note": account.reconciliation_note}
            for account in accounts
        ],
        "count": len(accounts),
    }


@router.post("/accounts/{account_id}/reconcile")
async def admin_reconcile_account(
    account_id: str,
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await reconcile_account(account_id, db)


@router.patch("/accounts/{account_id}/role")
async def admin_set_role(
    account_id: str,
    request: RoleUpdateRequest,
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    account = await set_role(account_id, request.role, db)
    return account_payload(account)


@router.post("/accounts/{account_id}/deactivate")
async def admin_deactivate_account(
    account_id: str,
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    account = await deactivate_account(account_id, db)
    return account_payload(account)
