"""
Authentication router for delegated identity sync and account retrieval.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.accounts import account_payload, get_account, get_or_create_account
from services.providers import is_valid_email
from services.session_token import create_session_token, identity_verification_configured, verify_identity_token

router = APIRouter()


class SessionRequest(BaseModel):
    identity_token: Optional[str] = Field(default=None, max_length=8192)
    name: Optional[str] = Field(default=None, max_length=200)


class SessionResponse(BaseModel):
    user_id: str
    email: str
    role: str
    balance: int
    created: bool
    session_token: str
    session_expires_at: int


@router.post("/session", response_model=SessionResponse)
async def sync_session(
    request: SessionRequest,
    _rate_limit: None = Depends(rate_limit("auth_session", limit=30, window_seconds=300)),
    db: AsyncSession = Depends(get_db),
):
    """
    Exchange an identity-provider token for a backend session token.
    The account is created with the signup bonus the first time it is seen.
    """
    if not identity_verification_configured():
        raise HTTPException(status_code=503, detail="Identity verification is not configured.")
    if not request.identity_token:
        raise HTTPException(status_code=401, detail="Missing identity token.")
    try:
        identity = verify_identity_token(request.identity_token)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    if not is_valid_email(identity.email):
        raise HTTPException(status_code=400, detail="Invalid email address")

    name = request.name or identity.name
    user, created = await get_or_create_account(db, email=identity.email, name=name)
    if not user.is_active:
        raise HTTPException(status_code=403, detail="Account is deactivated.")
    if not created and name and name != user.name:
        user.name = name
        await db.commit()
        await db.refresh(user)

    session = create_session_token(user.id, user.email, role=user.role)
    return SessionResponse(
        user_id=user.id,
        email=user.email,
        role=user.role,
        balance=int(user.balance or 0),
        created=created,
        session_token=session["token"],
        session_expires_at=session["expires_at"],
    )


@router.get("/me")
async def get_current_account(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Get the caller's account summary."""
    account = await get_account(auth.user_id, db)
    return account_payload(account)
