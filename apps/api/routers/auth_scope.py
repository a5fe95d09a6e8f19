"""Authentication dependencies for API account scoping."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.user import User
from services.accounts import get_account
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None
    role: str = "user"
    is_active: bool = True

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve authenticated account from Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        payload = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(
        user_id=str(payload.get("sub", "")),
        email=str(payload.get("email", "")) or None,
        role=str(payload.get("role", "")) or "user",
    )


async def get_account_context(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> AuthContext:
    """Replace the token's role claim with the stored role and active flag."""
    account = await get_account(auth.user_id, db)
    return AuthContext(
        user_id=account.id,
        email=account.email,
        role=account.role or "user",
        is_active=bool(account.is_active),
    )


async def require_active_account(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Load the caller's account and reject deactivated ones."""
    account = await get_account(auth.user_id, db)
    if not account.is_active:
        raise HTTPException(status_code=403, detail="Account is deactivated.")
    return account


async def require_admin(auth: AuthContext = Depends(get_account_context)) -> AuthContext:
    if not auth.is_active:
        raise HTTPException(status_code=403, detail="Account is deactivated.")
    if not auth.is_admin:
        raise HTTPException(status_code=403, detail="Admin role required.")
    return auth
