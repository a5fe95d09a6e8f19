"""
Ledger session tokens and the identity tokens they are exchanged for.

Sign-in happens at an external identity provider. It hands the client a
signed identity token (``IDENTITY_JWT_SECRET``); ``POST /auth/session``
verifies it and mints a ledger session token (``JWT_SECRET``) that every
other endpoint accepts. The two are never interchangeable.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "ledger_session"


@dataclass(frozen=True)
class VerifiedIdentity:
    subject: str
    email: str
    name: Optional[str] = None


def _verify(token: str, secret: str, algorithms: List[str], **claims: Any) -> Dict[str, Any]:
    audience = claims.pop("audience", None)
    try:
        return jwt.decode(
            token,
            secret,
            algorithms=algorithms,
            audience=audience,
            options={"verify_aud": audience is not None},
            **claims,
        )
    except JWTError as exc:
        raise ValueError("Invalid or expired token.") from exc


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    role: str = "user",
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """Mint a ledger session token; ``role`` is informational only."""
    issued_at = datetime.now(timezone.utc)
    lifetime = timedelta(hours=max(int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24), 1))
    expires_at = int((issued_at + lifetime).timestamp())

    claims: Dict[str, Any] = {
        "sub": user_id,
        "type": SESSION_TOKEN_TYPE,
        "role": role or "user",
        "iat": int(issued_at.timestamp()),
        "exp": expires_at,
    }
    if email:
        claims["email"] = email

    return {
        "token": jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM),
        "expires_at": expires_at,
    }


def decode_session_token(token: str) -> Dict[str, Any]:
    try:
        payload = _verify(token, settings.JWT_SECRET, [settings.JWT_ALGORITHM])
    except ValueError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if str(payload.get("type", "")).strip() != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")
    if not str(payload.get("sub", "")).strip():
        raise ValueError("Session token missing subject.")
    return payload


def identity_verification_configured() -> bool:
    return bool((settings.IDENTITY_JWT_SECRET or "").strip())


def verify_identity_token(token: str) -> VerifiedIdentity:
    """Check an identity-provider token and return who it vouches for.

    The provider must assert an email; an explicit ``email_verified: false``
    is refused. Audience and issuer are enforced when configured.
    """
    if not identity_verification_configured():
        raise RuntimeError("Identity verification is not configured.")

    try:
        claims = _verify(
            token,
            settings.IDENTITY_JWT_SECRET,
            [settings.IDENTITY_JWT_ALGORITHM],
            audience=(settings.IDENTITY_JWT_AUDIENCE or "").strip() or None,
            issuer=(settings.IDENTITY_JWT_ISSUER or "").strip() or None,
        )
    except ValueError as exc:
        raise ValueError("Invalid or expired identity token.") from exc

    if claims.get("type") == SESSION_TOKEN_TYPE:
        raise ValueError("Session tokens cannot be exchanged for a new session.")
    email = str(claims.get("email") or "").strip().lower()
    if not email:
        raise ValueError("Identity token missing email claim.")
    if claims.get("email_verified") is False:
        raise ValueError("Identity provider has not verified this email.")

    return VerifiedIdentity(
        subject=str(claims.get("sub") or email),
        email=email,
        name=str(claims["name"]) if claims.get("name") else None,
    )
