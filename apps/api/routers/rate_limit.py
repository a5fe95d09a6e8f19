"""Simple Redis-backed rate limiting dependencies."""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Dict, Optional, Tuple

from fastapi import Depends, HTTPException, Request
import redis.asyncio as redis

from config import settings
from routers.auth_scope import AuthContext, get_account_context


_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


def _client_identifier(request: Request) -> str:
    if request.client and request.client.host:
        return request.client.host
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return "unknown"


def tier_limit(role: Optional[str]) -> int:
    """Requests per window for an account tier; unknown tiers count as anonymous."""
    tiers = settings.RATE_LIMIT_TIERS
    return int(tiers.get(role or "anonymous", tiers.get("anonymous", 0)))


async def _consume_local_quota(key: str, limit: int, window_seconds: int) -> bool:
    now = time.time()
    async with _local_lock:
        count, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            count = 0
            reset_at = now + window_seconds
        count += 1
        _local_counters[key] = (count, reset_at)
        return count <= limit


async def _consume_quota(key: str, limit: int, window_seconds: int) -> bool:
    try:
        redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
        try:
            current = await redis_client.incr(key)
            if current == 1:
                await redis_client.expire(key, window_seconds)
        finally:
            await redis_client.aclose()
        return current <= limit
    except Exception:
        return await _consume_local_quota(key, limit, window_seconds)


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable[[], None]:
    """Return a FastAPI dependency that enforces per-client request quotas."""

    async def _dependency(request: Request):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"ledger:rate:{prefix}:{_client_identifier(request)}"
        if not await _consume_quota(key, limit, window_seconds):
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded for {prefix}. Try again later.",
            )

    return _dependency


def tier_rate_limit(prefix: str, window_seconds: Optional[int] = None) -> Callable[[], None]:
    """Per-account quota sized by the tier stored on the caller's account."""

    async def _dependency(request: Request, auth: AuthContext = Depends(get_account_context)):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        window = int(window_seconds or settings.RATE_LIMIT_WINDOW_SECONDS)
        limit = tier_limit(auth.role)
        key = f"ledger:rate:{prefix}:{auth.user_id}"
        if not await _consume_quota(key, limit, window):
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded for {prefix} ({auth.role} tier: {limit}/{window}s).",
            )

    return _dependency
