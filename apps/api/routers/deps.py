"""Shared router dependencies: tenant auth, rate limiting, ledger collaborators."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict, NoReturn, Optional, Tuple

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
import redis.asyncio as redis

from config import settings
from services.call_events import CallEventFeed
from services.ledger_errors import (
    CreditError,
    InsufficientCreditsError,
    TenantPermissionError,
    TransientError,
    ValidationError,
)
from services.notifications import NotificationSink, get_notification_sink
from services.session_token import LedgerClaims, decode_ledger_token


auth_scheme = HTTPBearer(auto_error=False)

_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


@dataclass
class TenantContext:
    user_id: str
    email: Optional[str] = None


def ensure_tenant_scope(tenant_id: str, supplied_user_id: Optional[str]) -> str:
    """Return the authenticated tenant and reject cross-tenant attempts."""
    if supplied_user_id and supplied_user_id != tenant_id:
        raise HTTPException(status_code=403, detail="user_id does not match authenticated session.")
    return tenant_id


async def _bearer_claims(credentials: Optional[HTTPAuthorizationCredentials]) -> LedgerClaims:
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")
    try:
        return decode_ledger_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc


async def get_tenant(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> TenantContext:
    """Resolve the tenant from a Bearer session token."""
    claims = await _bearer_claims(credentials)
    if not claims.is_tenant:
        raise HTTPException(status_code=403, detail="A tenant session token is required.")
    return TenantContext(user_id=claims.subject, email=claims.email)


async def get_payment_collaborator(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> str:
    """Only the payment collaborator may confirm purchases; tenants cannot credit themselves."""
    claims = await _bearer_claims(credentials)
    if not claims.is_payment_collaborator:
        raise HTTPException(status_code=403, detail="Purchases are recorded by the payment collaborator only.")
    return claims.subject


def get_call_feed(request: Request) -> Optional[CallEventFeed]:
    return getattr(request.app.state, "call_feed", None)


def get_sink(request: Request) -> NotificationSink:
    return getattr(request.app.state, "notification_sink", None) or get_notification_sink()


def raise_for_credit_error(error: CreditError) -> NoReturn:
    """Translate a ledger outcome into the matching HTTP error."""
    if isinstance(error, InsufficientCreditsError):
        status_code = 402
    elif isinstance(error, ValidationError):
        status_code = 422
    elif isinstance(error, TenantPermissionError):
        status_code = 403
    elif isinstance(error, TransientError):
        status_code = 503
    else:
        status_code = 400
    raise HTTPException(status_code=status_code, detail=error.to_dict())


def _client_identifier(request: Request) -> str:
    if request.client and request.client.host:
        return request.client.host
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return "unknown"


async def _consume_local_quota(key: str, limit: int, window_seconds: int) -> bool:
    now = time.time()
    async with _local_lock:
        count, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            count, reset_at = 0, now + window_seconds
        count += 1
        _local_counters[key] = (count, reset_at)
        return count <= limit


async def _consume_redis_quota(key: str, limit: int, window_seconds: int) -> bool:
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        async with client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, window_seconds, nx=True)
            current, _ = await pipe.execute()
    finally:
        await client.aclose()
    return int(current) <= limit


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable:
    """Per-client fixed-window quota, Redis-backed with an in-process fallback."""

    async def _dependency(request: Request):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"ccl:rate:{prefix}:{_client_identifier(request)}"
        try:
            allowed = await _consume_redis_quota(key, limit, window_seconds)
        except Exception:
            allowed = await _consume_local_quota(key, limit, window_seconds)

        if not allowed:
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded for {prefix}. Try again later.",
            )

    return _dependency
