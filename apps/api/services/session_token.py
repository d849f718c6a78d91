"""Signed bearer credentials for tenants and the payment collaborator.

Two scopes share one signing key. ``tenant`` tokens identify the tenant whose
ledger a request may read or bill. ``payments`` tokens are held by the payment
collaborator only and are the sole credential accepted for recording purchases.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings


LEDGER_TOKEN_TYPE = "ccl_ledger"
LEDGER_AUDIENCE = "credit-ledger"

TENANT_SCOPE = "tenant"
PAYMENTS_SCOPE = "payments"
KNOWN_SCOPES = (TENANT_SCOPE, PAYMENTS_SCOPE)


@dataclass(frozen=True)
class LedgerClaims:
    subject: str
    scope: str
    email: Optional[str] = None
    expires_at: Optional[int] = None

    @property
    def is_tenant(self) -> bool:
        return self.scope == TENANT_SCOPE

    @property
    def is_payment_collaborator(self) -> bool:
        return self.scope == PAYMENTS_SCOPE


def _sign(claims: Dict[str, Any], expires_hours: Optional[int]) -> Dict[str, Any]:
    now = datetime.now(timezone.utc)
    ttl_hours = max(int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24), 1)
    expires_at = int((now + timedelta(hours=ttl_hours)).timestamp())
    claims.update(
        {
            "aud": LEDGER_AUDIENCE,
            "type": LEDGER_TOKEN_TYPE,
            "iat": int(now.timestamp()),
            "exp": expires_at,
        }
    )
    return {
        "token": jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM),
        "expires_at": expires_at,
    }


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """Issue a tenant-scoped token for ``user_id``."""
    claims: Dict[str, Any] = {"sub": user_id, "scope": TENANT_SCOPE}
    if email:
        claims["email"] = email
    return _sign(claims, expires_hours)


def create_payments_token(collaborator: str, expires_hours: Optional[int] = None) -> Dict[str, Any]:
    """Issue a token for the payment collaborator that confirms purchases."""
    return _sign({"sub": collaborator, "scope": PAYMENTS_SCOPE}, expires_hours)


def decode_ledger_token(token: str) -> LedgerClaims:
    """Validate a bearer token of either scope; raises ValueError when unusable."""
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            audience=LEDGER_AUDIENCE,
        )
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if str(payload.get("type", "")).strip() != LEDGER_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")
    subject = str(payload.get("sub", "")).strip()
    if not subject:
        raise ValueError("Session token missing subject.")
    scope = str(payload.get("scope", "")).strip()
    if scope not in KNOWN_SCOPES:
        raise ValueError("Session token has an unknown scope.")

    return LedgerClaims(
        subject=subject,
        scope=scope,
        email=str(payload.get("email", "")).strip() or None,
        expires_at=payload.get("exp"),
    )
