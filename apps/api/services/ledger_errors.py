"""Credit ledger error taxonomy and result type."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional


class CreditError(Exception):
    """Base class for ledger outcomes that are not a plain success."""

    code = "credit_error"
    retryable = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.details}


class ValidationError(CreditError):
    """Call is not billable (wrong status, missing or zero duration)."""

    code = "validation_error"


class AlreadyProcessedError(CreditError):
    """A usage entry already exists for this reference. Callers treat it as success."""

    code = "already_processed"


class InsufficientCreditsError(CreditError):
    code = "insufficient_credits"


class TransientError(CreditError):
    """I/O failure, timeout or conflict exhaustion. Safe to retry later."""

    code = "transient_error"
    retryable = True


class TenantPermissionError(CreditError):
    """The call or resource belongs to another tenant."""

    code = "permission_denied"


@dataclass
class CreditResult:
    """Outcome of a billing attempt. Business rejections are carried in ``error``."""

    credits_deducted: Decimal = Decimal("0")
    balance_after: Optional[Decimal] = None
    usage_log_id: Optional[str] = None
    error: Optional[CreditError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def already_processed(self) -> bool:
        return isinstance(self.error, AlreadyProcessedError)

    @property
    def insufficient_credits(self) -> bool:
        return isinstance(self.error, InsufficientCreditsError)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.ok or self.already_processed,
            "credits_deducted": float(self.credits_deducted),
            "balance_after": float(self.balance_after) if self.balance_after is not None else None,
            "usage_log_id": self.usage_log_id,
            "already_processed": self.already_processed,
            "error": self.error.to_dict() if self.error else None,
        }
