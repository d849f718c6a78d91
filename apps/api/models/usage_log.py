"""Append-only credit usage log."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, Numeric, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


USAGE_TYPES = ("call", "email", "other")


class CreditUsageLog(Base):
    """Immutable usage entry. At most one per (user, usage type, reference)."""

    __tablename__ = "credit_usage_logs"
    __table_args__ = (
        UniqueConstraint("user_id", "usage_type", "reference_id", name="uq_credit_usage_logs_reference"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    usage_type = Column(String, nullable=False, index=True)
    amount_used = Column(Numeric(12, 2), nullable=False)
    duration_seconds = Column(Integer, nullable=True)
    reference_id = Column(String, nullable=True, index=True)
    rate_per_minute = Column(Numeric(12, 4), nullable=True)
    cost_breakdown = Column(JSON, nullable=True)
    balance_before = Column(Numeric(12, 2), nullable=True)
    balance_after = Column(Numeric(12, 2), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    user = relationship("User", back_populates="usage_logs")
