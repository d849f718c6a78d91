"""Call record owned by the call-handling subsystem."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


CALL_STATUSES = (
    "pending",
    "in_progress",
    "completed",
    "failed",
    "not_connected",
    "night_time_dont_call",
)


class CallRecord(Base):
    """Phone call placed or received by a bot. Read-only to the ledger."""

    __tablename__ = "calls"

    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    bot_id = Column(String, nullable=True)
    phone_number = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending", index=True)
    duration_seconds = Column(Integer, nullable=True)
    cost_breakdown = Column(JSON, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="calls")
