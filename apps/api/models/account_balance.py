"""Per-tenant credit balance aggregate."""

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class AccountBalance(Base):
    """Mutable balance row, written only through the ledger mutation primitives."""

    __tablename__ = "account_balances"
    __table_args__ = (
        CheckConstraint("remaining_credits >= 0", name="ck_account_balances_remaining_non_negative"),
    )

    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    total_credits_purchased = Column(Numeric(12, 2), nullable=False, default=0)
    total_credits_used = Column(Numeric(12, 2), nullable=False, default=0)
    remaining_credits = Column(Numeric(12, 2), nullable=False, default=0)
    total_minutes_used = Column(Numeric(12, 2), nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="balance")
