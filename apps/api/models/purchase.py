"""Credit purchase model."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, JSON, Numeric, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


PURCHASE_STATUSES = ("pending", "completed", "failed", "refunded")


class Purchase(Base):
    """Confirmed credit package purchase. Immutable except for status."""

    __tablename__ = "purchases"
    __table_args__ = (
        UniqueConstraint("user_id", "payment_reference", name="uq_purchases_payment_reference"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    package_id = Column(String, nullable=False)
    package_name = Column(String, nullable=False)
    credits = Column(Numeric(12, 2), nullable=False)
    price = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String, nullable=False, default="USD")
    payment_method = Column(String, nullable=True)
    payment_reference = Column(String, nullable=False)
    status = Column(String, nullable=False, default="completed")
    metadata_json = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="purchases")
