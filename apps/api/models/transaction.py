"""Transaction model: one row per balance-affecting event."""

import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Index, Integer, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


TRANSACTION_KINDS = ("purchase", "usage", "refund", "bonus")
TRANSACTION_STATUSES = ("pending", "completed", "failed", "cancelled", "refunded")


class Transaction(Base):
    """Ledger transaction; ``kind`` and ``credit_delta`` never change after insert."""

    __tablename__ = "transactions"
    __table_args__ = (
        Index("ix_transactions_user_created", "user_id", "created_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    kind = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default="pending", index=True)
    credit_delta = Column(Integer, nullable=False, default=0)
    monetary_amount = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=True)
    external_ref = Column(String, nullable=True, index=True)
    description = Column(String, nullable=True)
    metadata_json = Column(JSON, nullable=True)
    actor_id = Column(String, nullable=True)

    failure_reason = Column(String, nullable=True)
    is_refunded = Column(Boolean, nullable=False, default=False)
    refund_amount = Column(Numeric(12, 2), nullable=True)
    refund_reason = Column(String, nullable=True)
    refund_transaction_id = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="transactions")
