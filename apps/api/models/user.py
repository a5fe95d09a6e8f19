"""User model carrying the account credit balance."""

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


ACCOUNT_ROLES = ("user", "premium", "admin")


class User(Base):
    """Authenticated user and owner of one credit account.

    ``balance``, ``total_debited`` and ``total_credited`` are only ever
    changed through ``services.accounts``; users are deactivated, never
    deleted, so their ledger history is never orphaned.
    """

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_users_balance_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    role = Column(String, nullable=False, default="user")
    is_active = Column(Boolean, nullable=False, default=True)

    balance = Column(Integer, nullable=False, default=0)
    total_debited = Column(Integer, nullable=False, default=0)
    total_credited = Column(Integer, nullable=False, default=0)

    needs_reconciliation = Column(Boolean, nullable=False, default=False, index=True)
    unsettled_credits = Column(Integer, nullable=False, default=0)
    reconciliation_note = Column(String, nullable=True)

    stripe_customer_id = Column(String, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    transactions = relationship("Transaction", back_populates="user")
