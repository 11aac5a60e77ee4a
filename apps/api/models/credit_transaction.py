"""CreditTransaction model: append-only record of balance changes."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreditTransaction(Base):
    """Immutable credit ledger entry."""

    __tablename__ = "credit_transactions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    identity_key = Column(String, nullable=False, index=True)
    transaction_type = Column(String, nullable=False)
    delta = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=True)
    idempotency_key = Column(String, nullable=True, unique=True)
    provider = Column(String, nullable=True)
    reference_id = Column(String, nullable=True, index=True)
    reason = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    account = relationship("Account", back_populates="transactions")
