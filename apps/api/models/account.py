"""Account model holding per-identity credits and entitlements."""

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class Account(Base):
    """One account per identity (authenticated user or guest device)."""

    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("total_credits >= 0", name="ck_accounts_total_credits_non_negative"),
        CheckConstraint("reserved_credits >= 0", name="ck_accounts_reserved_credits_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    identity_key = Column(String, unique=True, nullable=False, index=True)
    identity_kind = Column(String, nullable=False)  # user, guest
    user_id = Column(String, nullable=True, index=True)
    device_id = Column(String, nullable=True, index=True)
    email = Column(String, nullable=True)
    free_credits = Column(Integer, nullable=False, default=0)
    total_credits = Column(Integer, nullable=False, default=0)
    reserved_credits = Column(Integer, nullable=False, default=0)
    is_subscribed = Column(Boolean, nullable=False, default=False)
    is_trial_active = Column(Boolean, nullable=False, default=False)
    trial_start_at = Column(DateTime(timezone=True), nullable=True)
    trial_end_at = Column(DateTime(timezone=True), nullable=True)
    credits_awarded = Column(Boolean, nullable=False, default=False)
    rating_bonus_awarded = Column(Boolean, nullable=False, default=False)
    email_verified = Column(Boolean, nullable=False, default=False)
    is_inert = Column(Boolean, nullable=False, default=False)
    merged_into_identity_key = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    transactions = relationship("CreditTransaction", back_populates="account")

    @property
    def available_credits(self) -> int:
        return max(int(self.total_credits or 0) - int(self.reserved_credits or 0), 0)
