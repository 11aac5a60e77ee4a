"""Generation job model backing the claim-based work queue."""

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


LIVE_JOB_STATUSES = ("queued", "claimed")


class GenerationJob(Base):
    """Queued generation work item (1:1 with a generation at enqueue time)."""

    __tablename__ = "generation_jobs"
    __table_args__ = (
        Index(
            "uq_generation_jobs_live_generation",
            "generation_id",
            unique=True,
            postgresql_where=text("status IN ('queued', 'claimed')"),
            sqlite_where=text("status IN ('queued', 'claimed')"),
        ),
        Index("ix_generation_jobs_claim_order", "status", "available_at", "queued_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    generation_id = Column(String, ForeignKey("generations.id"), nullable=False, index=True)
    user_id = Column(String, nullable=True, index=True)
    guest_device_id = Column(String, nullable=True, index=True)
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    style_key = Column(String, nullable=False)
    custom_prompt = Column(Text, nullable=True)
    edit_prompt = Column(Text, nullable=True)
    original_image_url = Column(String, nullable=False)
    status = Column(String, nullable=False, default="queued", index=True)  # queued, claimed, completed, failed
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    reserved_credits = Column(Integer, nullable=False, default=0)
    claim_token = Column(String, nullable=True)
    claimed_by = Column(String, nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    queued_at = Column(DateTime(timezone=True), nullable=False)
    available_at = Column(DateTime(timezone=True), nullable=False)
    error_message = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    generation = relationship("Generation", back_populates="jobs")
