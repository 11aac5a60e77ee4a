"""Generation model for client-visible portrait requests."""

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class Generation(Base):
    """A single portrait generation request and its lifecycle status."""

    __tablename__ = "generations"
    __table_args__ = (
        CheckConstraint(
            "(user_id IS NULL) <> (guest_device_id IS NULL)",
            name="ck_generations_single_owner",
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=True, index=True)
    guest_device_id = Column(String, nullable=True, index=True)
    style_key = Column(String, nullable=False)
    custom_prompt = Column(Text, nullable=True)
    edit_prompt = Column(Text, nullable=True)
    original_image_url = Column(String, nullable=False)
    generated_image_url = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending", index=True)  # pending, processing, completed, failed
    is_edited = Column(Boolean, nullable=False, default=False)
    batch_id = Column(String, nullable=True, index=True)
    credit_cost = Column(Integer, nullable=False, default=0)
    error_message = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    jobs = relationship("GenerationJob", back_populates="generation")
