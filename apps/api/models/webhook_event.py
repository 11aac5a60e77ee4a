"""Processed payment webhook events (replay guard)."""

import uuid

from sqlalchemy import Column, DateTime, String, UniqueConstraint
from sqlalchemy.sql import func

from database import Base


class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    __table_args__ = (UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    provider = Column(String, nullable=False)
    event_id = Column(String, nullable=False)
    event_type = Column(String, nullable=False)
    identity_key = Column(String, nullable=True, index=True)
    outcome = Column(String, nullable=False)  # applied, ignored
    created_at = Column(DateTime(timezone=True), server_default=func.now())
