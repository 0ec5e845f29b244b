# backend/app/db/models/processed_event.py
from sqlalchemy import Column, String, DateTime
from datetime import datetime

from app.db.base import Base


class ProcessedEvent(Base):
    """Processor event ids already handled; the primary key is the dedupe lock"""
    __tablename__ = "processed_webhook_events"

    event_id = Column(String(255), primary_key=True)
    event_type = Column(String(100), nullable=False)
    organization_id = Column(String(36), nullable=True, index=True)
    outcome = Column(String(20), nullable=False)
    received_at = Column(DateTime, default=datetime.utcnow, nullable=False)
