"""Event model"""
from sqlalchemy import Column, Integer, String, Text, JSON, DateTime, CheckConstraint
from datetime import datetime, timezone
from loyalty_processor.models.base import Base

EVENT_STATUS_PENDING = "pending"
EVENT_STATUS_PROCESSED = "processed"
EVENT_STATUS_FAILED = "failed"
EVENT_STATUSES = (EVENT_STATUS_PENDING, EVENT_STATUS_PROCESSED, EVENT_STATUS_FAILED)


class Event(Base):
    """Inbound webhook event log, one row per external event_id (idempotency anchor)"""
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String(255), unique=True, nullable=False, index=True)
    type = Column(String(100), nullable=False, index=True)
    payload = Column(JSON, nullable=False)
    status = Column(String(20), default=EVENT_STATUS_PENDING, nullable=False, index=True)
    attempts = Column(Integer, default=0, nullable=False)
    job_id = Column(String(64), nullable=True)  # Queue job carrying this event
    error_message = Column(Text, nullable=True)  # Last processing failure
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processed', 'failed')",
            name="ck_events_status"
        ),
    )

    def __repr__(self):
        return f"<Event(event_id={self.event_id}, status={self.status}, attempts={self.attempts})>"
