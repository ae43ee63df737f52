"""
Scheduled Event Model
Time-based triggers polled by the scheduler
"""

from sqlalchemy import Column, String, JSON, DateTime, ForeignKey
from datetime import datetime
from . import Base


class ScheduledEvent(Base):
    """
    Scheduled Event Model

    schedule JSON:
    {
      "cron": "*/5 * * * *",
      "start_time": "2026-01-01T00:00:00",   # optional
      "end_time": "2026-12-31T23:59:59",     # optional
      "timezone": "Europe/Madrid"            # optional, default UTC
    }

    last_run/next_run are naive UTC and only written by the scheduler.
    """
    __tablename__ = "scheduled_events"

    id = Column(String(36), primary_key=True, index=True)
    workflow_id = Column(String(255), ForeignKey("workflows.id"), nullable=False, index=True)
    node_id = Column(String(255), nullable=False)
    tenant_id = Column(String(255), nullable=False, index=True)

    data = Column(JSON, nullable=True)
    schedule = Column(JSON, nullable=False)

    last_run = Column(DateTime, nullable=True)
    next_run = Column(DateTime, nullable=True, index=True)

    # Status: active, paused, completed
    status = Column(String(20), nullable=False, default="active", index=True)

    # "metadata" is reserved on declarative classes
    event_metadata = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<ScheduledEvent(id='{self.id}', status='{self.status}', next_run={self.next_run})>"
