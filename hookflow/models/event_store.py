"""
Job Provenance Model
Durable mirror of every dispatched job (the event store)
"""

from sqlalchemy import Column, Integer, String, JSON, DateTime
from datetime import datetime
from . import Base


class JobProvenance(Base):
    """
    One row per job id, written when the job is enqueued (status "waiting")
    and updated in place as the job moves through its lifecycle.

    Status values: waiting, processing, success, error, delayed, paused.
    Job status lookups fall back to this table once the broker forgets a job.
    """
    __tablename__ = "event_store"

    id = Column(String(255), primary_key=True)  # job id
    queue_name = Column(String(100), nullable=False)
    workflow_id = Column(String(255), nullable=False, index=True)
    tenant_id = Column(String(255), nullable=False, index=True)
    event_type = Column(String(100), nullable=False)

    status = Column(String(20), nullable=False, default="waiting")
    payload = Column(JSON, nullable=True)

    sequence_number = Column(Integer, nullable=False, default=0)

    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<JobProvenance(id='{self.id}', queue='{self.queue_name}', status='{self.status}')>"
