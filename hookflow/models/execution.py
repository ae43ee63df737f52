"""
Execution Model
Database model for one triggered run of a workflow
"""

from sqlalchemy import Column, Integer, String, Text, JSON, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime
from . import Base


class Execution(Base):
    """
    Execution Model

    One row per trigger (webhook event, scheduled event, API call).
    The id is shared by every node job of the chain. `trigger_key` is
    unique so redelivered triggers do not start a second execution.
    """
    __tablename__ = "executions"

    id = Column(String(36), primary_key=True, index=True)
    workflow_id = Column(String(255), ForeignKey("workflows.id"), nullable=False, index=True)
    workflow_version = Column(Integer, nullable=False, default=1)
    tenant_id = Column(String(255), nullable=False, index=True)

    # Status: running, completed, failed, cancelled
    status = Column(String(50), nullable=False, default="running", index=True)

    started_from = Column(String(255), nullable=True)
    # Source: webhook, scheduler, api
    trigger_source = Column(String(50), nullable=False, default="api")
    trigger_key = Column(String(512), nullable=True, unique=True)

    # Input the first node received
    trigger_data = Column(JSON, nullable=True)

    error = Column(Text, nullable=True)

    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    node_executions = relationship(
        "NodeExecution",
        back_populates="execution",
        cascade="all, delete-orphan",
        order_by="NodeExecution.id",
    )

    def __repr__(self):
        return f"<Execution(id='{self.id}', workflow_id='{self.workflow_id}', status='{self.status}')>"
