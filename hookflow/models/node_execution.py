"""
Node Execution Model
Audit trail of each node job inside an execution
"""

from sqlalchemy import Column, Integer, String, Text, JSON, DateTime, Float, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime
from . import Base


class NodeExecution(Base):
    """
    Node Execution Model

    One record per node invocation. Retries of the same job update the
    same record (attempts is incremented, status moves back to running).
    """
    __tablename__ = "node_executions"

    id = Column(Integer, primary_key=True, index=True)
    execution_id = Column(String(36), ForeignKey("executions.id"), nullable=False, index=True)

    node_id = Column(String(255), nullable=False, index=True)
    node_type = Column(String(50), nullable=False)

    job_id = Column(String(255), nullable=True, unique=True)
    queue_name = Column(String(100), nullable=True)

    # Status: pending, running, completed, failed
    status = Column(String(50), nullable=False, default="pending", index=True)
    attempts = Column(Integer, nullable=False, default=0)

    # Distance from the trigger node (cycle guard)
    hop = Column(Integer, nullable=False, default=0)
    # Job that dispatched this node (None for the trigger node)
    parent_job_id = Column(String(255), nullable=True, index=True)

    input = Column(JSON, nullable=True)
    output = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)

    execution_time = Column(Float, nullable=True)  # seconds

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    execution = relationship("Execution", back_populates="node_executions")

    def __repr__(self):
        return f"<NodeExecution(id={self.id}, node_id='{self.node_id}', status='{self.status}')>"
