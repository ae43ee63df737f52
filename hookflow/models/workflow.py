"""
Workflow Model
Database model for tenant workflow definitions
"""

from sqlalchemy import Column, Integer, String, Text, JSON, DateTime, Boolean
from datetime import datetime
from . import Base


class Workflow(Base):
    """
    Workflow Model

    Stores workflow definitions as directed graphs, scoped to one tenant.
    `version` is bumped on every graph change; executions pin the version
    they started with.
    """
    __tablename__ = "workflows"

    id = Column(String(255), primary_key=True, index=True)
    tenant_id = Column(String(255), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    # JSON structure:
    # {
    #   "nodes": [
    #     {"id": "hook", "type": "webhook", "config": {"provider": "whatsapp"}},
    #     {"id": "reply", "type": "agent", "config": {"agent_id": "support"}},
    #     {"id": "route", "type": "decision"},
    #   ],
    #   "edges": [
    #     {"source": "hook", "target": "reply"},
    #     {"source": "reply", "target": "route", "condition": "data.get('score', 0) > 3"}
    #   ]
    # }
    graph_definition = Column(JSON, nullable=False)

    version = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=True, index=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<Workflow(id='{self.id}', tenant_id='{self.tenant_id}', version={self.version})>"
