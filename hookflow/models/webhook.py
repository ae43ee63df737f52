"""
Webhook Registration Model
Binds (tenant, provider, workflow) to the node a webhook triggers
"""

from sqlalchemy import Column, String, DateTime, ForeignKey, UniqueConstraint
from datetime import datetime
from . import Base


def registration_id(tenant_id: str, provider: str, workflow_id: str) -> str:
    """Deterministic id: "{tenant}-{provider lower}-{workflow}"."""
    return f"{tenant_id}-{provider.lower()}-{workflow_id}"


class WebhookRegistration(Base):
    __tablename__ = "webhook_registrations"
    __table_args__ = (
        UniqueConstraint("tenant_id", "provider_type", "workflow_id", name="uq_webhook_registration"),
    )

    id = Column(String(512), primary_key=True)
    tenant_id = Column(String(255), nullable=False, index=True)
    workflow_id = Column(String(255), ForeignKey("workflows.id"), nullable=False, index=True)
    provider_type = Column(String(50), nullable=False)

    # Node the webhook starts at (the workflow's webhook trigger node)
    node_id = Column(String(255), nullable=False)

    # Status: active, inactive, error
    status = Column(String(20), nullable=False, default="active")
    last_triggered_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<WebhookRegistration(id='{self.id}', status='{self.status}')>"
