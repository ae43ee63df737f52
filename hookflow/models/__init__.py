"""
Models module - SQLAlchemy database models
"""

from sqlalchemy.orm import declarative_base

Base = declarative_base()

# Import models after Base is defined to avoid circular imports
from .workflow import Workflow  # noqa: E402
from .webhook import WebhookRegistration  # noqa: E402
from .execution import Execution  # noqa: E402
from .node_execution import NodeExecution  # noqa: E402
from .scheduled_event import ScheduledEvent  # noqa: E402
from .event_store import JobProvenance  # noqa: E402

__all__ = [
    "Base",
    "Workflow",
    "WebhookRegistration",
    "Execution",
    "NodeExecution",
    "ScheduledEvent",
    "JobProvenance",
]
