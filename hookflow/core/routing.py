"""
Node-Type -> Queue Router

Each node category has its own queue so operators can tune concurrency and
retry policy per category and a slow category cannot block the others.
"""

from typing import Dict, Union

from .nodes import NodeKind

DEFAULT_QUEUE = "workflow-node-execution"
RESPONSE_QUEUE = "response-delivery"

DEFAULT_QUEUE_MAP: Dict[NodeKind, str] = {
    NodeKind.AGENT: "agent-execution",
    NodeKind.MESSAGE: "message-processing",
    NodeKind.API: "api-request",
    NodeKind.DECISION: "decision-processing",
    NodeKind.TRANSFORM: "data-transformation",
    NodeKind.DELAY: "scheduled-delay",
    NodeKind.EMAIL: "email-sending",
    NodeKind.WEBHOOK: "webhook-trigger",
    NodeKind.UNKNOWN: DEFAULT_QUEUE,
}


class QueueRouter:
    """
    Maps node kinds to queue names.

    Example:
        >>> router = QueueRouter()
        >>> router.queue_for("Email")
        'email-sending'
        >>> router.queue_for("foobar")
        'workflow-node-execution'
    """

    def __init__(self, table: Dict[NodeKind, str] = None):
        self._table = dict(DEFAULT_QUEUE_MAP)
        if table:
            self._table.update(table)

    def register(self, kind: Union[NodeKind, str], queue_name: str) -> None:
        """
        Override the queue for a node kind.

        Raises:
            ValueError: If kind is not a known node kind (the fallback queue
                is only rebound by passing "unknown" explicitly)
        """
        parsed = NodeKind.parse(kind)
        explicit = kind is NodeKind.UNKNOWN or str(kind).strip().lower() == NodeKind.UNKNOWN.value
        if parsed is NodeKind.UNKNOWN and not explicit:
            raise ValueError(f"Unknown node kind: {kind!r}")
        self._table[parsed] = queue_name

    def queue_for(self, node_type: Union[NodeKind, str]) -> str:
        return self._table.get(NodeKind.parse(node_type), DEFAULT_QUEUE)

    def queues(self) -> list:
        """Every queue a worker may consume, including response delivery."""
        names = list(dict.fromkeys(self._table.values()))
        if RESPONSE_QUEUE not in names:
            names.append(RESPONSE_QUEUE)
        return names
