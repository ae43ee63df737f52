"""
Node System for hookflow

This module defines the building blocks of a workflow graph:
- NodeKind: closed set of node categories (each one runs on its own queue)
- Node: typed node with free-form config
- Edge: directed link, optionally conditional
- WorkflowDefinition: nodes + edges with integrity checks

Definitions are stored as JSON in the workflows table and parsed into
these immutable Pydantic models whenever a worker needs the graph.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .exceptions import DefinitionError


class NodeKind(str, Enum):
    """
    Node categories. Anything unrecognized parses to UNKNOWN and runs on the
    generic node queue.
    """

    AGENT = "agent"
    MESSAGE = "message"
    API = "api"
    DECISION = "decision"
    TRANSFORM = "transform"
    DELAY = "delay"
    EMAIL = "email"
    WEBHOOK = "webhook"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "NodeKind":
        """Case-insensitive lookup, UNKNOWN for anything else."""
        if isinstance(value, NodeKind):
            return value
        if not value:
            return cls.UNKNOWN
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.UNKNOWN


class Node(BaseModel):
    """
    A workflow node.

    `type` keeps the declared string (as written by the flow builder);
    `kind` is the parsed category used for routing and execution.
    `position` is UI layout data and is never read by the engine.
    """

    id: str = Field(..., min_length=1, description="Unique node identifier")
    type: str = Field("unknown", description="Declared node type")
    config: Dict[str, Any] = Field(default_factory=dict)
    label: Optional[str] = Field(None, description="Human-readable label")
    position: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(frozen=True, extra="ignore")

    @field_validator("id")
    @classmethod
    def validate_id_not_empty(cls, v: str) -> str:
        """Ensure ID is not empty or whitespace"""
        if not v.strip():
            raise ValueError("Node ID cannot be empty")
        return v

    @model_validator(mode="before")
    @classmethod
    def lift_data_config(cls, values: Any) -> Any:
        # Flow builders often keep node settings under "data"
        if isinstance(values, dict) and "config" not in values and isinstance(values.get("data"), dict):
            values = dict(values)
            values["config"] = values["data"]
        return values

    @property
    def kind(self) -> NodeKind:
        return NodeKind.parse(self.type)


class Edge(BaseModel):
    """
    Directed edge. Accepts source/target, from/to or sourceId/targetId.
    """

    source: str
    target: str
    condition: Optional[str] = None
    label: Optional[str] = None

    model_config = ConfigDict(frozen=True, extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def normalize_endpoints(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        values = dict(values)
        for canonical, aliases in (("source", ("from", "sourceId")), ("target", ("to", "targetId"))):
            if not values.get(canonical):
                for alias in aliases:
                    if values.get(alias):
                        values[canonical] = values[alias]
                        break
        condition = values.get("condition")
        if condition is not None and not isinstance(condition, str):
            # Booleans written as JSON literals
            values["condition"] = str(condition).lower() if isinstance(condition, bool) else str(condition)
        return values


class WorkflowDefinition(BaseModel):
    """Parsed workflow graph."""

    nodes: List[Node] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True, extra="ignore")

    def node_map(self) -> Dict[str, Node]:
        return {node.id: node for node in self.nodes}

    def get_node(self, node_id: str) -> Optional[Node]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def outgoing(self, node_id: str) -> List[Edge]:
        return [edge for edge in self.edges if edge.source == node_id]

    def webhook_nodes(self) -> List[Node]:
        return [node for node in self.nodes if node.kind == NodeKind.WEBHOOK]

    def validate_integrity(self) -> None:
        """
        Checks:
        1. Node ids are unique
        2. Every edge endpoint references an existing node

        Raises:
            DefinitionError: If validation fails
        """
        seen = set()
        for node in self.nodes:
            if node.id in seen:
                raise DefinitionError(f"Duplicate node id: {node.id}")
            seen.add(node.id)

        for edge in self.edges:
            if edge.source not in seen:
                raise DefinitionError(f"Edge references non-existent node: {edge.source}")
            if edge.target not in seen:
                raise DefinitionError(f"Edge references non-existent node: {edge.target}")


def parse_definition(graph: Any) -> WorkflowDefinition:
    """
    Parse a stored graph definition.

    Raises:
        DefinitionError: If the definition is not a dict or a node/edge is invalid
    """
    if isinstance(graph, WorkflowDefinition):
        return graph
    if not isinstance(graph, dict):
        raise DefinitionError("Workflow definition must be an object with 'nodes' and 'edges'")

    try:
        return WorkflowDefinition(
            nodes=graph.get("nodes") or [],
            edges=graph.get("edges") or [],
        )
    except ValueError as e:
        raise DefinitionError(f"Invalid workflow definition: {e}")
