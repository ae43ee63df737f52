"""
Pydantic schemas for API request/response validation
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


# ============================================================================
# WORKFLOW SCHEMAS
# ============================================================================

class WorkflowCreate(BaseModel):
    """Schema for creating a new workflow"""
    tenant_id: str = Field(..., min_length=1, max_length=255)
    id: Optional[str] = Field(None, max_length=255, description="Workflow id (generated when omitted)")
    name: str = Field(..., min_length=1, max_length=255, description="Workflow name")
    description: Optional[str] = Field(None, description="Workflow description")
    graph_definition: Dict[str, Any] = Field(..., description="Workflow graph (nodes + edges)")
    is_active: bool = True

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "tenant_id": "acme",
                "name": "WhatsApp support",
                "graph_definition": {
                    "nodes": [
                        {"id": "inbound", "type": "webhook", "config": {"provider": "whatsapp"}},
                        {"id": "agent", "type": "agent", "config": {"agent_id": "support"}},
                    ],
                    "edges": [
                        {"source": "inbound", "target": "agent"},
                    ],
                },
            }
        }
    )


class WorkflowUpdate(BaseModel):
    """Schema for updating a workflow"""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    graph_definition: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = None


class WorkflowResponse(BaseModel):
    id: str
    tenant_id: str
    name: str
    description: Optional[str]
    graph_definition: Dict[str, Any]
    version: int
    is_active: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class WorkflowListResponse(BaseModel):
    workflows: List[WorkflowResponse]
    total: int


class ExecuteRequest(BaseModel):
    """Manual trigger of a workflow"""
    tenant_id: str
    node_id: Optional[str] = Field(None, description="Start node (defaults to the entry node)")
    input: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    trigger_key: Optional[str] = Field(None, description="Idempotency key; repeats return the same execution")


class TriggerResponse(BaseModel):
    execution_id: str
    workflow_id: str
    node_id: str
    created: bool
    job_id: Optional[str] = None


# ============================================================================
# EXECUTION SCHEMAS
# ============================================================================

class ExecutionResponse(BaseModel):
    id: str
    workflow_id: str
    workflow_version: int
    tenant_id: str
    status: str
    started_from: Optional[str]
    trigger_source: str
    error: Optional[str]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class NodeExecutionResponse(BaseModel):
    id: int
    node_id: str
    node_type: str
    job_id: Optional[str]
    queue_name: Optional[str]
    status: str
    attempts: int
    hop: int
    input: Optional[Dict[str, Any]]
    output: Optional[Dict[str, Any]]
    error: Optional[str]
    execution_time: Optional[float]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class NodeExecutionListResponse(BaseModel):
    execution_id: str
    nodes: List[NodeExecutionResponse]
    total: int


class JobStatusResponse(BaseModel):
    job_id: str
    status: str


# ============================================================================
# SCHEDULE SCHEMAS
# ============================================================================

class ScheduleCreate(BaseModel):
    tenant_id: str
    workflow_id: str
    node_id: Optional[str] = None
    cron: str = Field(..., description="Cron expression, e.g. '0 9 * * 1-5'")
    timezone: str = "UTC"
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def schedule(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"cron": self.cron, "timezone": self.timezone}
        if self.start_time:
            result["start_time"] = self.start_time.isoformat()
        if self.end_time:
            result["end_time"] = self.end_time.isoformat()
        return result


class ScheduleResponse(BaseModel):
    id: str
    tenant_id: str
    workflow_id: str
    node_id: str
    data: Optional[Dict[str, Any]]
    schedule: Dict[str, Any]
    status: str
    last_run: Optional[datetime]
    next_run: Optional[datetime]
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias=AliasChoices("event_metadata", "metadata"))

    model_config = ConfigDict(from_attributes=True)


class ScheduleListResponse(BaseModel):
    schedules: List[ScheduleResponse]
    total: int


# ============================================================================
# GENERIC SCHEMAS
# ============================================================================

class MessageResponse(BaseModel):
    """Generic message response"""
    message: str


class WebhookAccepted(BaseModel):
    success: bool = True
    message: str
