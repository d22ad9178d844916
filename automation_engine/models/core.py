"""Core Pydantic models for the automation engine."""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class NodeType(str, Enum):
    """Closed set of node types the dispatcher knows how to run."""
    TRIGGER = "trigger"
    ACTION = "action"
    BUTTONS = "buttons"
    WAIT_INPUT = "wait_input"
    WAIT = "wait"
    CONDITION = "condition"
    AB_TEST = "ab_test"
    CRM = "crm"
    EMAIL = "email"
    SMS = "sms"
    HTTP = "http"
    BILLING = "billing"
    NOTIFICATION = "notification"
    AI_AGENT = "ai_agent"
    VARIABLE = "variable"


# Legacy names still produced by older editors.
NODE_TYPE_ALIASES = {"delay": NodeType.WAIT.value}


class ExecutionStatusEnum(str, Enum):
    """Lifecycle of one workflow run."""
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueItemStatus(str, Enum):
    """Lifecycle of one scheduled resumption."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class RunOutcome(str, Enum):
    """How a call into the engine ended."""
    COMPLETED = "completed"
    SUSPENDED = "suspended"
    FAILED = "failed"
    SKIPPED = "skipped"


class ValidationResult(BaseModel):
    """Result of workflow validation."""
    is_valid: bool = Field(..., description="Whether the workflow is valid")
    errors: List[str] = Field(default_factory=list, description="List of validation errors")
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")
    error_kind: Optional[str] = Field(None, description="Kind of the first validation error")


class Node(BaseModel):
    """A single step in a workflow graph."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Unique identifier for the node")
    type: NodeType = Field(..., description="Node type")
    label: str = Field("", description="Display label, never used for routing")
    config: Dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("config", "data"),
        description="Type-specific configuration",
    )

    @field_validator('id')
    @classmethod
    def validate_id_format(cls, id_value):
        """Ensure node ID is a non-empty token."""
        if not id_value or not id_value.strip():
            raise ValueError("Node ID cannot be empty")
        if not re.match(r'^[A-Za-z0-9_.:-]+$', id_value.strip()):
            raise ValueError(f"Node ID '{id_value}' contains invalid characters")
        return id_value.strip()

    @field_validator('type', mode='before')
    @classmethod
    def resolve_type_alias(cls, value):
        if isinstance(value, str):
            normalized = value.strip().lower()
            return NODE_TYPE_ALIASES.get(normalized, normalized)
        return value

    @field_validator('config', mode='before')
    @classmethod
    def default_config(cls, value):
        return value if value is not None else {}


class Edge(BaseModel):
    """A directed connection between two nodes."""
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = Field(None, description="Edge identifier")
    source: str = Field(..., description="Source node ID")
    target: str = Field(..., description="Target node ID")
    source_handle: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("source_handle", "sourceHandle"),
        description="Exit discriminator on the source node; empty means the default exit",
    )
    label: Optional[str] = Field(None, description="Display label")

    @field_validator('source', 'target')
    @classmethod
    def validate_node_ids(cls, node_id):
        if not node_id or not node_id.strip():
            raise ValueError("Edge endpoints cannot be empty")
        return node_id.strip()

    @field_validator('source_handle', mode='before')
    @classmethod
    def normalize_handle(cls, handle):
        if handle is None:
            return None
        handle = str(handle).strip()
        return handle or None


class WorkflowDefinition(BaseModel):
    """Node graph of a workflow; structural checks live in ``load_graph``."""
    nodes: List[Node] = Field(default_factory=list, description="Ordered list of nodes")
    edges: List[Edge] = Field(default_factory=list, description="Edges between nodes")


class Workflow(BaseModel):
    """A stored workflow definition."""
    id: str = Field(..., description="Workflow ID")
    name: str = Field(..., description="Workflow name")
    description: str = Field("", description="Workflow description")
    definition: WorkflowDefinition = Field(..., description="Node graph")
    is_active: bool = Field(True, description="Whether new runs may start and waiting runs may resume")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class WorkflowSummary(BaseModel):
    """Summary information about a stored workflow."""
    id: str = Field(..., description="Workflow ID")
    name: str = Field(..., description="Workflow name")
    description: str = Field("", description="Workflow description")
    is_active: bool = Field(..., description="Whether the workflow is active")
    trigger_type: Optional[str] = Field(None, description="Trigger type configured on the trigger node")
    node_count: int = Field(..., description="Number of nodes in the workflow")
    created_at: datetime = Field(..., description="Creation timestamp")


class Execution(BaseModel):
    """One run of a workflow."""
    id: str = Field(..., description="Execution ID")
    workflow_id: str = Field(..., description="ID of the workflow being run")
    context: Dict[str, Any] = Field(default_factory=dict, description="Variable bag of the run")
    status: ExecutionStatusEnum = Field(ExecutionStatusEnum.RUNNING, description="Current status")
    current_step_id: Optional[str] = Field(None, description="Node to run next, or the node waiting")
    execution_path: List[str] = Field(default_factory=list, description="Node IDs in the order they ran")
    error_message: Optional[str] = Field(None, description="Reason the run failed")
    started_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (ExecutionStatusEnum.COMPLETED, ExecutionStatusEnum.FAILED)


class QueueItem(BaseModel):
    """A scheduled resumption of a waiting execution."""
    id: str = Field(..., description="Queue item ID")
    execution_id: str = Field(..., description="Execution to resume")
    step_id: str = Field(..., description="Node to resume at")
    resume_at: Optional[datetime] = Field(None, description="When the wait times out; empty waits for input only")
    status: QueueItemStatus = Field(QueueItemStatus.PENDING, description="Current status")
    error_message: Optional[str] = None
    attempts: int = Field(0, description="Number of times the item was claimed")
    created_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class RunResult(BaseModel):
    """What happened during one start or resume call."""
    execution_id: Optional[str] = Field(None, description="Execution that ran")
    outcome: RunOutcome = Field(..., description="How the call ended")
    status: Optional[ExecutionStatusEnum] = Field(None, description="Persisted execution status afterwards")
    current_step_id: Optional[str] = None
    resume_at: Optional[datetime] = Field(None, description="Next wake time when suspended")
    error_message: Optional[str] = None
    steps_executed: int = 0


class InboundMessage(BaseModel):
    """A reply or event arriving from a message channel."""
    model_config = ConfigDict(populate_by_name=True)

    type: str = Field("text", description="Message type: text, interactive, button_reply, image, location, audio, voice")
    content: str = Field("", description="Text content or the title of the pressed button")
    button_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("button_id", "buttonId"),
        description="ID of the pressed button",
    )
    conversation_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("conversation_id", "conversationId")
    )
    sender: Optional[str] = None
    channel: Optional[str] = None
    lead_id: Optional[str] = Field(None, validation_alias=AliasChoices("lead_id", "leadId"))
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SchedulerReport(BaseModel):
    """Summary of one scheduler pass."""
    processed: int = 0
    completed: int = 0
    suspended: int = 0
    failed: int = 0
    skipped: int = 0
    reset_stale: int = 0
    errors: List[str] = Field(default_factory=list)
    duration_ms: float = 0.0


class DeliveryResult(BaseModel):
    """Result of routing an inbound reply to a waiting execution."""
    execution_id: str
    accepted: bool = Field(..., description="Whether the reply matched the wait")
    reason: Optional[str] = Field(None, description="Why the reply was not accepted")
    run: Optional[RunResult] = None


class TriggerResult(BaseModel):
    """Executions touched by one inbound message."""
    delivered: List[DeliveryResult] = Field(default_factory=list)
    started: List[RunResult] = Field(default_factory=list)
