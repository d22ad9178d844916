"""Data models for the automation engine."""

from .core import (
    NodeType,
    ExecutionStatusEnum,
    QueueItemStatus,
    RunOutcome,
    ValidationResult,
    Node,
    Edge,
    WorkflowDefinition,
    Workflow,
    WorkflowSummary,
    Execution,
    QueueItem,
    RunResult,
    InboundMessage,
    SchedulerReport,
    DeliveryResult,
    TriggerResult,
)

__all__ = [
    "NodeType",
    "ExecutionStatusEnum",
    "QueueItemStatus",
    "RunOutcome",
    "ValidationResult",
    "Node",
    "Edge",
    "WorkflowDefinition",
    "Workflow",
    "WorkflowSummary",
    "Execution",
    "QueueItem",
    "RunResult",
    "InboundMessage",
    "SchedulerReport",
    "DeliveryResult",
    "TriggerResult",
]
