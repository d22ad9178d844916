"""Persistence contract used by the engine, scheduler and API."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..models.core import (
    Execution,
    ExecutionStatusEnum,
    QueueItem,
    QueueItemStatus,
    Workflow,
    WorkflowDefinition,
)


class ExecutionStore(ABC):
    """Durable storage for workflows, executions and queue items.

    Implementations must make ``claim_due_pending`` and ``claim_queue_item``
    atomic: an item moves from pending to processing for exactly one caller.
    """

    # Workflows

    @abstractmethod
    def save_workflow(self, workflow: Workflow) -> Workflow:
        """Insert or replace a workflow."""

    @abstractmethod
    def get_workflow(self, workflow_id: str) -> Workflow:
        """Raise RecordNotFoundError when missing."""

    def get_definition(self, workflow_id: str) -> WorkflowDefinition:
        return self.get_workflow(workflow_id).definition

    @abstractmethod
    def list_workflows(self, active_only: bool = False) -> List[Workflow]:
        pass

    @abstractmethod
    def delete_workflow(self, workflow_id: str) -> bool:
        pass

    @abstractmethod
    def set_workflow_active(self, workflow_id: str, active: bool) -> Workflow:
        pass

    # Executions

    @abstractmethod
    def create_execution(self, workflow_id: str, context: Dict[str, Any],
                         step_id: Optional[str] = None) -> Execution:
        """Create a running execution positioned at ``step_id``."""

    @abstractmethod
    def load_execution(self, execution_id: str) -> Execution:
        """Raise RecordNotFoundError when missing."""

    @abstractmethod
    def save_execution(self, execution: Execution) -> Execution:
        pass

    @abstractmethod
    def list_executions(self, workflow_id: Optional[str] = None,
                        status: Optional[ExecutionStatusEnum] = None,
                        limit: int = 100) -> List[Execution]:
        pass

    @abstractmethod
    def list_waiting_in_conversation(self, conversation_id: str, limit: int = 100) -> List[Execution]:
        """Waiting executions whose context belongs to ``conversation_id``, oldest first."""
        pass

    # Queue

    @abstractmethod
    def enqueue_resume(self, execution_id: str, step_id: str,
                       resume_at: Optional[datetime]) -> QueueItem:
        """Create a pending item; raise QueueConflictError if one is outstanding."""

    @abstractmethod
    def persist_suspension(self, execution: Execution, step_id: str,
                           resume_at: Optional[datetime],
                           supersedes: Optional[str] = None) -> QueueItem:
        """Save a waiting execution and its new queue item in one transaction.

        ``supersedes`` is the item that woke the run; it is completed in the
        same transaction so the execution never has two outstanding items.
        """

    @abstractmethod
    def claim_due_pending(self, now: datetime, limit: int) -> List[QueueItem]:
        """Claim up to ``limit`` pending items due at ``now``, oldest first."""

    @abstractmethod
    def claim_queue_item(self, item_id: str, now: datetime) -> Optional[QueueItem]:
        """Claim one item; None when it is no longer pending."""

    @abstractmethod
    def mark_queue_item(self, item_id: str, status: QueueItemStatus,
                        error_message: Optional[str] = None,
                        now: Optional[datetime] = None) -> None:
        pass

    @abstractmethod
    def get_queue_item(self, item_id: str) -> QueueItem:
        pass

    @abstractmethod
    def get_outstanding_queue_item(self, execution_id: str) -> Optional[QueueItem]:
        """The pending or processing item of an execution, if any."""

    @abstractmethod
    def delete_pending_queue_items(self, execution_id: str) -> int:
        pass

    @abstractmethod
    def reset_stale_claims(self, claimed_before: datetime) -> int:
        """Return processing items claimed before ``claimed_before`` to pending."""

    def ping(self) -> None:
        """Raise StorageError when the backing store is unreachable."""
