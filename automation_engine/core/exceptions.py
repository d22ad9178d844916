"""Exception hierarchy for the automation engine.

Every engine error carries a category, a severity and a ``recoverable``
flag. The retry helpers and the HTTP layer read those instead of matching
on message text.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    VALIDATION = "validation"
    EXECUTION = "execution"
    STORAGE = "storage"
    NETWORK = "network"
    CONFIGURATION = "configuration"
    BUSINESS_LOGIC = "business_logic"


class ValidationErrorKind(str, Enum):
    """Structural problems a workflow definition can have."""
    EMPTY_GRAPH = "empty_graph"
    MISSING_TRIGGER = "missing_trigger"
    MULTIPLE_TRIGGERS = "multiple_triggers"
    DUPLICATE_NODE_ID = "duplicate_node_id"
    DANGLING_EDGE = "dangling_edge"
    UNREACHABLE_NODE = "unreachable_node"
    MALFORMED_DEFINITION = "malformed_definition"


class WorkflowEngineError(Exception):
    """Base exception for all automation engine errors.

    Subclasses set the class-level defaults and list in ``context_keys`` the
    keyword arguments that identify the failing record (``execution_id``,
    ``capability`` and so on). Those land in ``context``; ``details`` holds
    data about the failure itself.
    """

    severity = ErrorSeverity.MEDIUM
    category = ErrorCategory.EXECUTION
    recoverable = False
    retry_after: Optional[int] = None
    context_keys: tuple = ()

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
        recoverable: Optional[bool] = None,
        retry_after: Optional[int] = None,
        **identifiers
    ):
        unknown = set(identifiers) - set(self.context_keys)
        if unknown:
            raise TypeError(f"{type(self).__name__} got unexpected arguments: {sorted(unknown)}")

        super().__init__(message)
        self.message = message
        self.error_code = error_code or type(self).__name__
        self.details = dict(details or {})
        self.context = dict(context or {})
        self.context.update((k, v) for k, v in identifiers.items() if v is not None)
        if recoverable is not None:
            self.recoverable = recoverable
        if retry_after is not None:
            self.retry_after = retry_after
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "retry_after": self.retry_after,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }

    def add_context(self, **kwargs):
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        self.details.update(kwargs)
        return self


class GraphValidationError(WorkflowEngineError):
    """A workflow definition is structurally invalid.

    ``kind`` names the first problem found; every problem is listed in
    ``validation_errors``.
    """

    category = ErrorCategory.VALIDATION
    context_keys = ("workflow_id", "node_id")

    def __init__(
        self,
        message: str,
        kind: ValidationErrorKind = ValidationErrorKind.MALFORMED_DEFINITION,
        validation_errors: Optional[List[str]] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.kind = ValidationErrorKind(kind)
        self.validation_errors = validation_errors or [message]
        self.add_details(kind=self.kind.value, validation_errors=self.validation_errors)


class CapabilityError(WorkflowEngineError):
    """An external capability call failed or was refused."""

    severity = ErrorSeverity.HIGH
    category = ErrorCategory.NETWORK
    context_keys = ("capability", "node_id")


class ExecutionEngineError(WorkflowEngineError):
    severity = ErrorSeverity.HIGH
    context_keys = ("execution_id", "workflow_id")


class ExecutionStateError(ExecutionEngineError):
    """An execution was asked to make an illegal transition."""

    category = ErrorCategory.BUSINESS_LOGIC

    def __init__(self, message: str, current_status: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        if current_status:
            self.add_details(current_status=current_status)


class StorageError(WorkflowEngineError):
    """A database operation failed; retried by default."""

    severity = ErrorSeverity.HIGH
    category = ErrorCategory.STORAGE
    recoverable = True
    retry_after = 3
    context_keys = ("operation", "table")


class RecordNotFoundError(StorageError):
    """A workflow, execution or queue item does not exist."""

    recoverable = False
    retry_after = None
    context_keys = StorageError.context_keys + ("record_type", "record_id")


class QueueConflictError(StorageError):
    """An execution would get a second outstanding queue item."""

    recoverable = False
    retry_after = None
    context_keys = StorageError.context_keys + ("execution_id",)


class TransientError(WorkflowEngineError):
    """A temporary failure worth retrying."""

    category = ErrorCategory.NETWORK
    recoverable = True
    retry_after = 5


class ConfigurationError(WorkflowEngineError):
    severity = ErrorSeverity.HIGH
    category = ErrorCategory.CONFIGURATION
    context_keys = ("config_key",)


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Body returned to API clients for an engine error."""
    summary = error.to_dict()
    return {
        "error": summary.pop("error_code"),
        "message": summary.pop("message"),
        "details": {**summary.pop("details"), **{k: v for k, v in summary.items() if k != "context"}},
        "context": error.context,
    }
