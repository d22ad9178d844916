"""Core workflow engine components."""

from .exceptions import (
    WorkflowEngineError,
    GraphValidationError,
    CapabilityError,
    ExecutionEngineError,
    ExecutionStateError,
    StorageError,
    RecordNotFoundError,
    QueueConflictError,
    ConfigurationError,
)
from .logging import setup_logging, get_logger

__all__ = [
    "WorkflowEngineError",
    "GraphValidationError",
    "CapabilityError",
    "ExecutionEngineError",
    "ExecutionStateError",
    "StorageError",
    "RecordNotFoundError",
    "QueueConflictError",
    "ConfigurationError",
    "setup_logging",
    "get_logger",
]
