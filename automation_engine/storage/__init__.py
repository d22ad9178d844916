"""Database models and storage layer."""

from .database import Base, create_tables, drop_tables
from .models import WorkflowModel, ExecutionModel, QueueItemModel
from .store import ExecutionStore
from .sql_store import SQLExecutionStore

__all__ = [
    "Base",
    "create_tables",
    "drop_tables",
    "WorkflowModel",
    "ExecutionModel",
    "QueueItemModel",
    "ExecutionStore",
    "SQLExecutionStore",
]
