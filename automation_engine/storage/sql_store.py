"""SQLAlchemy implementation of the execution store."""

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, delete, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..core.clock import Clock, utc_now
from ..core.error_recovery import RetryConfig, with_retry
from ..core.exceptions import QueueConflictError, RecordNotFoundError, StorageError
from ..core.logging import get_logger
from ..models.core import (
    Execution,
    ExecutionStatusEnum,
    QueueItem,
    QueueItemStatus,
    Workflow,
    WorkflowDefinition,
)
from .database import get_session_factory
from .models import ExecutionModel, QueueItemModel, WorkflowModel
from .store import ExecutionStore

logger = get_logger(__name__)

READ_RETRY = RetryConfig(max_attempts=3, base_delay=0.2, max_delay=2.0)

OUTSTANDING = (QueueItemStatus.PENDING.value, QueueItemStatus.PROCESSING.value)


def _to_workflow(row: WorkflowModel) -> Workflow:
    return Workflow(
        id=row.id,
        name=row.name,
        description=row.description or "",
        definition=WorkflowDefinition.model_validate(row.definition or {}),
        is_active=bool(row.is_active),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_execution(row: ExecutionModel) -> Execution:
    return Execution(
        id=row.id,
        workflow_id=row.workflow_id,
        context=dict(row.context or {}),
        status=ExecutionStatusEnum(row.status),
        current_step_id=row.current_step_id,
        execution_path=list(row.execution_path or []),
        error_message=row.error_message,
        started_at=row.started_at,
        updated_at=row.updated_at,
        completed_at=row.completed_at,
    )


def _to_queue_item(row: QueueItemModel) -> QueueItem:
    return QueueItem(
        id=row.id,
        execution_id=row.execution_id,
        step_id=row.step_id,
        resume_at=row.resume_at,
        status=QueueItemStatus(row.status),
        error_message=row.error_message,
        attempts=row.attempts or 0,
        created_at=row.created_at,
        claimed_at=row.claimed_at,
        completed_at=row.completed_at,
    )


class SQLExecutionStore(ExecutionStore):
    """Execution store backed by a SQLAlchemy session factory."""

    def __init__(self, session_factory: Optional[sessionmaker] = None, clock: Clock = utc_now):
        self._session_factory = session_factory or get_session_factory()
        self._clock = clock

    @contextmanager
    def _session(self, operation: str, table: Optional[str] = None):
        """Yield a session, commit on success and map driver errors to StorageError."""
        db: Session = self._session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error during {operation}: {str(e)}")
            raise StorageError(
                f"Database error during {operation}: {str(e)}",
                operation=operation,
                table=table
            )
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # Workflows

    def save_workflow(self, workflow: Workflow) -> Workflow:
        with self._session("save_workflow", "workflows") as db:
            row = db.get(WorkflowModel, workflow.id)
            definition = workflow.definition.model_dump(mode="json")
            if row is None:
                row = WorkflowModel(
                    id=workflow.id,
                    name=workflow.name,
                    description=workflow.description,
                    definition=definition,
                    is_active=workflow.is_active,
                    created_at=workflow.created_at or self._clock(),
                    updated_at=self._clock(),
                )
                db.add(row)
            else:
                row.name = workflow.name
                row.description = workflow.description
                row.definition = definition
                row.is_active = workflow.is_active
                row.updated_at = self._clock()
            db.flush()
            saved = _to_workflow(row)
        logger.info(f"Saved workflow {workflow.id} ({workflow.name})")
        return saved

    @with_retry(READ_RETRY)
    def get_workflow(self, workflow_id: str) -> Workflow:
        with self._session("get_workflow", "workflows") as db:
            row = db.get(WorkflowModel, workflow_id)
            if row is None:
                raise RecordNotFoundError(
                    f"Workflow {workflow_id} not found",
                    record_type="workflow",
                    record_id=workflow_id,
                    operation="get_workflow"
                )
            return _to_workflow(row)

    @with_retry(READ_RETRY)
    def list_workflows(self, active_only: bool = False) -> List[Workflow]:
        with self._session("list_workflows", "workflows") as db:
            query = select(WorkflowModel).order_by(WorkflowModel.created_at.desc())
            if active_only:
                query = query.where(WorkflowModel.is_active.is_(True))
            return [_to_workflow(row) for row in db.scalars(query)]

    def delete_workflow(self, workflow_id: str) -> bool:
        with self._session("delete_workflow", "workflows") as db:
            row = db.get(WorkflowModel, workflow_id)
            if row is None:
                return False
            execution_ids = select(ExecutionModel.id).where(ExecutionModel.workflow_id == workflow_id)
            db.execute(delete(QueueItemModel).where(QueueItemModel.execution_id.in_(execution_ids)))
            db.execute(delete(ExecutionModel).where(ExecutionModel.workflow_id == workflow_id))
            db.delete(row)
        logger.info(f"Deleted workflow {workflow_id}")
        return True

    def set_workflow_active(self, workflow_id: str, active: bool) -> Workflow:
        with self._session("set_workflow_active", "workflows") as db:
            row = db.get(WorkflowModel, workflow_id)
            if row is None:
                raise RecordNotFoundError(
                    f"Workflow {workflow_id} not found",
                    record_type="workflow",
                    record_id=workflow_id,
                    operation="set_workflow_active"
                )
            row.is_active = active
            row.updated_at = self._clock()
            db.flush()
            return _to_workflow(row)

    # Executions

    def create_execution(self, workflow_id: str, context: Dict[str, Any],
                         step_id: Optional[str] = None) -> Execution:
        now = self._clock()
        with self._session("create_execution", "executions") as db:
            row = ExecutionModel(
                id=str(uuid.uuid4()),
                workflow_id=workflow_id,
                status=ExecutionStatusEnum.RUNNING.value,
                context=dict(context or {}),
                current_step_id=step_id,
                execution_path=[],
                started_at=now,
                updated_at=now,
            )
            db.add(row)
            db.flush()
            return _to_execution(row)

    @with_retry(READ_RETRY)
    def load_execution(self, execution_id: str) -> Execution:
        with self._session("load_execution", "executions") as db:
            row = db.get(ExecutionModel, execution_id)
            if row is None:
                raise RecordNotFoundError(
                    f"Execution {execution_id} not found",
                    record_type="execution",
                    record_id=execution_id,
                    operation="load_execution"
                )
            return _to_execution(row)

    def _write_execution(self, db: Session, execution: Execution) -> ExecutionModel:
        row = db.get(ExecutionModel, execution.id)
        if row is None:
            raise RecordNotFoundError(
                f"Execution {execution.id} not found",
                record_type="execution",
                record_id=execution.id,
                operation="save_execution"
            )
        row.status = execution.status.value
        row.context = dict(execution.context)
        row.current_step_id = execution.current_step_id
        row.execution_path = list(execution.execution_path)
        row.error_message = execution.error_message
        row.completed_at = execution.completed_at
        row.updated_at = self._clock()
        return row

    def save_execution(self, execution: Execution) -> Execution:
        with self._session("save_execution", "executions") as db:
            row = self._write_execution(db, execution)
            db.flush()
            return _to_execution(row)

    @with_retry(READ_RETRY)
    def list_executions(self, workflow_id: Optional[str] = None,
                        status: Optional[ExecutionStatusEnum] = None,
                        limit: int = 100) -> List[Execution]:
        with self._session("list_executions", "executions") as db:
            query = select(ExecutionModel).order_by(ExecutionModel.started_at.desc()).limit(limit)
            if workflow_id:
                query = query.where(ExecutionModel.workflow_id == workflow_id)
            if status:
                query = query.where(ExecutionModel.status == ExecutionStatusEnum(status).value)
            return [_to_execution(row) for row in db.scalars(query)]

    @with_retry(READ_RETRY)
    def list_waiting_in_conversation(self, conversation_id: str, limit: int = 100) -> List[Execution]:
        with self._session("list_waiting_in_conversation", "executions") as db:
            query = (
                select(ExecutionModel)
                .where(
                    ExecutionModel.status == ExecutionStatusEnum.WAITING.value,
                    ExecutionModel.context[("conversation", "id")].as_string() == conversation_id,
                )
                .order_by(ExecutionModel.started_at.asc())
                .limit(limit)
            )
            return [_to_execution(row) for row in db.scalars(query)]

    # Queue

    def _ensure_no_outstanding(self, db: Session, execution_id: str, ignore: Optional[str] = None):
        query = select(QueueItemModel.id).where(
            QueueItemModel.execution_id == execution_id,
            QueueItemModel.status.in_(OUTSTANDING),
        )
        if ignore:
            query = query.where(QueueItemModel.id != ignore)
        existing = db.scalars(query).first()
        if existing:
            raise QueueConflictError(
                f"Execution {execution_id} already has outstanding queue item {existing}",
                execution_id=execution_id,
                operation="enqueue_resume"
            )

    def _insert_item(self, db: Session, execution_id: str, step_id: str,
                     resume_at: Optional[datetime]) -> QueueItemModel:
        row = QueueItemModel(
            id=str(uuid.uuid4()),
            execution_id=execution_id,
            step_id=step_id,
            resume_at=resume_at,
            status=QueueItemStatus.PENDING.value,
            attempts=0,
            created_at=self._clock(),
        )
        db.add(row)
        db.flush()
        return row

    def enqueue_resume(self, execution_id: str, step_id: str,
                       resume_at: Optional[datetime]) -> QueueItem:
        with self._session("enqueue_resume", "queue_items") as db:
            self._ensure_no_outstanding(db, execution_id)
            row = self._insert_item(db, execution_id, step_id, resume_at)
            return _to_queue_item(row)

    def persist_suspension(self, execution: Execution, step_id: str,
                           resume_at: Optional[datetime],
                           supersedes: Optional[str] = None) -> QueueItem:
        with self._session("persist_suspension", "queue_items") as db:
            self._write_execution(db, execution)
            if supersedes:
                db.execute(
                    update(QueueItemModel)
                    .where(QueueItemModel.id == supersedes)
                    .values(status=QueueItemStatus.COMPLETED.value, completed_at=self._clock())
                )
            self._ensure_no_outstanding(db, execution.id)
            row = self._insert_item(db, execution.id, step_id, resume_at)
            return _to_queue_item(row)

    def _claim(self, db: Session, item_id: str, now: datetime) -> bool:
        result = db.execute(
            update(QueueItemModel)
            .where(and_(
                QueueItemModel.id == item_id,
                QueueItemModel.status == QueueItemStatus.PENDING.value,
            ))
            .values(
                status=QueueItemStatus.PROCESSING.value,
                claimed_at=now,
                attempts=QueueItemModel.attempts + 1,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def claim_due_pending(self, now: datetime, limit: int) -> List[QueueItem]:
        with self._session("claim_due_pending", "queue_items") as db:
            candidates = db.scalars(
                select(QueueItemModel.id)
                .where(
                    QueueItemModel.status == QueueItemStatus.PENDING.value,
                    QueueItemModel.resume_at.is_not(None),
                    QueueItemModel.resume_at <= now,
                )
                .order_by(QueueItemModel.resume_at.asc(), QueueItemModel.created_at.asc())
                .limit(limit)
            ).all()

            claimed_ids = [item_id for item_id in candidates if self._claim(db, item_id, now)]
            if len(claimed_ids) < len(candidates):
                logger.info(f"Skipped {len(candidates) - len(claimed_ids)} items claimed elsewhere")

            if not claimed_ids:
                return []
            rows = db.scalars(
                select(QueueItemModel)
                .where(QueueItemModel.id.in_(claimed_ids))
                .order_by(QueueItemModel.resume_at.asc(), QueueItemModel.created_at.asc())
            ).all()
            return [_to_queue_item(row) for row in rows]

    def claim_queue_item(self, item_id: str, now: datetime) -> Optional[QueueItem]:
        with self._session("claim_queue_item", "queue_items") as db:
            if not self._claim(db, item_id, now):
                return None
            row = db.get(QueueItemModel, item_id, populate_existing=True)
            return _to_queue_item(row)

    def mark_queue_item(self, item_id: str, status: QueueItemStatus,
                        error_message: Optional[str] = None,
                        now: Optional[datetime] = None) -> None:
        status = QueueItemStatus(status)
        values: Dict[str, Any] = {"status": status.value, "error_message": error_message}
        if status in (QueueItemStatus.COMPLETED, QueueItemStatus.FAILED):
            values["completed_at"] = now or self._clock()
        with self._session("mark_queue_item", "queue_items") as db:
            db.execute(update(QueueItemModel).where(QueueItemModel.id == item_id).values(**values))

    @with_retry(READ_RETRY)
    def get_queue_item(self, item_id: str) -> QueueItem:
        with self._session("get_queue_item", "queue_items") as db:
            row = db.get(QueueItemModel, item_id)
            if row is None:
                raise RecordNotFoundError(
                    f"Queue item {item_id} not found",
                    record_type="queue_item",
                    record_id=item_id,
                    operation="get_queue_item"
                )
            return _to_queue_item(row)

    @with_retry(READ_RETRY)
    def get_outstanding_queue_item(self, execution_id: str) -> Optional[QueueItem]:
        with self._session("get_outstanding_queue_item", "queue_items") as db:
            row = db.scalars(
                select(QueueItemModel)
                .where(
                    QueueItemModel.execution_id == execution_id,
                    QueueItemModel.status.in_(OUTSTANDING),
                )
                .order_by(QueueItemModel.created_at.desc())
            ).first()
            return _to_queue_item(row) if row else None

    def delete_pending_queue_items(self, execution_id: str) -> int:
        with self._session("delete_pending_queue_items", "queue_items") as db:
            result = db.execute(
                delete(QueueItemModel).where(
                    QueueItemModel.execution_id == execution_id,
                    QueueItemModel.status == QueueItemStatus.PENDING.value,
                )
            )
            return result.rowcount or 0

    def reset_stale_claims(self, claimed_before: datetime) -> int:
        with self._session("reset_stale_claims", "queue_items") as db:
            result = db.execute(
                update(QueueItemModel)
                .where(
                    QueueItemModel.status == QueueItemStatus.PROCESSING.value,
                    QueueItemModel.claimed_at < claimed_before,
                )
                .values(status=QueueItemStatus.PENDING.value, claimed_at=None)
            )
            count = result.rowcount or 0
        if count:
            logger.warning(f"Reset {count} stale queue claims")
        return count

    def ping(self) -> None:
        with self._session("ping") as db:
            db.execute(text("SELECT 1"))
