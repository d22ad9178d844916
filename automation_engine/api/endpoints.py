"""FastAPI REST endpoints for the automation engine."""

from datetime import datetime, timezone
from typing import Dict, List, Any, Optional
from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query, status
from pydantic import BaseModel, Field

from ..core.exceptions import WorkflowEngineError, create_error_response
from ..core.execution_engine import ExecutionEngine
from ..core.graph_manager import GraphManager
from ..core.logging import get_logger
from ..core.middleware import status_code_for_error
from ..core.scheduler import QueueScheduler
from ..core.triggers import TriggerService
from ..models.core import (
    DeliveryResult,
    Execution,
    ExecutionStatusEnum,
    InboundMessage,
    RunResult,
    SchedulerReport,
    TriggerResult,
    ValidationResult,
    Workflow,
    WorkflowDefinition,
    WorkflowSummary,
)

logger = get_logger(__name__)

# Create router
router = APIRouter(prefix="/api/v1", tags=["automation"])

# Global instances (initialized by the application factory)
_graph_manager: Optional[GraphManager] = None
_execution_engine: Optional[ExecutionEngine] = None
_scheduler: Optional[QueueScheduler] = None
_trigger_service: Optional[TriggerService] = None
_cron_secret: Optional[str] = None


def init_dependencies(
    graph_manager: GraphManager,
    execution_engine: ExecutionEngine,
    scheduler: QueueScheduler,
    trigger_service: TriggerService,
    cron_secret: Optional[str] = None,
):
    """Initialize the global dependencies."""
    global _graph_manager, _execution_engine, _scheduler, _trigger_service, _cron_secret
    _graph_manager = graph_manager
    _execution_engine = execution_engine
    _scheduler = scheduler
    _trigger_service = trigger_service
    _cron_secret = cron_secret


def _not_initialized(component: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"{component} not initialized"
    )


def get_graph_manager() -> GraphManager:
    """Dependency to get graph manager."""
    if _graph_manager is None:
        raise _not_initialized("Graph manager")
    return _graph_manager


def get_execution_engine() -> ExecutionEngine:
    """Dependency to get execution engine."""
    if _execution_engine is None:
        raise _not_initialized("Execution engine")
    return _execution_engine


def get_scheduler() -> QueueScheduler:
    """Dependency to get queue scheduler."""
    if _scheduler is None:
        raise _not_initialized("Queue scheduler")
    return _scheduler


def get_trigger_service() -> TriggerService:
    """Dependency to get trigger service."""
    if _trigger_service is None:
        raise _not_initialized("Trigger service")
    return _trigger_service


def _engine_error(e: WorkflowEngineError, action: str) -> HTTPException:
    logger.warning(f"Workflow engine error while {action}: {e.message}")
    return HTTPException(status_code=status_code_for_error(e), detail=create_error_response(e))


def _unexpected_error(e: Exception, action: str) -> HTTPException:
    logger.error(f"Unexpected error while {action}: {str(e)}", exc_info=True)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={
            "error": "InternalError",
            "message": f"An unexpected error occurred while {action}",
            "details": {"original_error": str(e)},
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
    )


# Request/Response models
class CreateWorkflowRequest(BaseModel):
    """Request model for creating a workflow."""
    name: str = Field(..., description="Workflow name")
    description: str = Field("", description="Workflow description")
    definition: Dict[str, Any] = Field(..., description="Node graph with nodes and edges")
    is_active: bool = Field(True, description="Whether the workflow accepts new runs")


class UpdateWorkflowRequest(BaseModel):
    """Request model for replacing a workflow definition."""
    definition: Dict[str, Any] = Field(..., description="Node graph with nodes and edges")
    name: Optional[str] = None
    description: Optional[str] = None


class CreateWorkflowResponse(BaseModel):
    """Response model for workflow creation."""
    workflow_id: str = Field(..., description="Identifier of the created workflow")
    message: str = Field(..., description="Success message")
    validation_warnings: List[str] = Field(default_factory=list, description="Validation warnings")


class TriggerWorkflowRequest(BaseModel):
    """Request model for starting a run."""
    context: Dict[str, Any] = Field(default_factory=dict, description="Initial context of the run")


class CancelExecutionRequest(BaseModel):
    reason: Optional[str] = Field(None, description="Appended to the cancellation message")


class ExecutionResponse(Execution):
    """Execution with its next scheduled wake time."""
    next_wake_at: Optional[datetime] = Field(None, description="When the pending wait times out")


def _execution_response(execution: Execution, engine: ExecutionEngine) -> ExecutionResponse:
    next_wake = engine.next_wake_time(execution.id) if execution.status == ExecutionStatusEnum.WAITING else None
    return ExecutionResponse(**execution.model_dump(), next_wake_at=next_wake)


# Workflows

@router.post(
    "/workflows",
    response_model=CreateWorkflowResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a workflow",
)
async def create_workflow(
    request: CreateWorkflowRequest,
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> CreateWorkflowResponse:
    """Validate and store a workflow; invalid graphs are rejected with 400."""
    try:
        validation = graph_manager.validate(request.definition)
        workflow = graph_manager.create_workflow(
            request.name,
            request.definition,
            description=request.description,
            is_active=request.is_active,
        )
        logger.info(f"Created workflow '{workflow.name}' with ID: {workflow.id}")
        return CreateWorkflowResponse(
            workflow_id=workflow.id,
            message=f"Workflow '{workflow.name}' created successfully",
            validation_warnings=validation.warnings,
        )
    except WorkflowEngineError as e:
        raise _engine_error(e, "creating the workflow")
    except Exception as e:
        raise _unexpected_error(e, "creating the workflow")


@router.get("/workflows", response_model=List[WorkflowSummary], summary="List workflows")
async def list_workflows(
    active_only: bool = Query(False, description="Only list active workflows"),
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> List[WorkflowSummary]:
    try:
        return graph_manager.list_workflows(active_only=active_only)
    except WorkflowEngineError as e:
        raise _engine_error(e, "listing workflows")


@router.post("/workflows/validate", response_model=ValidationResult, summary="Validate a definition")
async def validate_workflow(
    definition: Dict[str, Any] = Body(..., description="Node graph to validate"),
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> ValidationResult:
    """Check a definition without storing it."""
    return graph_manager.validate(definition)


@router.get("/workflows/{workflow_id}", response_model=Workflow, summary="Get a workflow")
async def get_workflow(
    workflow_id: str,
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> Workflow:
    try:
        return graph_manager.get_workflow(workflow_id)
    except WorkflowEngineError as e:
        raise _engine_error(e, "fetching the workflow")


@router.put("/workflows/{workflow_id}", response_model=Workflow, summary="Replace a workflow definition")
async def update_workflow(
    workflow_id: str,
    request: UpdateWorkflowRequest,
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> Workflow:
    """Waiting runs pick up the new definition when they resume."""
    try:
        return graph_manager.update_workflow(
            workflow_id, request.definition, name=request.name, description=request.description
        )
    except WorkflowEngineError as e:
        raise _engine_error(e, "updating the workflow")


@router.delete("/workflows/{workflow_id}", summary="Delete a workflow and its runs")
async def delete_workflow(
    workflow_id: str,
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> Dict[str, str]:
    try:
        deleted = graph_manager.delete_workflow(workflow_id)
    except WorkflowEngineError as e:
        raise _engine_error(e, "deleting the workflow")
    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "NotFound", "message": f"Workflow {workflow_id} not found"}
        )
    return {"message": f"Workflow {workflow_id} deleted"}


@router.post("/workflows/{workflow_id}/activate", response_model=Workflow, summary="Activate a workflow")
async def activate_workflow(
    workflow_id: str,
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> Workflow:
    try:
        return graph_manager.set_active(workflow_id, True)
    except WorkflowEngineError as e:
        raise _engine_error(e, "activating the workflow")


@router.post("/workflows/{workflow_id}/deactivate", response_model=Workflow, summary="Deactivate a workflow")
async def deactivate_workflow(
    workflow_id: str,
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> Workflow:
    """New runs are refused; waiting runs are cancelled when they next resume."""
    try:
        return graph_manager.set_active(workflow_id, False)
    except WorkflowEngineError as e:
        raise _engine_error(e, "deactivating the workflow")


@router.post(
    "/workflows/{workflow_id}/trigger",
    response_model=RunResult,
    status_code=status.HTTP_201_CREATED,
    summary="Start a run",
)
async def trigger_workflow(
    workflow_id: str,
    request: Optional[TriggerWorkflowRequest] = None,
    trigger_service: TriggerService = Depends(get_trigger_service)
) -> RunResult:
    """Start a run and execute it until it completes, fails or waits."""
    try:
        context = request.context if request else {}
        return trigger_service.on_external_event(workflow_id, context)
    except WorkflowEngineError as e:
        raise _engine_error(e, "starting the workflow")
    except Exception as e:
        raise _unexpected_error(e, "starting the workflow")


# Executions

@router.get("/executions", response_model=List[ExecutionResponse], summary="List executions")
async def list_executions(
    workflow_id: Optional[str] = Query(None),
    execution_status: Optional[ExecutionStatusEnum] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> List[ExecutionResponse]:
    try:
        executions = engine.store.list_executions(workflow_id=workflow_id, status=execution_status, limit=limit)
        return [_execution_response(execution, engine) for execution in executions]
    except WorkflowEngineError as e:
        raise _engine_error(e, "listing executions")


@router.get("/executions/{execution_id}", response_model=ExecutionResponse, summary="Get an execution")
async def get_execution(
    execution_id: str,
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> ExecutionResponse:
    try:
        return _execution_response(engine.store.load_execution(execution_id), engine)
    except WorkflowEngineError as e:
        raise _engine_error(e, "fetching the execution")


@router.post(
    "/executions/{execution_id}/input",
    response_model=DeliveryResult,
    summary="Deliver a reply to a waiting execution",
)
async def deliver_input(
    execution_id: str,
    message: InboundMessage,
    scheduler: QueueScheduler = Depends(get_scheduler)
) -> DeliveryResult:
    """A reply that does not match the wait is reported with ``accepted: false``."""
    try:
        return scheduler.deliver_input(execution_id, message)
    except WorkflowEngineError as e:
        raise _engine_error(e, "delivering input")
    except Exception as e:
        raise _unexpected_error(e, "delivering input")


@router.post(
    "/executions/{execution_id}/cancel",
    response_model=ExecutionResponse,
    summary="Cancel a waiting execution",
)
async def cancel_execution(
    execution_id: str,
    request: Optional[CancelExecutionRequest] = None,
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> ExecutionResponse:
    try:
        cancelled = engine.cancel(execution_id, reason=request.reason if request else None)
        return _execution_response(cancelled, engine)
    except WorkflowEngineError as e:
        raise _engine_error(e, "cancelling the execution")


# Queue and inbound messages

@router.post("/queue/process", response_model=SchedulerReport, summary="Run one scheduler pass")
async def process_queue(
    authorization: Optional[str] = Header(None),
    scheduler: QueueScheduler = Depends(get_scheduler)
) -> SchedulerReport:
    """Entry point for an external cron; guarded by the cron secret when one is set."""
    if _cron_secret and authorization != f"Bearer {_cron_secret}":
        logger.warning("Rejected queue processing request with a bad cron secret")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "Unauthorized", "message": "Invalid cron secret"}
        )
    return scheduler.run_once()


@router.post("/messages/inbound", response_model=TriggerResult, summary="Evaluate an inbound message")
async def inbound_message(
    message: InboundMessage,
    trigger_service: TriggerService = Depends(get_trigger_service)
) -> TriggerResult:
    """Resume waiting runs of the conversation or start workflows whose trigger matches."""
    try:
        return trigger_service.evaluate_message(message)
    except WorkflowEngineError as e:
        raise _engine_error(e, "evaluating the inbound message")
    except Exception as e:
        raise _unexpected_error(e, "evaluating the inbound message")
