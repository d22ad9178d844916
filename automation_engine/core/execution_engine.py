"""Execution engine: walks a workflow graph and persists suspensions."""

import random
from typing import Any, Dict, Optional

from ..models.core import (
    Execution,
    ExecutionStatusEnum,
    InboundMessage,
    NodeType,
    QueueItemStatus,
    RunOutcome,
    RunResult,
)
from ..nodes import InputMatch, NodeRuntime
from ..storage.store import ExecutionStore
from .capabilities import CapabilityRegistry
from .clock import Clock, utc_now
from .context import ExecutionContext
from .dispatcher import NodeDispatcher
from .exceptions import ExecutionStateError, GraphValidationError
from .graph_manager import ValidatedGraph, load_graph
from .logging import clear_logging_context, get_logger, set_logging_context
from .outcomes import Fail, Suspend, Wake, timer_wake

logger = get_logger(__name__)

CANCELLED = "cancelled"


class ExecutionEngine:
    """Run workflows from their trigger and resume them where they waited.

    Every call is synchronous: it runs nodes until the graph ends, a node
    fails or a node suspends, then persists the execution once.
    """

    def __init__(
        self,
        store: ExecutionStore,
        capabilities: Optional[CapabilityRegistry] = None,
        dispatcher: Optional[NodeDispatcher] = None,
        clock: Clock = utc_now,
        rng: Optional[random.Random] = None,
        max_steps: int = 1000,
    ):
        """Initialize the execution engine.

        Args:
            store: Persistence for definitions, executions and queue items
            capabilities: Registry the capability nodes invoke
            dispatcher: Node dispatcher; defaults to the built-in handlers
            clock: Source of the current time, naive UTC
            rng: Random source for ``ab_test`` nodes
            max_steps: Nodes one call may run before the run is failed
        """
        self.store = store
        self.capabilities = capabilities or CapabilityRegistry()
        self.dispatcher = dispatcher or NodeDispatcher()
        self._clock = clock
        self._rng = rng or random.Random()
        self.max_steps = max_steps
        logger.info(f"ExecutionEngine initialized with max_steps={max_steps}")

    # Entry points

    def start(self, workflow_id: str, initial_context: Optional[Dict[str, Any]] = None) -> RunResult:
        """
        Create an execution for ``workflow_id`` and run it from the trigger.

        Raises:
            RecordNotFoundError: If the workflow does not exist
            GraphValidationError: If the definition is invalid; nothing is created
            ExecutionStateError: If the workflow is inactive
        """
        set_logging_context(workflow_id=workflow_id)
        try:
            workflow = self.store.get_workflow(workflow_id)
            if not workflow.is_active:
                raise ExecutionStateError(
                    f"Workflow {workflow_id} is inactive", workflow_id=workflow_id
                )
            graph = load_graph(workflow.definition, workflow_id=workflow_id)
            execution = self.store.create_execution(
                workflow_id, dict(initial_context or {}), step_id=graph.trigger.id
            )
            set_logging_context(execution_id=execution.id)
            logger.info(f"Started execution {execution.id} of workflow {workflow_id}")
            return self._run(execution, graph, graph.trigger.id)
        finally:
            clear_logging_context("workflow_id", "execution_id")

    def resume(
        self,
        execution_id: str,
        step_id: Optional[str] = None,
        wake: Optional[Wake] = None,
        queue_item_id: Optional[str] = None,
    ) -> RunResult:
        """
        Continue a waiting execution at ``step_id`` (its saved step by default).

        The execution and its definition are reloaded from the store. Earlier
        nodes are never replayed. Resuming anything but a waiting execution
        is a no-op reported as ``skipped``.
        """
        execution = self.store.load_execution(execution_id)
        set_logging_context(execution_id=execution_id, workflow_id=execution.workflow_id)
        try:
            if execution.status != ExecutionStatusEnum.WAITING:
                logger.info(f"Execution {execution_id} is {execution.status.value}; resume skipped")
                return self._result(execution, RunOutcome.SKIPPED)

            step_id = step_id or execution.current_step_id
            if step_id != execution.current_step_id:
                logger.warning(
                    f"Resume of {execution_id} at {step_id} does not match saved step "
                    f"{execution.current_step_id}; skipped"
                )
                return self._result(execution, RunOutcome.SKIPPED, error="Stale resume step")

            wake = wake or timer_wake()
            if queue_item_id is not None:
                return self._resume_at(execution, step_id, wake, queue_item_id)

            # Called directly rather than by the scheduler: take the pending
            # item so no other worker resumes the same wait.
            item = self.store.get_outstanding_queue_item(execution_id)
            if item is None:
                return self._resume_at(execution, step_id, wake, None)
            if self.store.claim_queue_item(item.id, self._clock()) is None:
                logger.info(f"Queue item {item.id} of {execution_id} is claimed elsewhere; skipped")
                return self._result(execution, RunOutcome.SKIPPED, error="Resume already in progress")
            try:
                result = self._resume_at(execution, step_id, wake, item.id)
            except Exception as e:
                self.store.mark_queue_item(item.id, QueueItemStatus.FAILED, error_message=str(e))
                raise
            if result.outcome == RunOutcome.SKIPPED:
                self.store.mark_queue_item(item.id, QueueItemStatus.PENDING)
            elif result.outcome == RunOutcome.FAILED:
                self.store.mark_queue_item(item.id, QueueItemStatus.FAILED, error_message=result.error_message)
            elif result.outcome == RunOutcome.COMPLETED:
                self.store.mark_queue_item(item.id, QueueItemStatus.COMPLETED)
            return result
        finally:
            clear_logging_context("workflow_id", "execution_id")

    def _resume_at(self, execution: Execution, step_id: str, wake: Wake,
                   queue_item_id: Optional[str]) -> RunResult:
        workflow = self.store.get_workflow(execution.workflow_id)
        if not workflow.is_active:
            # The caller holds the claim on this wait, so cancel without claiming again.
            cancelled = self._cancel(execution, "workflow inactive")
            return self._result(cancelled, RunOutcome.FAILED)

        context = ExecutionContext(execution.context)
        try:
            graph = load_graph(workflow.definition, workflow_id=workflow.id)
        except GraphValidationError as e:
            return self._finish(execution, context, error=e.message)

        if not graph.has_node(step_id):
            return self._finish(execution, context, error=f"Resume step {step_id} no longer exists in workflow")
        node = graph.get_node(step_id)
        if node.type == NodeType.TRIGGER:
            return self._finish(execution, context, error="Cannot resume an execution at its trigger")

        if wake.is_input:
            match = self.dispatcher.accepts(node, context, wake.message)
            if not match.accepted:
                logger.info(f"Reply to {execution.id} not accepted: {match.reason}")
                return self._result(execution, RunOutcome.SKIPPED, error=match.reason)

        logger.info(f"Resuming execution {execution.id} at {step_id} ({wake.kind} wake)")
        execution.status = ExecutionStatusEnum.RUNNING
        return self._run(execution, graph, step_id, wake=wake, queue_item_id=queue_item_id)

    def check_input(self, execution_id: str, message: InboundMessage) -> InputMatch:
        """Whether ``message`` would end the wait of a waiting execution."""
        execution = self.store.load_execution(execution_id)
        if execution.status != ExecutionStatusEnum.WAITING:
            return InputMatch(False, reason=f"Execution is {execution.status.value}")
        graph = load_graph(self.store.get_definition(execution.workflow_id), execution.workflow_id)
        if not execution.current_step_id or not graph.has_node(execution.current_step_id):
            return InputMatch(False, reason="Waiting step no longer exists")
        node = graph.get_node(execution.current_step_id)
        return self.dispatcher.accepts(node, ExecutionContext(execution.context), message)

    def cancel(self, execution_id: str, reason: Optional[str] = None) -> Execution:
        """
        Move a waiting execution to failed and close its queue item.

        The outstanding queue item is claimed first, so a cancel cannot land
        while a resume of the same wait is in flight.

        Raises:
            ExecutionStateError: If the execution is not waiting or is being resumed
        """
        execution = self.store.load_execution(execution_id)
        if execution.status != ExecutionStatusEnum.WAITING:
            raise ExecutionStateError(
                f"Only waiting executions can be cancelled; {execution_id} is {execution.status.value}",
                execution_id=execution_id,
                current_status=execution.status.value,
            )
        item = self.store.get_outstanding_queue_item(execution_id)
        if item is not None:
            claimed = None
            if item.status == QueueItemStatus.PENDING:
                claimed = self.store.claim_queue_item(item.id, self._clock())
            if claimed is None:
                raise ExecutionStateError(
                    f"Execution {execution_id} is being resumed and cannot be cancelled",
                    execution_id=execution_id,
                    current_status=execution.status.value,
                )
        return self._cancel(execution, reason, claimed_item_id=item.id if item else None)

    def _cancel(self, execution: Execution, reason: Optional[str],
                claimed_item_id: Optional[str] = None) -> Execution:
        execution.status = ExecutionStatusEnum.FAILED
        execution.error_message = f"{CANCELLED}: {reason}" if reason else CANCELLED
        execution.completed_at = self._clock()
        saved = self.store.save_execution(execution)
        if claimed_item_id:
            self.store.mark_queue_item(claimed_item_id, QueueItemStatus.FAILED, error_message=execution.error_message)
        removed = self.store.delete_pending_queue_items(execution.id)
        logger.info(f"Cancelled execution {execution.id} ({removed} pending items removed)")
        return saved

    def next_wake_time(self, execution_id: str):
        item = self.store.get_outstanding_queue_item(execution_id)
        return item.resume_at if item else None

    # Dispatch loop

    def _run(
        self,
        execution: Execution,
        graph: ValidatedGraph,
        node_id: str,
        wake: Optional[Wake] = None,
        queue_item_id: Optional[str] = None,
    ) -> RunResult:
        context = ExecutionContext(execution.context)
        current_id = node_id
        steps = 0

        while True:
            if steps >= self.max_steps:
                logger.error(f"Execution {execution.id} exceeded {self.max_steps} steps")
                return self._finish(
                    execution, context, steps=steps,
                    error=f"Step limit of {self.max_steps} exceeded at node {current_id}"
                )

            node = graph.get_node(current_id)
            runtime = NodeRuntime(
                node=node,
                context=context,
                execution_id=execution.id,
                workflow_id=execution.workflow_id,
                capabilities=self.capabilities,
                now=self._clock(),
                rng=self._rng,
                outgoing=graph.outgoing(current_id),
                wake=wake,
            )
            # Only the node being resumed sees the wake.
            wake = None
            execution.execution_path.append(current_id)
            execution.current_step_id = current_id
            steps += 1

            logger.debug(f"Running node {current_id} ({node.type.value})")
            outcome = self.dispatcher.execute(node, runtime)

            if isinstance(outcome, Fail):
                logger.info(f"Node {current_id} failed: {outcome.reason}")
                return self._finish(execution, context, steps=steps, error=outcome.reason)

            if isinstance(outcome, Suspend):
                return self._suspend(execution, graph, context, outcome, steps, queue_item_id)

            next_id = graph.next_node_id(current_id, outcome.handle)
            if next_id is None:
                if outcome.handle is not None:
                    logger.debug(f"Node {current_id} has no edge for handle {outcome.handle!r}")
                return self._finish(execution, context, steps=steps)
            current_id = next_id

    def _suspend(
        self,
        execution: Execution,
        graph: ValidatedGraph,
        context: ExecutionContext,
        outcome: Suspend,
        steps: int,
        queue_item_id: Optional[str],
    ) -> RunResult:
        if not graph.has_node(outcome.resume_step_id):
            return self._finish(
                execution, context, steps=steps,
                error=f"Suspend points at unknown step {outcome.resume_step_id}"
            )
        execution.context = context.to_dict()
        execution.status = ExecutionStatusEnum.WAITING
        execution.current_step_id = outcome.resume_step_id
        execution.error_message = None
        item = self.store.persist_suspension(
            execution, outcome.resume_step_id, outcome.resume_at, supersedes=queue_item_id
        )
        wake_at = outcome.resume_at.isoformat() if outcome.resume_at else "input only"
        logger.info(f"Execution {execution.id} waiting at {outcome.resume_step_id} until {wake_at}")
        return self._result(execution, RunOutcome.SUSPENDED, resume_at=item.resume_at, steps=steps)

    def _finish(
        self,
        execution: Execution,
        context: ExecutionContext,
        steps: int = 0,
        error: Optional[str] = None,
    ) -> RunResult:
        execution.context = context.to_dict()
        execution.status = ExecutionStatusEnum.FAILED if error else ExecutionStatusEnum.COMPLETED
        execution.error_message = error
        execution.completed_at = self._clock()
        saved = self.store.save_execution(execution)
        logger.info(f"Execution {execution.id} {saved.status.value}" + (f": {error}" if error else ""))
        outcome = RunOutcome.FAILED if error else RunOutcome.COMPLETED
        return self._result(saved, outcome, steps=steps)

    @staticmethod
    def _result(execution: Execution, outcome: RunOutcome, resume_at=None,
                steps: int = 0, error: Optional[str] = None) -> RunResult:
        return RunResult(
            execution_id=execution.id,
            outcome=outcome,
            status=execution.status,
            current_step_id=execution.current_step_id,
            resume_at=resume_at,
            error_message=error or execution.error_message,
            steps_executed=steps,
        )
