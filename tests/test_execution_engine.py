"""Tests for running, suspending and resuming executions."""

from datetime import datetime, timedelta

import pytest

from automation_engine.core.capabilities import CapabilityKind
from automation_engine.core.exceptions import ExecutionStateError, GraphValidationError
from automation_engine.core.execution_engine import ExecutionEngine
from automation_engine.core.scheduler import QueueScheduler
from automation_engine.models.core import (
    ExecutionStatusEnum,
    InboundMessage,
    Node,
    QueueItemStatus,
    RunOutcome,
    Workflow,
    WorkflowDefinition,
)
from automation_engine.storage.sql_store import SQLExecutionStore

from conftest import chain, edge, node


def reply(text, conversation_id="conv-1", **kwargs):
    return InboundMessage(content=text, conversation_id=conversation_id, **kwargs)


class TestReplyFlow:
    """Send a question, wait for the answer, branch on it."""

    def test_start_sends_greeting_and_waits(self, engine, store, messages, clock, reply_workflow):
        result = engine.start(reply_workflow.id, {"lead": {"name": "Ana"}})

        assert result.outcome == RunOutcome.SUSPENDED
        assert result.status == ExecutionStatusEnum.WAITING
        assert result.current_step_id == "ask"
        assert result.resume_at == clock.now + timedelta(minutes=5)
        assert messages.sent[0]["message"] == "Hola Ana, quieres continuar?"

        execution = store.load_execution(result.execution_id)
        assert execution.execution_path == ["start", "greet", "ask"]
        item = store.get_outstanding_queue_item(execution.id)
        assert item.step_id == "ask"
        assert item.status == QueueItemStatus.PENDING
        assert engine.next_wake_time(execution.id) == item.resume_at

    def test_matching_reply_takes_yes_branch(self, engine, scheduler, store, messages, reply_workflow):
        started = engine.start(reply_workflow.id, {"lead": {"name": "Ana"}})
        item = store.get_outstanding_queue_item(started.execution_id)

        delivery = scheduler.deliver_input(started.execution_id, reply("si"))

        assert delivery.accepted
        assert delivery.run.outcome == RunOutcome.COMPLETED
        execution = store.load_execution(started.execution_id)
        assert execution.status == ExecutionStatusEnum.COMPLETED
        assert execution.context["reply"] == "si"
        assert execution.execution_path[-1] == "yes_msg"
        assert messages.sent[-1]["message"] == "Perfecto"
        assert store.get_queue_item(item.id).status == QueueItemStatus.COMPLETED
        assert store.get_outstanding_queue_item(execution.id) is None

    def test_timeout_continues_with_empty_reply(self, engine, scheduler, store, messages, clock, reply_workflow):
        started = engine.start(reply_workflow.id, {"lead": {"name": "Ana"}})

        clock.advance(minutes=6)
        report = scheduler.run_once()

        assert report.processed == 1
        assert report.completed == 1
        execution = store.load_execution(started.execution_id)
        assert execution.status == ExecutionStatusEnum.COMPLETED
        assert execution.context["reply"] == ""
        assert execution.execution_path[-1] == "no_msg"
        assert messages.sent[-1]["message"] == "Otra vez sera"

    def test_timer_does_not_fire_early(self, engine, scheduler, store, clock, reply_workflow):
        started = engine.start(reply_workflow.id, {})

        clock.advance(minutes=4)
        report = scheduler.run_once()

        assert report.processed == 0
        assert store.load_execution(started.execution_id).status == ExecutionStatusEnum.WAITING


class TestSuspendResume:
    """Suspension bookkeeping across resumes."""

    def test_consecutive_waits(self, engine, scheduler, store, clock, create_workflow):
        workflow = create_workflow(
            [node("t", "trigger"), node("w1", "wait", duration="1h"),
             node("w2", "wait", duration="2h"), node("a", "action", message="done")],
            chain("t", "w1", "w2", "a"),
        )
        started = engine.start(workflow.id, {})
        first_item = store.get_outstanding_queue_item(started.execution_id)

        clock.advance(hours=1)
        report = scheduler.run_once()

        assert report.suspended == 1
        execution = store.load_execution(started.execution_id)
        assert execution.status == ExecutionStatusEnum.WAITING
        assert execution.current_step_id == "w2"
        second_item = store.get_outstanding_queue_item(execution.id)
        assert second_item.id != first_item.id
        assert second_item.resume_at == clock.now + timedelta(hours=2)
        assert store.get_queue_item(first_item.id).status == QueueItemStatus.COMPLETED

        clock.advance(hours=2)
        report = scheduler.run_once()

        assert report.completed == 1
        execution = store.load_execution(started.execution_id)
        assert execution.status == ExecutionStatusEnum.COMPLETED
        assert execution.execution_path == ["t", "w1", "w1", "w2", "w2", "a"]

    def test_input_only_wait_has_no_wake_time(self, engine, scheduler, store, clock, create_workflow):
        workflow = create_workflow(
            [node("t", "trigger"), node("ask", "wait_input", storeAs="answer"),
             node("a", "action", message="thanks {{answer}}")],
            chain("t", "ask", "a"),
        )
        started = engine.start(workflow.id, {})

        assert started.resume_at is None
        assert engine.next_wake_time(started.execution_id) is None
        clock.advance(days=30)
        assert scheduler.run_once().processed == 0

        delivery = scheduler.deliver_input(started.execution_id, reply("hello"))

        assert delivery.accepted
        assert delivery.run.outcome == RunOutcome.COMPLETED
        assert store.load_execution(started.execution_id).context["answer"] == "hello"

    def test_direct_resume_claims_the_pending_item(self, engine, store, create_workflow):
        workflow = create_workflow(
            [node("t", "trigger"), node("w", "wait", duration="1h"), node("a", "action", message="x")],
            chain("t", "w", "a"),
        )
        started = engine.start(workflow.id, {})
        item = store.get_outstanding_queue_item(started.execution_id)

        result = engine.resume(started.execution_id)

        assert result.outcome == RunOutcome.COMPLETED
        assert store.get_queue_item(item.id).status == QueueItemStatus.COMPLETED

    def test_stale_resume_step_is_skipped(self, engine, store, reply_workflow):
        started = engine.start(reply_workflow.id, {})

        result = engine.resume(started.execution_id, step_id="greet")

        assert result.outcome == RunOutcome.SKIPPED
        assert result.error_message == "Stale resume step"
        assert store.load_execution(started.execution_id).status == ExecutionStatusEnum.WAITING
        assert store.get_outstanding_queue_item(started.execution_id).status == QueueItemStatus.PENDING

    def test_resuming_finished_execution_is_a_noop(self, engine, scheduler, store, reply_workflow):
        started = engine.start(reply_workflow.id, {})
        scheduler.deliver_input(started.execution_id, reply("no"))

        result = engine.resume(started.execution_id)

        assert result.outcome == RunOutcome.SKIPPED
        assert result.status == ExecutionStatusEnum.COMPLETED

    def test_restart_resumes_from_the_store(self, session_factory, capabilities, messages, clock,
                                            engine, reply_workflow):
        started = engine.start(reply_workflow.id, {"lead": {"name": "Ana"}})

        # A fresh process: new store, engine and scheduler over the same database.
        store = SQLExecutionStore(session_factory, clock=clock)
        scheduler = QueueScheduler(store, ExecutionEngine(store, capabilities=capabilities, clock=clock),
                                   clock=clock)
        clock.advance(minutes=6)
        report = scheduler.run_once()

        assert report.completed == 1
        execution = store.load_execution(started.execution_id)
        assert execution.status == ExecutionStatusEnum.COMPLETED
        assert execution.execution_path == ["start", "greet", "ask", "ask", "check", "no_msg"]
        assert [sent["message"] for sent in messages.sent] == [
            "Hola Ana, quieres continuar?", "Otra vez sera"
        ]


class TestRunLimits:
    """Failure paths of a single run."""

    def test_deep_linear_graph_completes(self, engine, messages, create_workflow):
        ids = [f"a{i}" for i in range(50)]
        workflow = create_workflow(
            [node("t", "trigger")] + [node(i, "action", message=i) for i in ids],
            chain("t", *ids),
        )

        result = engine.start(workflow.id, {})

        assert result.outcome == RunOutcome.COMPLETED
        assert result.steps_executed == 51
        assert len(messages.sent) == 50

    def test_cycle_hits_step_limit(self, store, capabilities, clock, create_workflow):
        workflow = create_workflow(
            [node("t", "trigger"), node("a", "variable", variable="x", value="1"),
             node("b", "variable", variable="y", value="2")],
            chain("t", "a", "b") + [edge("b", "a")],
        )
        engine = ExecutionEngine(store, capabilities=capabilities, clock=clock, max_steps=20)

        result = engine.start(workflow.id, {})

        assert result.outcome == RunOutcome.FAILED
        assert result.steps_executed == 20
        assert "Step limit of 20 exceeded" in result.error_message
        assert store.load_execution(result.execution_id).status == ExecutionStatusEnum.FAILED

    def test_failing_node_fails_the_run(self, engine, store, create_workflow):
        workflow = create_workflow(
            [node("t", "trigger"),
             node("calc", "variable", variable="x", operation="math", operand1=1, operator="/", operand2=0),
             node("a", "action", message="never")],
            chain("t", "calc", "a"),
        )

        result = engine.start(workflow.id, {})

        assert result.outcome == RunOutcome.FAILED
        execution = store.load_execution(result.execution_id)
        assert execution.status == ExecutionStatusEnum.FAILED
        assert execution.current_step_id == "calc"
        assert execution.completed_at is not None

    def test_missing_capability_fails_the_run(self, store, clock, create_workflow):
        workflow = create_workflow(
            [node("t", "trigger"), node("a", "action", message="hi")],
            chain("t", "a"),
        )
        engine = ExecutionEngine(store, clock=clock)

        result = engine.start(workflow.id, {})

        assert result.outcome == RunOutcome.FAILED
        assert "send_message" in result.error_message

    def test_invalid_stored_graph_is_rejected(self, engine, store):
        store.save_workflow(Workflow(
            id="broken",
            name="Broken",
            definition=WorkflowDefinition(nodes=[Node(id="a", type="action")]),
        ))

        with pytest.raises(GraphValidationError):
            engine.start("broken", {})

        assert store.list_executions(workflow_id="broken") == []


class TestCancelAndDeactivate:
    """Stopping waiting runs."""

    def test_cancel_waiting_execution(self, engine, scheduler, store, clock, reply_workflow):
        started = engine.start(reply_workflow.id, {})

        cancelled = engine.cancel(started.execution_id, reason="lead opted out")

        assert cancelled.status == ExecutionStatusEnum.FAILED
        assert cancelled.error_message == "cancelled: lead opted out"
        assert store.get_outstanding_queue_item(started.execution_id) is None
        clock.advance(minutes=10)
        assert scheduler.run_once().processed == 0

    def test_cancel_requires_waiting_execution(self, engine, reply_workflow):
        started = engine.start(reply_workflow.id, {})
        engine.cancel(started.execution_id)

        with pytest.raises(ExecutionStateError):
            engine.cancel(started.execution_id)

    def test_cancel_is_refused_while_a_resume_is_running(self, engine, scheduler, store, clock,
                                                           capabilities, create_workflow):
        attempts = []

        def cancel_during_resume(config, context):
            try:
                engine.cancel(context["run_id"], reason="operator")
            except ExecutionStateError as e:
                attempts.append(e)
            return {"sent": True}

        capabilities.register(CapabilityKind.NOTIFICATION, cancel_during_resume, replace=True)
        workflow = create_workflow(
            [node("t", "trigger"), node("w", "wait", duration="1m"),
             node("n", "notification", message="hi")],
            chain("t", "w", "n"),
        )
        started = engine.start(workflow.id, {})
        execution = store.load_execution(started.execution_id)
        execution.context["run_id"] = started.execution_id
        store.save_execution(execution)

        clock.advance(minutes=2)
        report = scheduler.run_once()

        assert len(attempts) == 1
        assert report.completed == 1
        assert store.load_execution(started.execution_id).status == ExecutionStatusEnum.COMPLETED

    def test_cancel_closes_the_queue_item(self, engine, store, reply_workflow):
        started = engine.start(reply_workflow.id, {})
        item = store.get_outstanding_queue_item(started.execution_id)

        engine.cancel(started.execution_id, reason="manual")

        closed = store.get_queue_item(item.id)
        assert closed.status == QueueItemStatus.FAILED
        assert closed.error_message == "cancelled: manual"

    def test_inactive_workflow_cannot_start(self, engine, graph_manager, reply_workflow):
        graph_manager.set_active(reply_workflow.id, False)

        with pytest.raises(ExecutionStateError):
            engine.start(reply_workflow.id, {})

    def test_deactivated_workflow_cancels_on_resume(self, engine, scheduler, graph_manager, store, clock,
                                                    reply_workflow):
        started = engine.start(reply_workflow.id, {})
        item = store.get_outstanding_queue_item(started.execution_id)
        graph_manager.set_active(reply_workflow.id, False)

        clock.advance(minutes=6)
        report = scheduler.run_once()

        assert report.failed == 1
        execution = store.load_execution(started.execution_id)
        assert execution.status == ExecutionStatusEnum.FAILED
        assert execution.error_message == "cancelled: workflow inactive"
        assert store.get_queue_item(item.id).status == QueueItemStatus.FAILED


def test_clock_is_naive_utc(engine, store, clock, reply_workflow):
    started = engine.start(reply_workflow.id, {})

    execution = store.load_execution(started.execution_id)

    assert isinstance(execution.started_at, datetime)
    assert execution.started_at == clock.now
    assert execution.started_at.tzinfo is None
