"""Tests for the queue scheduler and its background runner."""

import threading
from datetime import timedelta

from automation_engine.core.exceptions import StorageError
from automation_engine.core.scheduler import QueueScheduler, SchedulerRunner
from automation_engine.models.core import (
    ExecutionStatusEnum,
    InboundMessage,
    QueueItemStatus,
    RunOutcome,
    SchedulerReport,
)
from automation_engine.storage.sql_store import SQLExecutionStore

from conftest import chain, node


def wait_workflow(create_workflow, duration, name="Wait flow"):
    return create_workflow(
        [node("t", "trigger"), node("w", "wait", duration=duration), node("a", "action", message="done")],
        chain("t", "w", "a"),
        name=name,
    )


class FailingClaimStore(SQLExecutionStore):
    """Store whose batch claim always fails."""

    def claim_due_pending(self, now, limit):
        raise StorageError("database is locked", operation="claim_due_pending")


class TestRunOnce:
    """One scheduler pass over the queue."""

    def test_only_due_items_are_processed(self, engine, scheduler, store, clock, create_workflow):
        short = engine.start(wait_workflow(create_workflow, "1h", "Short").id, {})
        long = engine.start(wait_workflow(create_workflow, "3h", "Long").id, {})

        clock.advance(hours=2)
        report = scheduler.run_once()

        assert report.processed == 1
        assert report.completed == 1
        assert not report.errors
        assert store.load_execution(short.execution_id).status == ExecutionStatusEnum.COMPLETED
        assert store.load_execution(long.execution_id).status == ExecutionStatusEnum.WAITING

    def test_batch_limit(self, engine, store, clock, create_workflow):
        workflow = wait_workflow(create_workflow, "5m")
        for _ in range(3):
            engine.start(workflow.id, {})
        scheduler = QueueScheduler(store, engine, batch_limit=2, clock=clock)

        clock.advance(minutes=5)

        assert scheduler.run_once().processed == 2
        assert scheduler.run_once().processed == 1
        assert scheduler.run_once().processed == 0

    def test_explicit_now_overrides_clock(self, engine, scheduler, clock, create_workflow):
        engine.start(wait_workflow(create_workflow, "5m").id, {})

        report = scheduler.run_once(now=clock.now + timedelta(minutes=5))

        assert report.processed == 1

    def test_claim_failure_leaves_items_pending(self, session_factory, engine, clock, create_workflow):
        started = engine.start(wait_workflow(create_workflow, "5m").id, {})
        failing_store = FailingClaimStore(session_factory, clock=clock)
        scheduler = QueueScheduler(failing_store, engine, clock=clock)

        clock.advance(minutes=10)
        report = scheduler.run_once()

        assert report.processed == 0
        assert report.errors == ["database is locked"]
        item = failing_store.get_outstanding_queue_item(started.execution_id)
        assert item.status == QueueItemStatus.PENDING

    def test_stale_claims_are_released(self, engine, scheduler, store, clock, create_workflow):
        started = engine.start(wait_workflow(create_workflow, "5m").id, {})
        item = store.get_outstanding_queue_item(started.execution_id)
        # A worker claimed the item and died before finishing it.
        store.claim_queue_item(item.id, clock.now)

        clock.advance(minutes=10)
        report = scheduler.run_once()
        assert report.reset_stale == 0
        assert report.processed == 0

        clock.advance(minutes=10)
        report = scheduler.run_once()
        assert report.reset_stale == 1
        assert report.completed == 1
        assert store.get_queue_item(item.id).attempts == 2

    def test_engine_error_fails_item_and_execution(self, engine, scheduler, store, clock, create_workflow,
                                                   monkeypatch):
        started = engine.start(wait_workflow(create_workflow, "5m").id, {})
        item = store.get_outstanding_queue_item(started.execution_id)

        def explode(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(engine, "resume", explode)
        clock.advance(minutes=5)
        report = scheduler.run_once()

        assert report.failed == 1
        assert report.errors == [f"{item.id}: boom"]
        assert store.get_queue_item(item.id).status == QueueItemStatus.FAILED
        execution = store.load_execution(started.execution_id)
        assert execution.status == ExecutionStatusEnum.FAILED
        assert execution.error_message == "boom"


class TestResumeItem:
    """Resuming a single queue item by ID."""

    def test_second_resume_is_skipped(self, engine, scheduler, store, create_workflow):
        started = engine.start(wait_workflow(create_workflow, "1h").id, {})
        item = store.get_outstanding_queue_item(started.execution_id)

        first = scheduler.resume_item(item.id)
        second = scheduler.resume_item(item.id)

        assert first.outcome == RunOutcome.COMPLETED
        assert second.outcome == RunOutcome.SKIPPED
        assert second.error_message == "Queue item is completed"
        assert store.load_execution(started.execution_id).execution_path == ["t", "w", "w", "a"]


class TestDeliverInput:
    """Replies routed to waiting executions."""

    def test_rejected_reply_keeps_waiting(self, engine, scheduler, store, create_workflow):
        workflow = create_workflow(
            [node("t", "trigger"),
             node("ask", "wait_input", inputType="text", storeAs="email", timeout="1h",
                  validation={"type": "email", "errorMessage": "Send a valid email"}),
             node("a", "action", message="Thanks")],
            chain("t", "ask", "a"),
        )
        started = engine.start(workflow.id, {})

        rejected = scheduler.deliver_input(started.execution_id, InboundMessage(content="hola"))

        assert not rejected.accepted
        assert rejected.reason == "Send a valid email"
        assert store.load_execution(started.execution_id).status == ExecutionStatusEnum.WAITING
        assert store.get_outstanding_queue_item(started.execution_id).status == QueueItemStatus.PENDING

        accepted = scheduler.deliver_input(started.execution_id, InboundMessage(content="ana@example.com"))

        assert accepted.accepted
        execution = store.load_execution(started.execution_id)
        assert execution.status == ExecutionStatusEnum.COMPLETED
        assert execution.context["email"] == "ana@example.com"

    def test_wrong_input_type_is_rejected(self, engine, scheduler, create_workflow):
        workflow = create_workflow(
            [node("t", "trigger"), node("ask", "wait_input", inputType="image")],
            chain("t", "ask"),
        )
        started = engine.start(workflow.id, {})

        result = scheduler.deliver_input(started.execution_id, InboundMessage(content="text instead"))

        assert not result.accepted
        assert result.reason == "Waiting for different input type"

    def test_claimed_item_rejects_reply(self, engine, scheduler, store, clock, reply_workflow):
        started = engine.start(reply_workflow.id, {})
        item = store.get_outstanding_queue_item(started.execution_id)
        store.claim_queue_item(item.id, clock.now)

        result = scheduler.deliver_input(started.execution_id, InboundMessage(content="si"))

        assert not result.accepted
        assert result.reason == "Execution is already being resumed"

    def test_reply_to_finished_execution(self, engine, scheduler, create_workflow):
        workflow = create_workflow([node("t", "trigger"), node("a", "action", message="x")], chain("t", "a"))
        started = engine.start(workflow.id, {})

        result = scheduler.deliver_input(started.execution_id, InboundMessage(content="late"))

        assert not result.accepted
        assert result.reason == "Execution is completed"


class TestSchedulerRunner:
    """Background loop lifecycle."""

    def test_start_and_stop(self):
        ran = threading.Event()

        class CountingScheduler:
            calls = 0

            def run_once(self):
                self.calls += 1
                ran.set()
                return SchedulerReport()

        scheduler = CountingScheduler()
        runner = SchedulerRunner(scheduler, interval_seconds=0.01)

        runner.start()
        assert runner.is_running()
        assert ran.wait(timeout=2)

        runner.stop(timeout=2)
        assert not runner.is_running()
        assert scheduler.calls >= 1

    def test_errors_do_not_stop_the_loop(self):
        calls = []

        class FlakyScheduler:
            def run_once(self):
                calls.append(1)
                if len(calls) == 1:
                    raise RuntimeError("first pass fails")
                return SchedulerReport()

        runner = SchedulerRunner(FlakyScheduler(), interval_seconds=0.01)
        runner.start()
        try:
            for _ in range(200):
                if len(calls) >= 2:
                    break
                threading.Event().wait(0.01)
        finally:
            runner.stop(timeout=2)

        assert len(calls) >= 2
