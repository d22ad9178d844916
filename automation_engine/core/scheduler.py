"""Queue scheduler: claims due resumptions and replays them through the engine."""

import threading
import time
from datetime import datetime, timedelta
from typing import Optional

from ..models.core import (
    DeliveryResult,
    ExecutionStatusEnum,
    InboundMessage,
    QueueItem,
    QueueItemStatus,
    RunOutcome,
    RunResult,
    SchedulerReport,
)
from ..storage.store import ExecutionStore
from .clock import Clock, utc_now
from .exceptions import StorageError
from .execution_engine import ExecutionEngine
from .logging import get_logger
from .outcomes import Wake, input_wake, timer_wake

logger = get_logger(__name__)


class QueueScheduler:
    """Process due queue items in bounded batches.

    An item is only processed after its conditional claim succeeded, so two
    schedulers running the same pass never resume the same wait twice.
    """

    def __init__(
        self,
        store: ExecutionStore,
        engine: ExecutionEngine,
        batch_limit: int = 10,
        stale_claim_timeout: timedelta = timedelta(minutes=15),
        clock: Clock = utc_now,
    ):
        self.store = store
        self.engine = engine
        self.batch_limit = batch_limit
        self.stale_claim_timeout = stale_claim_timeout
        self._clock = clock

    def run_once(self, now: Optional[datetime] = None) -> SchedulerReport:
        """Run one pass: reset stale claims, claim due items, resume each."""
        started = time.monotonic()
        now = now or self._clock()
        report = SchedulerReport()

        try:
            report.reset_stale = self.store.reset_stale_claims(now - self.stale_claim_timeout)
            items = self.store.claim_due_pending(now, self.batch_limit)
        except StorageError as e:
            logger.error(f"Scheduler pass could not claim queue items: {e.message}")
            report.errors.append(e.message)
            report.duration_ms = round((time.monotonic() - started) * 1000, 2)
            return report

        if items:
            logger.info(f"Scheduler claimed {len(items)} due items")
        for item in items:
            self._process(item, timer_wake(), report)

        report.duration_ms = round((time.monotonic() - started) * 1000, 2)
        if report.processed:
            logger.info(
                f"Scheduler pass done: processed={report.processed} completed={report.completed} "
                f"suspended={report.suspended} failed={report.failed} skipped={report.skipped}"
            )
        return report

    def resume_item(self, item_id: str) -> RunResult:
        """Claim and process one queue item; a no-op if it is no longer pending."""
        item = self.store.get_queue_item(item_id)
        claimed = self.store.claim_queue_item(item_id, self._clock())
        if claimed is None:
            logger.info(f"Queue item {item_id} is {item.status.value}; nothing to do")
            return RunResult(
                execution_id=item.execution_id,
                outcome=RunOutcome.SKIPPED,
                error_message=f"Queue item is {item.status.value}",
            )
        return self._process(claimed, timer_wake(), SchedulerReport())

    def deliver_input(self, execution_id: str, message: InboundMessage) -> DeliveryResult:
        """Resume a waiting execution with an inbound reply if the reply matches."""
        match = self.engine.check_input(execution_id, message)
        if not match.accepted:
            return DeliveryResult(execution_id=execution_id, accepted=False, reason=match.reason)

        item = self.store.get_outstanding_queue_item(execution_id)
        if item is None:
            run = self.engine.resume(execution_id, wake=input_wake(message))
            return DeliveryResult(execution_id=execution_id, accepted=True, run=run)

        claimed = self.store.claim_queue_item(item.id, self._clock())
        if claimed is None:
            return DeliveryResult(
                execution_id=execution_id, accepted=False, reason="Execution is already being resumed"
            )
        run = self._process(claimed, input_wake(message), SchedulerReport())
        return DeliveryResult(execution_id=execution_id, accepted=run.outcome != RunOutcome.SKIPPED, run=run)

    def _process(self, item: QueueItem, wake: Wake, report: SchedulerReport) -> RunResult:
        report.processed += 1
        try:
            result = self.engine.resume(
                item.execution_id, item.step_id, wake=wake, queue_item_id=item.id
            )
        except Exception as e:
            message = getattr(e, "message", None) or str(e)
            logger.error(f"Resuming queue item {item.id} failed: {message}", exc_info=True)
            report.failed += 1
            report.errors.append(f"{item.id}: {message}")
            self._record_failure(item, message)
            return RunResult(
                execution_id=item.execution_id,
                outcome=RunOutcome.FAILED,
                status=ExecutionStatusEnum.FAILED,
                error_message=message,
            )

        if result.outcome == RunOutcome.COMPLETED:
            report.completed += 1
            self.store.mark_queue_item(item.id, QueueItemStatus.COMPLETED)
        elif result.outcome == RunOutcome.SUSPENDED:
            report.suspended += 1
            self.store.mark_queue_item(item.id, QueueItemStatus.COMPLETED)
        elif result.outcome == RunOutcome.FAILED:
            report.failed += 1
            self.store.mark_queue_item(item.id, QueueItemStatus.FAILED, error_message=result.error_message)
        elif wake.is_input and result.status == ExecutionStatusEnum.WAITING:
            # The reply was rejected after the claim; keep waiting on the same item.
            report.skipped += 1
            self.store.mark_queue_item(item.id, QueueItemStatus.PENDING)
        else:
            report.skipped += 1
            reason = result.error_message or f"execution {result.status.value if result.status else 'missing'}"
            self.store.mark_queue_item(item.id, QueueItemStatus.COMPLETED, error_message=f"skipped: {reason}")
        return result

    def _record_failure(self, item: QueueItem, message: str) -> None:
        try:
            self.store.mark_queue_item(item.id, QueueItemStatus.FAILED, error_message=message)
            execution = self.store.load_execution(item.execution_id)
            if not execution.is_terminal:
                execution.status = ExecutionStatusEnum.FAILED
                execution.error_message = message
                execution.completed_at = self._clock()
                self.store.save_execution(execution)
        except StorageError as e:
            logger.error(f"Could not record failure of queue item {item.id}: {e.message}")


class SchedulerRunner:
    """Background thread that runs the scheduler on a fixed interval."""

    def __init__(self, scheduler: QueueScheduler, interval_seconds: float = 60.0):
        self.scheduler = scheduler
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self.is_running():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="QueueSchedulerRunner")
        self._thread.start()
        logger.info(f"Scheduler runner started (interval {self.interval_seconds}s)")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("Scheduler runner stopped")

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.scheduler.run_once()
            except Exception as e:
                logger.error(f"Error in scheduler runner: {str(e)}", exc_info=True)
            self._stop.wait(self.interval_seconds)
