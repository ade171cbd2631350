import threading
import concurrent.futures
import logging
import time
from datetime import datetime
from typing import List, Optional
from mbc.domain.events import InterruptRequested, ProcessingFinished, TaskCompleted, TaskFailed
from mbc.domain.models import BatchSummary, Task, TaskResult, TaskStatus
from mbc.infrastructure.event_bus import EventBus
from mbc.pipeline.executor import TaskExecutor

SHUTDOWN_GRACE_S = 10.0


class Scheduler:
    """Dispatches tasks sequentially or over a bounded worker pool.

    Tasks whose tool is not parallel-safe (allow_parallel=False) always run in
    the sequential lane, after the pool has drained. Results are reported as
    they complete with a monotonically increasing counter and folded into a
    per-media-type BatchSummary.
    """

    def __init__(self, executor: TaskExecutor, event_bus: Optional[EventBus] = None):
        self.executor = executor
        self.event_bus = event_bus
        self.logger = logging.getLogger(__name__)
        self.summary = BatchSummary()
        self._results_lock = threading.Lock()
        self._completed = 0
        self._total = 0

    @property
    def shutdown_event(self) -> threading.Event:
        return self.executor.shutdown_event

    def _record(self, result: TaskResult, results: List[TaskResult]):
        with self._results_lock:
            self._completed += 1
            index = self._completed
            results.append(result)
            self.summary.record(result)
        if self.event_bus:
            event_type = TaskCompleted if result.success else TaskFailed
            self.event_bus.publish(event_type(result=result, index=index, total=self._total))

    def _record_unfinished(self, tasks: List[Task], results: List[TaskResult]):
        """Marks every task that produced no result as INTERRUPTED."""
        with self._results_lock:
            finished = {result.task.source_path for result in results}
        now = datetime.now()
        for task in tasks:
            if task.source_path in finished:
                continue
            self._record(TaskResult(
                task=task,
                status=TaskStatus.INTERRUPTED,
                src_bytes=task.source_size_bytes,
                start_time=now,
                error_message="Not converted: interrupted by user (Ctrl+C)",
            ), results)

    def _run_sequential(self, tasks: List[Task], results: List[TaskResult]):
        for task in tasks:
            if self.shutdown_event.is_set():
                break
            self._record(self.executor.execute(task), results)

    def _run_pool(self, tasks: List[Task], max_parallel: int, results: List[TaskResult]):
        pool = concurrent.futures.ThreadPoolExecutor(max_workers=max_parallel, thread_name_prefix="mbc-worker")
        in_flight = {}
        reported = set()
        interrupted = False
        try:
            for task in tasks:
                in_flight[pool.submit(self.executor.execute, task)] = task

            for future in concurrent.futures.as_completed(list(in_flight)):
                try:
                    result = future.result()
                except concurrent.futures.CancelledError:
                    continue
                reported.add(future)
                self._record(result, results)
        except KeyboardInterrupt:
            interrupted = True
            self._interrupt(pool, in_flight)
            # Workers that finished inside the grace period still count
            for future in in_flight:
                if future not in reported and future.done() and not future.cancelled() and future.exception() is None:
                    self._record(future.result(), results)
            raise
        finally:
            if not interrupted:
                pool.shutdown(wait=True)

    def _interrupt(self, pool: concurrent.futures.ThreadPoolExecutor, in_flight: dict):
        self.logger.info("Ctrl+C detected - stopping new tasks and interrupting active conversions...")
        if self.event_bus:
            self.event_bus.publish(InterruptRequested())

        # Workers see the event, kill their child process and drop temp output
        self.shutdown_event.set()

        for future in list(in_flight):
            if not future.done():
                future.cancel()

        self.logger.info(f"Waiting for active tool processes to terminate (max {SHUTDOWN_GRACE_S:.0f}s)...")
        deadline = time.monotonic() + SHUTDOWN_GRACE_S
        while True:
            running = [future for future in in_flight if not future.done()]
            if not running:
                break
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            concurrent.futures.wait(
                running,
                timeout=min(0.2, remaining),
                return_when=concurrent.futures.FIRST_COMPLETED
            )
        pool.shutdown(wait=False, cancel_futures=True)
        self.logger.info("Shutdown complete")

    def run(self, tasks: List[Task], max_parallel: int = 1) -> List[TaskResult]:
        """Runs every task once and returns results in reporting order."""
        results: List[TaskResult] = []
        self._total = len(tasks)
        self._completed = 0
        self.summary.start_time = datetime.now()

        if max_parallel <= 1:
            parallel_lane: List[Task] = []
            sequential_lane = list(tasks)
        else:
            parallel_lane = [task for task in tasks if task.allow_parallel]
            sequential_lane = [task for task in tasks if not task.allow_parallel]

        self.logger.info(
            f"SCHEDULE: {len(tasks)} tasks, max_parallel={max_parallel}, "
            f"pool={len(parallel_lane)}, sequential={len(sequential_lane)}"
        )

        try:
            if parallel_lane:
                self._run_pool(parallel_lane, max_parallel, results)
            try:
                self._run_sequential(sequential_lane, results)
            except KeyboardInterrupt:
                self.logger.info("Ctrl+C detected - interrupting sequential conversion...")
                self.shutdown_event.set()
                if self.event_bus:
                    self.event_bus.publish(InterruptRequested())
                raise
        except KeyboardInterrupt:
            self._record_unfinished(tasks, results)
            raise
        finally:
            self.summary.end_time = datetime.now()
            self.summary.error_log_path = self.executor.error_log.current_path

        if self.shutdown_event.is_set():
            self._record_unfinished(tasks, results)
        if self.event_bus and not self.shutdown_event.is_set():
            self.event_bus.publish(ProcessingFinished(summary=self.summary))
        self.logger.info(
            f"SCHEDULE_END: success={self.summary.total_success}, failed={self.summary.total_failed}, "
            f"interrupted={self.summary.interrupted}"
        )
        return results
