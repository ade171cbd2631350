import subprocess
import re
import logging
import time
import threading
import queue
from collections import deque
from typing import Deque, List, Optional
from pydantic import BaseModel, Field
from mbc.domain.models import ResolvedCommand, Task
from mbc.infrastructure.event_bus import EventBus
from mbc.domain.events import TaskProgressUpdated

# Regex to parse 'time=00:00:00.00' / 'speed=1.5x' from ffmpeg-style output
TIME_REGEX = re.compile(r"time=(\d+):(\d+):(\d+(?:\.\d+)?)")
SPEED_REGEX = re.compile(r"speed=\s*([\d.]+)x")
OUTPUT_TAIL_LINES = 20


class ProcessOutcome(BaseModel):
    returncode: Optional[int] = None
    interrupted: bool = False
    timed_out: bool = False
    start_error: Optional[str] = None
    output_tail: List[str] = Field(default_factory=list)

    @property
    def failure_reason(self) -> str:
        if self.start_error:
            return self.start_error
        if self.interrupted:
            return "Interrupted by user (Ctrl+C)"
        if self.timed_out:
            return "Timed out"
        last = self.output_tail[-1] if self.output_tail else ""
        reason = f"exited with code {self.returncode}"
        return f"{reason}: {last}" if last else reason


class ProcessRunner:
    """Runs one candidate command as a child process.

    Output (stdout+stderr) is drained by a reader thread so the loop can poll
    the shutdown event and the timeout. The child never outlives run().
    """

    def __init__(self, event_bus: Optional[EventBus] = None, debug: bool = False):
        self.event_bus = event_bus
        self.debug = debug
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def _stop(process: subprocess.Popen):
        if process.poll() is not None:
            return
        process.terminate()
        try:
            process.wait(timeout=3)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()

    def _report_progress(self, task: Optional[Task], line: str):
        match = TIME_REGEX.search(line)
        if not match or task is None or not task.duration_seconds:
            return
        h, m, s = map(float, match.groups())
        current_seconds = h * 3600 + m * 60 + s
        progress_percent = min(100.0, (current_seconds / task.duration_seconds) * 100.0)
        if self.event_bus:
            self.event_bus.publish(TaskProgressUpdated(task=task, progress_percent=progress_percent))
        if self.debug:
            speed = SPEED_REGEX.search(line)
            self.logger.debug(
                f"PROGRESS: {task.relative_path} {progress_percent:.1f}%"
                + (f" speed={speed.group(1)}x" if speed else "")
            )

    def run(
        self,
        command: ResolvedCommand,
        task: Optional[Task] = None,
        shutdown_event: Optional[threading.Event] = None,
    ) -> ProcessOutcome:
        if shutdown_event and shutdown_event.is_set():
            return ProcessOutcome(interrupted=True)

        if self.debug:
            self.logger.debug(f"PROCESS_CMD: {command.display}")

        try:
            process = subprocess.Popen(
                command.argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                universal_newlines=True,
                errors="replace",
                bufsize=1
            )
        except OSError as exc:
            return ProcessOutcome(start_error=f"failed to start {command.tool_name}: {exc}")

        tail: Deque[str] = deque(maxlen=OUTPUT_TAIL_LINES)
        output_queue: "queue.Queue[Optional[str]]" = queue.Queue()

        def _reader():
            if not process.stdout:
                output_queue.put(None)
                return
            for line in process.stdout:
                output_queue.put(line)
            output_queue.put(None)

        reader_thread = threading.Thread(target=_reader, daemon=True)
        reader_thread.start()

        deadline = time.monotonic() + command.timeout_s if command.timeout_s else None
        interrupted = False
        timed_out = False

        try:
            while True:
                if shutdown_event and shutdown_event.is_set():
                    self.logger.info(f"PROCESS_INTERRUPTED: {command.tool_name} (shutdown signal)")
                    self._stop(process)
                    interrupted = True
                    break

                if deadline is not None and time.monotonic() > deadline:
                    self.logger.warning(f"PROCESS_TIMEOUT: {command.tool_name} after {command.timeout_s}s")
                    self._stop(process)
                    timed_out = True
                    break

                try:
                    line = output_queue.get(timeout=0.1)
                except queue.Empty:
                    if process.poll() is not None and not reader_thread.is_alive():
                        break
                    continue

                if line is None:
                    break

                line = line.rstrip()
                if line:
                    tail.append(line)
                    self._report_progress(task, line)

            process.wait()
        except KeyboardInterrupt:
            self.logger.info(f"PROCESS_INTERRUPTED: {command.tool_name} (KeyboardInterrupt)")
            self._stop(process)
            raise
        finally:
            # Never leave an orphaned encoder behind
            self._stop(process)

        return ProcessOutcome(
            returncode=process.returncode,
            interrupted=interrupted,
            timed_out=timed_out,
            output_tail=list(tail),
        )
