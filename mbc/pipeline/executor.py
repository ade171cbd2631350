"""Runs a single Task through its ordered fallback chain.

    Pending -> Running(i) -> Success | RetryNext | Failed

Each candidate command yields an AttemptResult. A failed attempt removes the
partial temp output, writes one error-log entry and moves on to the next
command. The first successful attempt promotes the temp output to its final
name, then applies the source action (backup move or delete). The source is
only touched after the converted file is in place, and a failed backup move
rolls the promotion back so the two never disagree.
"""

import os
import shutil
import logging
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Tuple
from mbc.domain.events import AttemptFailed, TaskStarted
from mbc.domain.exceptions import FilesystemConflict
from mbc.domain.models import AttemptResult, ResolvedCommand, Task, TaskResult, TaskStatus
from mbc.infrastructure.event_bus import EventBus
from mbc.infrastructure.logging import ErrorLog
from mbc.infrastructure.process_runner import ProcessRunner

MAX_CONFLICT_SUFFIXES = 1000


def conflict_path(path: Path, now: Optional[datetime] = None) -> Path:
    """First free `conflict_<timestamp>[_n]_<name>` sibling of `path`."""
    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    candidate = path.with_name(f"conflict_{stamp}_{path.name}")
    counter = 1
    while candidate.exists():
        if counter >= MAX_CONFLICT_SUFFIXES:
            raise FilesystemConflict(f"No free conflict name for {path}")
        candidate = path.with_name(f"conflict_{stamp}_{counter}_{path.name}")
        counter += 1
    return candidate


class TaskExecutor:
    def __init__(
        self,
        runner: ProcessRunner,
        error_log: ErrorLog,
        event_bus: Optional[EventBus] = None,
        shutdown_event: Optional[threading.Event] = None,
        delete_source: bool = False,
        preserve_timestamps: bool = True,
        metadata_copier: Optional[Callable[[Path, Path], bool]] = None,
    ):
        self.runner = runner
        self.error_log = error_log
        self.event_bus = event_bus
        self.shutdown_event = shutdown_event or threading.Event()
        self.delete_source = delete_source
        self.preserve_timestamps = preserve_timestamps
        self.metadata_copier = metadata_copier
        self.logger = logging.getLogger(__name__)
        # Serializes "is the final name free? then rename" across workers
        self._promote_lock = threading.Lock()

    def _publish(self, event):
        if self.event_bus:
            self.event_bus.publish(event)

    @staticmethod
    def _discard_temp(task: Task):
        try:
            task.temp_output_path.unlink()
        except FileNotFoundError:
            pass

    def _result(self, task: Task, status: TaskStatus, start_time: datetime, started: float,
                attempts: List[AttemptResult], **kwargs) -> TaskResult:
        return TaskResult(
            task=task,
            status=status,
            src_bytes=task.source_size_bytes,
            start_time=start_time,
            elapsed_seconds=time.monotonic() - started,
            attempts=attempts,
            **kwargs,
        )

    def _attempt(self, task: Task, command: ResolvedCommand) -> AttemptResult:
        # A leftover from an earlier attempt must not count as this tool's output
        self._discard_temp(task)
        outcome = self.runner.run(command, task=task, shutdown_event=self.shutdown_event)

        if outcome.interrupted:
            return AttemptResult(tool_name=command.tool_name, ok=False, interrupted=True,
                                 error=outcome.failure_reason)
        if outcome.returncode != 0 or outcome.timed_out or outcome.start_error:
            return AttemptResult(tool_name=command.tool_name, ok=False, error=outcome.failure_reason)

        try:
            size = task.temp_output_path.stat().st_size
        except OSError:
            size = 0
        if size <= 0:
            return AttemptResult(tool_name=command.tool_name, ok=False,
                                 error="exited with code 0 but produced no output")
        return AttemptResult(tool_name=command.tool_name, ok=True)

    def _promote(self, task: Task) -> Tuple[Path, bool]:
        with self._promote_lock:
            target = task.final_output_path
            renamed = False
            if target.exists():
                target = conflict_path(target)
                renamed = True
                self.logger.warning(
                    f"Output {task.final_output_path.name} already exists; writing {target.name} instead"
                )
            os.replace(task.temp_output_path, target)
        return target, renamed

    def _move_to_backup(self, task: Task) -> Path:
        dest = task.backup_path
        dest.parent.mkdir(parents=True, exist_ok=True)
        if dest.exists():
            dest = conflict_path(dest)
            self.logger.warning(f"Backup {task.backup_path} already exists; moving source to {dest.name}")
        try:
            shutil.move(str(task.source_path), str(dest))
        except OSError:
            # Cross-device move copies first; drop a partial copy while the source survives
            if task.source_path.exists() and dest.exists():
                dest.unlink()
            raise
        return dest

    def _apply_post_steps(self, task: Task, output_path: Path):
        if self.metadata_copier and not self.metadata_copier(task.source_path, output_path):
            self.logger.warning(f"Metadata not copied for {task.relative_path}")
        if self.preserve_timestamps:
            try:
                src_stat = task.source_path.stat()
                os.utime(output_path, (src_stat.st_atime, src_stat.st_mtime))
            except OSError as exc:
                self.logger.warning(f"Cannot preserve timestamps for {output_path.name}: {exc}")

    def _finish_success(self, task: Task, tool_name: str, start_time: datetime, started: float,
                        attempts: List[AttemptResult]) -> TaskResult:
        new_bytes = task.temp_output_path.stat().st_size
        try:
            output_path, renamed = self._promote(task)
        except (OSError, FilesystemConflict) as exc:
            message = f"Promotion failed: {exc}"
            self.error_log.record(task.relative_path, tool_name, message)
            return self._result(task, TaskStatus.FAILED, start_time, started, attempts,
                                tool_used=tool_name, error_message=message)

        self._apply_post_steps(task, output_path)

        if task.backup_path is not None:
            try:
                backup = self._move_to_backup(task)
                self.logger.info(f"BACKUP: {task.relative_path} -> {backup}")
            except (OSError, FilesystemConflict) as exc:
                # Undo the promotion so the next run converts this file again
                output_path.unlink(missing_ok=True)
                message = f"Backup move failed, conversion rolled back: {exc}"
                self.error_log.record(task.relative_path, tool_name, message)
                return self._result(task, TaskStatus.FAILED, start_time, started, attempts,
                                    tool_used=tool_name, error_message=message)
        elif self.delete_source:
            try:
                task.source_path.unlink()
            except OSError as exc:
                self.logger.warning(f"Cannot delete source {task.relative_path}: {exc}")

        return self._result(task, TaskStatus.COMPLETED, start_time, started, attempts,
                            tool_used=tool_name, new_bytes=new_bytes, output_path=output_path,
                            conflict_renamed=renamed)

    def execute(self, task: Task) -> TaskResult:
        start_time = datetime.now()
        started = time.monotonic()
        attempts: List[AttemptResult] = []
        self._publish(TaskStarted(task=task))
        self.logger.debug(f"TASK_START: {task.relative_path} ({len(task.candidate_commands)} candidates)")

        try:
            if not task.candidate_commands:
                message = task.build_error or "No candidate commands"
                self.error_log.record(task.relative_path, "-", message)
                return self._result(task, TaskStatus.CONFIG_ERROR, start_time, started, attempts,
                                    error_message=message)

            last_error = None
            for command in task.candidate_commands:
                attempt = self._attempt(task, command)
                attempts.append(attempt)

                if attempt.interrupted or (attempt.ok and self.shutdown_event.is_set()):
                    return self._result(task, TaskStatus.INTERRUPTED, start_time, started, attempts,
                                        tool_used=command.tool_name,
                                        error_message="Interrupted by user (Ctrl+C)")

                if attempt.ok:
                    self.logger.info(f"CONVERTED: {task.relative_path} with {command.tool_name}")
                    return self._finish_success(task, command.tool_name, start_time, started, attempts)

                last_error = attempt.error
                self._discard_temp(task)
                self.error_log.record(task.relative_path, command.tool_name, attempt.error)
                self.logger.warning(f"ATTEMPT_FAILED: {task.relative_path} with {command.tool_name}: {attempt.error}")
                self._publish(AttemptFailed(task=task, tool_name=command.tool_name, error_message=attempt.error))

            message = f"All {len(task.candidate_commands)} candidate tools failed; last error: {last_error}"
            self.logger.error(f"TASK_FAILED: {task.relative_path}: {message}")
            return self._result(task, TaskStatus.FAILED, start_time, started, attempts,
                                tool_used=task.candidate_commands[-1].tool_name, error_message=message)
        finally:
            self._discard_temp(task)
