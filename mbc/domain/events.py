"""Domain events for the conversion pipeline.

Workers and the orchestrator publish these on the EventBus
(`infrastructure/event_bus.py`); the console reporter subscribes. Task events
are published from worker threads.
"""

from typing import List
from pathlib import Path
from pydantic import BaseModel, Field
from .models import BatchSummary, MediaFile, Task, TaskResult


class Event(BaseModel):
    """Base class for all domain events; subscribe to it to receive everything."""

    pass


class ScanStarted(Event):
    """Emitted when the directory walk begins."""

    directory: Path


class ScanFinished(Event):
    """Emitted after classification is complete.

    Counters mirror the ScanResult sets; orphans and collisions are reported
    but never actioned.
    """

    directory: Path
    pending: int = 0
    converted: int = 0
    skipped: int = 0
    ignored_small: int = 0
    orphans: List[MediaFile] = Field(default_factory=list)
    collisions: List[str] = Field(default_factory=list)


class TasksBuilt(Event):
    """Emitted once the task list is ready for scheduling."""

    total: int
    without_tools: int = 0


class TaskEvent(Event):
    """Base class for events related to a specific task."""

    task: Task


class TaskStarted(TaskEvent):
    pass


class TaskProgressUpdated(TaskEvent):
    """Emitted as a streaming tool reports time= progress (video only)."""

    progress_percent: float


class AttemptFailed(TaskEvent):
    """One candidate command failed; the executor moves to the next one."""

    tool_name: str
    error_message: str


class TaskFinished(Event):
    """Base class for terminal task events.

    `index` is the 1-based completion counter, monotonically increasing
    across the whole batch.
    """

    result: TaskResult
    index: int
    total: int


class TaskCompleted(TaskFinished):
    pass


class TaskFailed(TaskFinished):
    pass


class InterruptRequested(Event):
    """Emitted when the user interrupts the batch (Ctrl+C)."""

    pass


class ProcessingFinished(Event):
    """Emitted when the scheduler has drained the queue."""

    summary: BatchSummary
