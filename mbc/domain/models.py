from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field

class MediaType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"

class TaskStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CONFIG_ERROR = "CONFIG_ERROR"  # No candidate command could be built
    INTERRUPTED = "INTERRUPTED"  # Ctrl+C during processing

class MediaFile(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: Path
    relative_path: Path
    extension: str
    size_bytes: int
    match_key: str

class MatchEntry(BaseModel):
    original_file: Optional[MediaFile] = None
    converted_file: Optional[MediaFile] = None
    # Extra originals that claimed the same key; non-empty means ambiguous
    collisions: List[MediaFile] = Field(default_factory=list)

    @property
    def is_ambiguous(self) -> bool:
        return bool(self.collisions)

class ScanResult(BaseModel):
    """Outcome of one directory scan, read-only after construction."""

    root_dir: Path
    entries: Dict[str, MatchEntry] = Field(default_factory=dict)
    pending: List[MediaFile] = Field(default_factory=list)
    converted: List[MatchEntry] = Field(default_factory=list)
    orphans: List[MediaFile] = Field(default_factory=list)
    skipped: List[Path] = Field(default_factory=list)
    collisions: Dict[str, List[MediaFile]] = Field(default_factory=dict)
    ignored_small: int = 0

class ResolvedCommand(BaseModel):
    model_config = ConfigDict(frozen=True)

    tool_name: str
    executable: str
    arguments: List[str]
    timeout_s: Optional[float] = None

    @property
    def argv(self) -> List[str]:
        return [self.executable, *self.arguments]

    @property
    def display(self) -> str:
        return " ".join(self.argv)

class Task(BaseModel):
    source_path: Path
    relative_path: Path
    temp_output_path: Path
    final_output_path: Path
    backup_dir: Optional[Path] = None
    backup_path: Optional[Path] = None
    media_type: MediaType
    candidate_commands: List[ResolvedCommand] = Field(default_factory=list)
    duration_seconds: Optional[float] = None
    allow_parallel: bool = True
    source_size_bytes: int = 0
    build_error: Optional[str] = None

class AttemptResult(BaseModel):
    """Result of one candidate command. ok=False means try the next one."""

    model_config = ConfigDict(frozen=True)

    tool_name: str
    ok: bool
    error: Optional[str] = None
    interrupted: bool = False

class TaskResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    task: Task
    status: TaskStatus
    src_bytes: int = 0
    new_bytes: int = 0
    tool_used: Optional[str] = None
    error_message: Optional[str] = None
    start_time: datetime
    elapsed_seconds: float = 0.0
    output_path: Optional[Path] = None
    attempts: List[AttemptResult] = Field(default_factory=list)
    conflict_renamed: bool = False

    @property
    def success(self) -> bool:
        return self.status == TaskStatus.COMPLETED

class MediaStats(BaseModel):
    success: int = 0
    failed: int = 0
    src_bytes: int = 0
    new_bytes: int = 0

class BatchSummary(BaseModel):
    stats: Dict[MediaType, MediaStats] = Field(
        default_factory=lambda: {media_type: MediaStats() for media_type in MediaType}
    )
    interrupted: int = 0
    start_time: datetime = Field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    error_log_path: Optional[Path] = None

    def record(self, result: TaskResult) -> None:
        if result.status == TaskStatus.INTERRUPTED:
            self.interrupted += 1
            return
        stats = self.stats[result.task.media_type]
        if result.success:
            stats.success += 1
            stats.src_bytes += result.src_bytes
            stats.new_bytes += result.new_bytes
        else:
            stats.failed += 1

    @property
    def total_success(self) -> int:
        return sum(s.success for s in self.stats.values())

    @property
    def total_failed(self) -> int:
        return sum(s.failed for s in self.stats.values())

    @property
    def total_src_bytes(self) -> int:
        return sum(s.src_bytes for s in self.stats.values())

    @property
    def total_new_bytes(self) -> int:
        return sum(s.new_bytes for s in self.stats.values())

    @property
    def saved_bytes(self) -> int:
        return self.total_src_bytes - self.total_new_bytes

    @property
    def saved_percent(self) -> float:
        if self.total_src_bytes == 0:
            return 0.0
        return self.saved_bytes / self.total_src_bytes * 100.0

    @property
    def duration_seconds(self) -> float:
        end = self.end_time or datetime.now()
        return (end - self.start_time).total_seconds()
