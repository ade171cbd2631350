"""Pipeline orchestrator for one conversion run.

Coordinates housekeeping, the directory scan, task building and scheduling,
and publishes events so the console layer can follow along without the
pipeline knowing about it.

Key responsibilities:
- Remove stale temp outputs left by an interrupted run
- Scan the source tree and surface orphans and match-key collisions
- Build tasks for pending files, honouring the media filter and backup root
- Order the queue (queue_sort) and hand it to the scheduler
"""

import logging
from pathlib import Path
from typing import List, Optional, Tuple
from mbc.config.models import AppConfig
from mbc.domain.events import ScanFinished, ScanStarted, TasksBuilt
from mbc.domain.models import BatchSummary, MediaType, ScanResult, Task
from mbc.infrastructure.event_bus import EventBus
from mbc.infrastructure.file_scanner import FileClassifier
from mbc.infrastructure.housekeeping import HousekeepingService
from mbc.pipeline.queue_sorting import sort_tasks
from mbc.pipeline.scheduler import Scheduler
from mbc.pipeline.task_builder import TaskBuilder


class Orchestrator:
    """Runs scan → build → schedule for a single source directory.

    Args:
        config: AppConfig with the general section already merged with CLI overrides.
        event_bus: EventBus for scan/task lifecycle events.
        classifier: FileClassifier pairing sources with converted outputs.
        task_builder: TaskBuilder bound to the resolved ToolCatalog.
        scheduler: Scheduler owning the TaskExecutor and worker pool.
        use_gpu: Resolved GPU/CPU choice for video command templates.
        housekeeper: Optional HousekeepingService run before scanning.
    """

    def __init__(
        self,
        config: AppConfig,
        event_bus: EventBus,
        classifier: FileClassifier,
        task_builder: TaskBuilder,
        scheduler: Scheduler,
        use_gpu: bool = False,
        housekeeper: Optional[HousekeepingService] = None,
    ):
        self.config = config
        self.event_bus = event_bus
        self.classifier = classifier
        self.task_builder = task_builder
        self.scheduler = scheduler
        self.use_gpu = use_gpu
        self.housekeeper = housekeeper
        self.logger = logging.getLogger(__name__)

    @property
    def backup_root(self) -> Optional[Path]:
        general = self.config.general
        if general.source_action == "backup" and general.backup_dir:
            return Path(general.backup_dir).resolve()
        return None

    @property
    def media_type_filter(self) -> Optional[MediaType]:
        media_filter = self.config.general.media_filter
        return None if media_filter == "all" else MediaType(media_filter)

    def scan(self, root_dir: Path) -> ScanResult:
        self.event_bus.publish(ScanStarted(directory=root_dir))
        if self.housekeeper:
            excluded = [self.backup_root] if self.backup_root else []
            self.housekeeper.cleanup_temp_files(root_dir, exclude_dirs=excluded)

        scan_result = self.classifier.scan(root_dir, include_subdirs=self.config.general.include_subdirs)

        for orphan in scan_result.orphans:
            self.logger.info(f"Orphan output (no source): {orphan.relative_path}")

        self.event_bus.publish(ScanFinished(
            directory=root_dir,
            pending=len(scan_result.pending),
            converted=len(scan_result.converted),
            skipped=len(scan_result.skipped),
            ignored_small=scan_result.ignored_small,
            orphans=scan_result.orphans,
            collisions=sorted(scan_result.collisions),
        ))
        return scan_result

    def plan(self, root_dir: Path) -> Tuple[ScanResult, List[Task]]:
        """Scans and builds the ordered task list without running anything."""
        root_dir = Path(root_dir).resolve()
        scan_result = self.scan(root_dir)
        tasks = self.task_builder.build_tasks(
            scan_result.pending,
            root_dir,
            backup_root=self.backup_root,
            media_type_filter=self.media_type_filter,
            use_gpu=self.use_gpu,
        )
        general = self.config.general
        tasks = sort_tasks(
            tasks,
            general.queue_sort,
            general.image_extensions + general.video_extensions,
            seed=general.queue_seed,
        )
        self.event_bus.publish(TasksBuilt(
            total=len(tasks),
            without_tools=sum(1 for task in tasks if task.build_error),
        ))
        return scan_result, tasks

    def run(self, root_dir: Path) -> BatchSummary:
        self.logger.info(f"Run started: {root_dir}")
        _, tasks = self.plan(root_dir)

        if not tasks:
            self.logger.info("No files to convert")
        self.scheduler.run(tasks, max_parallel=self.config.general.threads)
        return self.scheduler.summary
