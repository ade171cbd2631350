import threading
from pathlib import Path
from typing import Dict, List, Optional
from rich.console import Console
from rich.markup import escape
from rich.progress import BarColumn, Progress, TaskID, TaskProgressColumn, TextColumn, TimeElapsedColumn
from rich.table import Table
from mbc.domain.events import (
    AttemptFailed, InterruptRequested, ProcessingFinished, ScanFinished, ScanStarted,
    TaskFinished, TaskProgressUpdated, TasksBuilt, TaskStarted
)
from mbc.domain.models import BatchSummary, MediaFile, MediaType, Task, TaskStatus
from mbc.infrastructure.event_bus import EventBus

STATUS_ICONS = {
    TaskStatus.COMPLETED: "[green]✓[/green]",
    TaskStatus.FAILED: "[red]✗[/red]",
    TaskStatus.CONFIG_ERROR: "[red]![/red]",
    TaskStatus.INTERRUPTED: "[yellow]⚠[/yellow]",
}


def format_size(size: int) -> str:
    size = float(size)
    for unit in ["B", "KB", "MB", "GB"]:
        if abs(size) < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}TB"


def format_duration(seconds: float) -> str:
    seconds = int(max(0, seconds))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


class ConsoleReporter:
    """Subscribes to EventBus and prints per-file lines and the final report.

    Used as a context manager: the video progress bars live only while the
    reporter is entered.
    """

    def __init__(self, bus: EventBus, console: Optional[Console] = None):
        self.bus = bus
        self.console = console or Console()
        self.progress = Progress(
            TextColumn("[cyan]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            TimeElapsedColumn(),
            console=self.console,
            transient=True,
        )
        self._lock = threading.Lock()
        self._bars: Dict[Path, TaskID] = {}
        self.orphans: List[MediaFile] = []
        self.collisions: List[str] = []
        self.summary_printed = False
        self._setup_subscriptions()

    def _setup_subscriptions(self):
        self.bus.subscribe(ScanStarted, self.on_scan_started)
        self.bus.subscribe(ScanFinished, self.on_scan_finished)
        self.bus.subscribe(TasksBuilt, self.on_tasks_built)
        self.bus.subscribe(TaskStarted, self.on_task_started)
        self.bus.subscribe(TaskProgressUpdated, self.on_task_progress)
        self.bus.subscribe(AttemptFailed, self.on_attempt_failed)
        self.bus.subscribe(TaskFinished, self.on_task_finished)
        self.bus.subscribe(InterruptRequested, self.on_interrupt_requested)
        self.bus.subscribe(ProcessingFinished, self.on_processing_finished)

    def __enter__(self):
        self.progress.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.progress.stop()
        return False

    def on_scan_started(self, event: ScanStarted):
        self.console.print(f"Scanning [bold]{escape(str(event.directory))}[/bold] ...")

    def on_scan_finished(self, event: ScanFinished):
        self.orphans = list(event.orphans)
        self.collisions = list(event.collisions)
        self.console.print(
            f"Found {event.pending} to convert, {event.converted} already converted, "
            f"{event.skipped} skipped, {event.ignored_small} too small"
        )
        if event.collisions:
            self.console.print(
                f"[yellow]⚠ {len(event.collisions)} name collisions excluded from conversion[/yellow]"
            )

    def on_tasks_built(self, event: TasksBuilt):
        if event.without_tools:
            self.console.print(f"[yellow]⚠ {event.without_tools} files have no usable tool[/yellow]")

    def on_task_started(self, event: TaskStarted):
        task = event.task
        if task.media_type != MediaType.VIDEO or not task.duration_seconds:
            return
        with self._lock:
            self._bars[task.source_path] = self.progress.add_task(escape(task.relative_path.as_posix()), total=100.0)

    def on_task_progress(self, event: TaskProgressUpdated):
        with self._lock:
            bar = self._bars.get(event.task.source_path)
        if bar is not None:
            self.progress.update(bar, completed=event.progress_percent)

    def on_attempt_failed(self, event: AttemptFailed):
        self.console.print(
            f"  [dim]{escape(event.task.relative_path.as_posix())}: {escape(event.tool_name)} failed, "
            f"trying next tool[/dim]"
        )

    def _remove_bar(self, task: Task):
        with self._lock:
            bar = self._bars.pop(task.source_path, None)
        if bar is not None:
            self.progress.remove_task(bar)

    def on_task_finished(self, event: TaskFinished):
        result = event.result
        self._remove_bar(result.task)
        icon = STATUS_ICONS.get(result.status, "?")
        line = f"{icon} {escape(f'[{event.index}/{event.total}]')} {escape(result.task.relative_path.as_posix())}"
        if result.success:
            line += (
                f"  {format_size(result.src_bytes)} → {format_size(result.new_bytes)}"
                f"  [dim]{result.tool_used}, {result.elapsed_seconds:.1f}s[/dim]"
            )
            if result.conflict_renamed and result.output_path:
                line += f"  [yellow](saved as {escape(result.output_path.name)})[/yellow]"
        else:
            line += f"  [dim]{result.elapsed_seconds:.1f}s[/dim]  [red]{escape(result.error_message or '')}[/red]"
        self.console.print(line)

    def on_interrupt_requested(self, event: InterruptRequested):
        self.console.print("[yellow]Ctrl+C: stopping active conversions...[/yellow]")

    def on_processing_finished(self, event: ProcessingFinished):
        self.progress.stop()
        self.print_summary(event.summary)

    def print_summary(self, summary: BatchSummary):
        if self.summary_printed:
            return
        self.summary_printed = True

        table = Table(title="Conversion summary")
        table.add_column("Type")
        table.add_column("Converted", justify="right")
        table.add_column("Failed", justify="right")
        table.add_column("Before", justify="right")
        table.add_column("After", justify="right")
        table.add_column("Saved", justify="right")

        for media_type, stats in summary.stats.items():
            saved = stats.src_bytes - stats.new_bytes
            percent = saved / stats.src_bytes * 100.0 if stats.src_bytes else 0.0
            table.add_row(
                media_type.value,
                str(stats.success),
                str(stats.failed),
                format_size(stats.src_bytes),
                format_size(stats.new_bytes),
                f"{format_size(saved)} ({percent:.1f}%)",
            )
        table.add_row(
            "[bold]total[/bold]",
            str(summary.total_success),
            str(summary.total_failed),
            format_size(summary.total_src_bytes),
            format_size(summary.total_new_bytes),
            f"{format_size(summary.saved_bytes)} ({summary.saved_percent:.1f}%)",
        )
        self.console.print(table)
        self.console.print(f"Duration: {format_duration(summary.duration_seconds)}")
        if summary.interrupted:
            self.console.print(f"[yellow]Interrupted: {summary.interrupted}[/yellow]")
        if summary.error_log_path and summary.error_log_path.exists():
            self.console.print(f"Error log: {escape(str(summary.error_log_path))}")

        if self.orphans:
            self.console.print(f"[yellow]Orphan outputs without a source ({len(self.orphans)}):[/yellow]")
            for orphan in self.orphans:
                self.console.print(f"  {escape(orphan.relative_path.as_posix())}")
        if self.collisions:
            self.console.print(f"[yellow]Name collisions, not converted ({len(self.collisions)}):[/yellow]")
            for key in self.collisions:
                self.console.print(f"  {escape(key)}")


def print_plan(console: Console, tasks: List[Task]):
    """Dry-run listing: each pending file with the command that would run first."""
    table = Table(title=f"Dry run: {len(tasks)} files to convert")
    table.add_column("#", justify="right")
    table.add_column("File")
    table.add_column("Type")
    table.add_column("Size", justify="right")
    table.add_column("First command")
    for index, task in enumerate(tasks, start=1):
        if task.candidate_commands:
            command = escape(task.candidate_commands[0].display)
        else:
            command = f"[red]{escape(task.build_error or 'no tool')}[/red]"
        table.add_row(
            str(index),
            escape(task.relative_path.as_posix()),
            task.media_type.value,
            format_size(task.source_size_bytes),
            command,
        )
    console.print(table)
