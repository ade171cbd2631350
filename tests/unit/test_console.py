import io
import pytest
from datetime import datetime
from pathlib import Path
from rich.console import Console
from mbc.domain.events import (
    AttemptFailed, ProcessingFinished, ScanFinished, TaskCompleted, TaskFailed,
    TaskProgressUpdated, TaskStarted
)
from mbc.domain.models import BatchSummary, MediaFile, MediaType, Task, TaskResult, TaskStatus
from mbc.ui.console import ConsoleReporter, format_duration, format_size, print_plan


@pytest.fixture
def console():
    return Console(file=io.StringIO(), width=200, color_system=None)


@pytest.fixture
def reporter(event_bus, console):
    return ConsoleReporter(event_bus, console)


def output(console):
    return console.file.getvalue()


def make_task(rel="sub/photo.jpg", media_type=MediaType.IMAGE, duration=None):
    path = Path("/media") / rel
    return Task(
        source_path=path,
        relative_path=Path(rel),
        temp_output_path=Path(f"{path}.tmp"),
        final_output_path=path.with_suffix(".avif"),
        media_type=media_type,
        duration_seconds=duration,
        source_size_bytes=2048,
    )


def make_result(task, status=TaskStatus.COMPLETED, **kwargs):
    return TaskResult(task=task, status=status, start_time=datetime.now(), **kwargs)


def test_format_size():
    assert format_size(512) == "512.0B"
    assert format_size(2048) == "2.0KB"
    assert format_size(5 * 1024 ** 3) == "5.0GB"
    assert format_size(3 * 1024 ** 4) == "3.0TB"


def test_format_duration():
    assert format_duration(3725) == "01:02:05"
    assert format_duration(-1) == "00:00:00"


def test_completed_line(event_bus, reporter, console):
    task = make_task()
    result = make_result(task, src_bytes=2048, new_bytes=512, tool_used="avifenc", elapsed_seconds=1.25)

    event_bus.publish(TaskCompleted(result=result, index=3, total=10))

    line = output(console)
    assert "✓ [3/10] sub/photo.jpg" in line
    assert "2.0KB → 512.0B" in line
    assert "avifenc, 1.2s" in line or "avifenc, 1.3s" in line


def test_failed_line_shows_reason(event_bus, reporter, console):
    result = make_result(make_task(), TaskStatus.FAILED, error_message="All 2 candidate tools failed")

    event_bus.publish(TaskFailed(result=result, index=1, total=1))

    assert "✗ [1/1] sub/photo.jpg" in output(console)
    assert "All 2 candidate tools failed" in output(console)


def test_conflict_rename_is_shown(event_bus, reporter, console):
    task = make_task()
    result = make_result(task, output_path=Path("/media/sub/conflict_20240101_000000_photo.avif"),
                         conflict_renamed=True)

    event_bus.publish(TaskCompleted(result=result, index=1, total=1))

    assert "saved as conflict_20240101_000000_photo.avif" in output(console)


def test_attempt_failed_line(event_bus, reporter, console):
    event_bus.publish(AttemptFailed(task=make_task(), tool_name="avifenc", error_message="boom"))
    assert "avifenc failed, trying next tool" in output(console)


def test_progress_bar_lifecycle(event_bus, reporter):
    task = make_task("clip.mov", MediaType.VIDEO, duration=60.0)

    with reporter:
        event_bus.publish(TaskStarted(task=task))
        assert len(reporter.progress.tasks) == 1
        event_bus.publish(TaskProgressUpdated(task=task, progress_percent=40.0))
        assert reporter.progress.tasks[0].completed == 40.0
        event_bus.publish(TaskCompleted(result=make_result(task), index=1, total=1))
        assert reporter.progress.tasks == []


def test_no_progress_bar_for_images(event_bus, reporter):
    event_bus.publish(TaskStarted(task=make_task()))
    assert reporter.progress.tasks == []


def test_summary_report(event_bus, reporter, console, tmp_path):
    orphan = MediaFile(
        path=Path("/media/old.avif"), relative_path=Path("old.avif"),
        extension=".avif", size_bytes=100, match_key="old",
    )
    event_bus.publish(ScanFinished(
        directory=Path("/media"), pending=2, converted=1, orphans=[orphan], collisions=["dup/photo"],
    ))
    error_log = tmp_path / "errors_2024-01-01.log"
    error_log.write_text("x")
    summary = BatchSummary(error_log_path=error_log, end_time=datetime.now())
    summary.stats[MediaType.IMAGE].success = 2
    summary.stats[MediaType.IMAGE].src_bytes = 4096
    summary.stats[MediaType.IMAGE].new_bytes = 1024

    event_bus.publish(ProcessingFinished(summary=summary))

    text = output(console)
    assert "Conversion summary" in text
    assert "75.0%" in text
    assert str(error_log) in text
    assert "old.avif" in text
    assert "dup/photo" in text
    assert "1 name collisions excluded" in text


def test_summary_printed_once(reporter, console):
    reporter.print_summary(BatchSummary())
    reporter.print_summary(BatchSummary())
    assert output(console).count("Conversion summary") == 1


def test_print_plan(console):
    from mbc.domain.models import ResolvedCommand
    ready = make_task("a.jpg").model_copy(update={"candidate_commands": [
        ResolvedCommand(tool_name="avifenc", executable="avifenc", arguments=["a.jpg", "a.avif.tmp"])
    ]})
    broken = make_task("b.jpg").model_copy(update={"build_error": "No tool configured for '.jpg'"})

    print_plan(console, [ready, broken])

    text = output(console)
    assert "Dry run: 2 files to convert" in text
    assert "avifenc a.jpg a.avif.tmp" in text
    assert "No tool configured for '.jpg'" in text
