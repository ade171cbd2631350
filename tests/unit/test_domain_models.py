import pytest
from datetime import datetime, timedelta
from pathlib import Path
from pydantic import ValidationError
from mbc.domain.models import (
    BatchSummary, MatchEntry, MediaFile, MediaType, ResolvedCommand, Task, TaskResult, TaskStatus
)


def make_result(status, media_type=MediaType.IMAGE, src=1000, new=250):
    task = Task(
        source_path=Path("/m/a.jpg"),
        relative_path=Path("a.jpg"),
        temp_output_path=Path("/m/a.avif.tmp"),
        final_output_path=Path("/m/a.avif"),
        media_type=media_type,
    )
    return TaskResult(task=task, status=status, src_bytes=src, new_bytes=new, start_time=datetime.now())


def test_resolved_command_argv():
    command = ResolvedCommand(tool_name="avifenc", executable="/bin/avifenc", arguments=["-q", "60", "in.jpg"])
    assert command.argv == ["/bin/avifenc", "-q", "60", "in.jpg"]
    assert command.display == "/bin/avifenc -q 60 in.jpg"


def test_media_file_is_frozen():
    media = MediaFile(path=Path("a.jpg"), relative_path=Path("a.jpg"), extension=".jpg", size_bytes=1, match_key="a")
    with pytest.raises(ValidationError):
        media.size_bytes = 2


def test_match_entry_ambiguity():
    media = MediaFile(path=Path("a.jpg"), relative_path=Path("a.jpg"), extension=".jpg", size_bytes=1, match_key="a")
    assert not MatchEntry(original_file=media).is_ambiguous
    assert MatchEntry(original_file=media, collisions=[media]).is_ambiguous


def test_task_result_success():
    assert make_result(TaskStatus.COMPLETED).success
    assert not make_result(TaskStatus.FAILED).success
    assert not make_result(TaskStatus.INTERRUPTED).success


def test_batch_summary_per_type():
    summary = BatchSummary()
    summary.record(make_result(TaskStatus.COMPLETED, MediaType.IMAGE, 1000, 250))
    summary.record(make_result(TaskStatus.COMPLETED, MediaType.VIDEO, 3000, 1000))
    summary.record(make_result(TaskStatus.FAILED, MediaType.VIDEO, 500, 0))
    summary.record(make_result(TaskStatus.CONFIG_ERROR, MediaType.IMAGE, 500, 0))
    summary.record(make_result(TaskStatus.INTERRUPTED, MediaType.IMAGE, 500, 0))

    assert summary.stats[MediaType.IMAGE].success == 1
    assert summary.stats[MediaType.IMAGE].failed == 1
    assert summary.stats[MediaType.VIDEO].success == 1
    assert summary.stats[MediaType.VIDEO].failed == 1
    assert summary.interrupted == 1
    assert summary.total_success == 2
    assert summary.total_failed == 2
    # Failed files do not count towards the byte totals
    assert summary.total_src_bytes == 4000
    assert summary.total_new_bytes == 1250
    assert summary.saved_bytes == 2750
    assert summary.saved_percent == pytest.approx(68.75)


def test_batch_summary_empty():
    summary = BatchSummary()
    assert summary.saved_percent == 0.0
    assert summary.total_success == 0


def test_batch_summary_duration():
    start = datetime(2024, 1, 1, 10, 0, 0)
    summary = BatchSummary(start_time=start, end_time=start + timedelta(minutes=2))
    assert summary.duration_seconds == 120.0
