import subprocess
import json
import logging
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)


def parse_duration(value: Any) -> float:
    """Seconds from `12.5`, `MM:SS` or `HH:MM:SS.fff`; 0.0 when unparseable."""
    if value is None:
        return 0.0
    parts = str(value).strip().split(":")
    if not parts[0] or len(parts) > 3:
        return 0.0
    seconds = 0.0
    try:
        for part in parts:
            seconds = seconds * 60 + float(part)
    except ValueError:
        return 0.0
    return seconds if seconds > 0 else 0.0


def _tagged_duration(section: dict) -> float:
    duration = parse_duration(section.get("duration"))
    if duration <= 0:
        tags = section.get("tags") or {}
        duration = parse_duration(tags.get("DURATION") or tags.get("duration"))
    return duration


class FFprobeAdapter:
    """Wrapper around ffprobe, used once per video task for progress estimation."""

    def __init__(self, executable: str = "ffprobe", timeout_s: float = 60.0):
        self.executable = executable
        self.timeout_s = timeout_s

    @staticmethod
    def duration_from_probe(data: dict) -> float:
        # Container first, then the first video stream (MKV often only tags streams)
        duration = _tagged_duration(data.get("format") or {})
        if duration > 0:
            return duration
        for stream in data.get("streams") or []:
            if stream.get("codec_type") == "video":
                return _tagged_duration(stream)
        return 0.0

    def get_duration(self, file_path: Path) -> Optional[float]:
        """Returns the media duration in seconds, or None when it cannot be probed."""
        cmd = [
            self.executable,
            "-v", "error",
            "-of", "json",
            "-show_entries", "format=duration:format_tags:stream=codec_type,duration:stream_tags",
            str(file_path),
        ]
        try:
            probe = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout_s)
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning(f"ffprobe failed for {file_path}: {exc}")
            return None
        if probe.returncode != 0:
            logger.warning(f"ffprobe failed for {file_path}: exit code {probe.returncode}")
            return None
        try:
            data = json.loads(probe.stdout or "{}")
        except json.JSONDecodeError:
            logger.warning(f"ffprobe returned invalid JSON for {file_path}")
            return None

        duration = self.duration_from_probe(data)
        return duration if duration > 0 else None
