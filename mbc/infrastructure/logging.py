import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'

def setup_logging(log_dir: Path, debug: bool = False, log_path: Optional[Path] = None) -> logging.Logger:
    """
    Setup logging configuration for MBC.

    Creates the log directory and conversion.log file.
    Returns configured logger instance.

    Args:
        log_dir: Directory for conversion.log and the daily error logs
        debug: If True, enable DEBUG level logging with tool command lines and timings
        log_path: Optional path to log file (overrides log_dir)
    """
    log_dir.mkdir(parents=True, exist_ok=True)

    log_file = Path(log_path) if log_path else (log_dir / "conversion.log")
    log_file.parent.mkdir(parents=True, exist_ok=True)

    level = logging.DEBUG if debug else logging.INFO

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[logging.FileHandler(log_file, encoding='utf-8')],
        force=True  # Override any existing configuration
    )

    logger = logging.getLogger(__name__)
    logger.info(f"Logging initialized: {log_file} (debug={'ON' if debug else 'OFF'})")

    return logger


class ErrorLog:
    """Append-only failure log, one UTF-8 file per day.

    Lines look like::

        [14:03:12] FAILED: sub/clip.mov | Attempt: ffmpeg | Reason: exited with code 1

    A single instance is shared by every worker; writes are serialized by its lock.
    """

    def __init__(self, log_dir: Path):
        self.log_dir = Path(log_dir)
        self._lock = threading.Lock()
        self.entries_written = 0

    def path_for(self, when: Optional[datetime] = None) -> Path:
        when = when or datetime.now()
        return self.log_dir / f"errors_{when.strftime('%Y-%m-%d')}.log"

    @property
    def current_path(self) -> Path:
        return self.path_for()

    def record(self, relative_path: Path, tool_label: str, reason: str, when: Optional[datetime] = None) -> Path:
        when = when or datetime.now()
        # Keep one entry per line even when tools print multi-line errors
        reason = " ".join(str(reason).split())
        line = (
            f"[{when.strftime('%H:%M:%S')}] FAILED: {Path(relative_path).as_posix()} "
            f"| Attempt: {tool_label} | Reason: {reason}\n"
        )
        path = self.path_for(when)
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, 'a', encoding='utf-8') as f:
                f.write(line)
            self.entries_written += 1
        return path
