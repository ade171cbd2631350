import logging
import os
from pathlib import Path
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

TEMP_SUFFIX = ".tmp"

class HousekeepingService:
    """Service for cleaning up temp outputs left behind by interrupted runs."""

    def __init__(self, output_suffixes: Iterable[str]):
        self.temp_suffixes = tuple(f"{suffix.lower()}{TEMP_SUFFIX}" for suffix in output_suffixes)

    def cleanup_temp_files(self, directory: Path, exclude_dirs: Optional[Iterable[Path]] = None) -> int:
        """Recursively removes `<output>.tmp` files; unrelated .tmp files are left alone."""
        excluded = {Path(d).resolve() for d in (exclude_dirs or [])}
        removed = 0
        for root, dirs, files in os.walk(directory):
            dirs[:] = [d for d in dirs if (Path(root) / d).resolve() not in excluded]
            for file in files:
                if not file.lower().endswith(self.temp_suffixes):
                    continue
                try:
                    (Path(root) / file).unlink()
                    removed += 1
                except OSError as exc:
                    logger.warning(f"Cannot remove stale temp file {file}: {exc}")
        if removed:
            logger.info(f"Removed {removed} stale temp files under {directory}")
        return removed
