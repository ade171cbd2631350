import exiftool
import threading
import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

class ExifToolAdapter:
    """Wrapper around pyexiftool that copies source tags onto converted outputs.

    One exiftool process is started lazily and shared; calls are serialized
    because the batch protocol talks over a single pipe.
    """

    def __init__(self, executable: Optional[str] = None):
        self.et = exiftool.ExifTool(executable=executable)
        self._lock = threading.Lock()

    def copy_metadata(self, source: Path, target: Path) -> bool:
        """Copies all tags from `source` into `target` in place. Returns False on failure."""
        with self._lock:
            try:
                if not self.et.running:
                    self.et.run()
                self.et.execute(
                    "-TagsFromFile", str(source),
                    "-all:all",
                    "-overwrite_original",
                    str(target),
                )
            except Exception as exc:
                logger.warning(f"Metadata copy failed for {target.name}: {exc}")
                return False
        return True

    def close(self):
        with self._lock:
            if self.et.running:
                self.et.terminate()
                logger.info("ExifTool terminated")
