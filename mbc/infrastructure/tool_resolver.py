import logging
import shutil
import subprocess
from pathlib import Path
from typing import Optional
from mbc.config.tools import ToolDefinition
from mbc.domain.exceptions import ToolNotFoundError

logger = logging.getLogger(__name__)

VERSION_PROBE_TIMEOUT_S = 15.0


def _find_in_dir(name: str, bin_dir: Path) -> Optional[str]:
    if not bin_dir.is_dir():
        return None
    found = shutil.which(name, path=str(bin_dir))
    if found:
        return str(Path(found).resolve())
    return None


def resolve_executable(name: str, bin_dir: Optional[Path] = None, version_flag: Optional[str] = "--version") -> str:
    """Resolves `name` to an absolute executable path.

    Searches `bin_dir` first, then PATH. A tool that is found but fails its
    version probe is treated as broken and rejected.
    """
    path = _find_in_dir(name, Path(bin_dir)) if bin_dir else None
    if path is None:
        found = shutil.which(name)
        path = str(Path(found).resolve()) if found else None
    if path is None:
        location = f"{bin_dir}/ or PATH" if bin_dir else "PATH"
        raise ToolNotFoundError(name, f"executable not found in {location}")

    if version_flag:
        try:
            probe = subprocess.run(
                [path, version_flag],
                capture_output=True,
                text=True,
                timeout=VERSION_PROBE_TIMEOUT_S,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise ToolNotFoundError(name, f"version probe failed ({exc})") from exc
        if probe.returncode != 0:
            raise ToolNotFoundError(name, f"version probe '{version_flag}' exited with code {probe.returncode}")
        first_line = (probe.stdout or probe.stderr or "").strip().splitlines()
        logger.debug(f"TOOL_RESOLVED: {name} -> {path} ({first_line[0] if first_line else 'no version output'})")
    else:
        logger.debug(f"TOOL_RESOLVED: {name} -> {path} (no version probe)")
    return path


class ToolResolver:
    """Resolves ToolDefinition executables against a local bin/ directory and PATH.

    Results are cached per (executable, version flag) so tools sharing a binary
    are probed once.
    """

    def __init__(self, bin_dir: Optional[Path] = None):
        self.bin_dir = Path(bin_dir) if bin_dir else None
        self._cache = {}

    def __call__(self, tool: ToolDefinition) -> str:
        key = (tool.executable_name, tool.version_flag)
        cached = self._cache.get(key)
        if isinstance(cached, ToolNotFoundError):
            raise ToolNotFoundError(tool.name, cached.reason)
        if cached:
            return cached
        try:
            path = resolve_executable(tool.executable_name, self.bin_dir, tool.version_flag)
        except ToolNotFoundError as exc:
            self._cache[key] = exc
            raise ToolNotFoundError(tool.name, exc.reason) from exc
        self._cache[key] = path
        return path


def detect_gpu() -> bool:
    """True when an NVIDIA GPU answers `nvidia-smi -L`."""
    smi = shutil.which("nvidia-smi")
    if not smi:
        return False
    try:
        result = subprocess.run([smi, "-L"], capture_output=True, text=True, timeout=10)
    except (OSError, subprocess.TimeoutExpired):
        return False
    return result.returncode == 0 and "GPU" in (result.stdout or "")
