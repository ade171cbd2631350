"""Exception types for the media batch converter.

Only errors that abort an operation are exceptions. A single failed tool
attempt is reported as an `AttemptResult` value, and an exhausted fallback
chain as a `TaskResult` with `TaskStatus.FAILED` (see `domain/models.py`).
"""


class MbcError(Exception):
    """Base class for all converter errors."""

    pass


class ConfigError(MbcError):
    """Tool or application configuration is missing or malformed.

    Fatal: raised before any file is touched and mapped to exit code 1.
    """

    pass


class ToolNotFoundError(MbcError):
    """An executable is not present in bin/ or on PATH, or fails its version probe."""

    def __init__(self, tool_name: str, reason: str):
        self.tool_name = tool_name
        self.reason = reason
        super().__init__(f"{tool_name}: {reason}")


class FilesystemConflict(MbcError):
    """Destination is occupied and no collision-tagged name could be found."""

    pass
