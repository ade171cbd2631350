"""Declarative tool catalog loaded from the tools JSON document.

The document looks like::

    {
      "ImageOutputExt": ".avif",
      "VideoOutputExt": ".h265.mp4",
      "tools": {
        "avifenc": {
          "category": "image",
          "formats": [".jpg", ".png"],
          "priority": 1,
          "arguments": ["-q", "$QUALITY$", "$IN$", "$OUT$"],
          "parameters": {"QUALITY": 60}
        },
        "ffmpeg": {
          "category": "video",
          "formats": [".mov", ".mp4"],
          "priority": 1,
          "allow_parallel": false,
          "modes": {"gpu": [...], "cpu": [...]}
        }
      },
      "checker": {}
    }

`tools` may also be a list of objects carrying a `name` key. The catalog is
built once at startup and never mutated; resolution returns a new catalog.
"""

import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from mbc.domain.exceptions import ConfigError, ToolNotFoundError
from mbc.domain.models import MediaType

logger = logging.getLogger(__name__)

TOOL_MODES = ("gpu", "cpu")


def _normalize_ext(ext: str) -> str:
    ext = ext.strip().lower()
    return ext if ext.startswith(".") else f".{ext}"


class ToolDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    category: MediaType
    formats: Tuple[str, ...]
    priority: int = 100
    arguments: Tuple[str, ...] = ()
    modes: Dict[str, Tuple[str, ...]] = Field(default_factory=dict)
    parameters: Dict[str, Union[str, int, float]] = Field(default_factory=dict)
    allow_parallel: bool = True
    executable: Optional[str] = None
    version_flag: Optional[str] = "--version"
    timeout_s: Optional[float] = Field(default=None, gt=0)
    # Filled in by ToolCatalog.with_resolved_executables
    executable_path: Optional[str] = None
    # Declaration order, tie-break for equal priority
    order: int = 0

    @field_validator("category", mode="before")
    @classmethod
    def lower_category(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("formats")
    @classmethod
    def normalize_formats(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        formats = tuple(_normalize_ext(ext) for ext in v if ext.strip())
        if not formats:
            raise ValueError("formats must list at least one extension")
        return formats

    @field_validator("modes")
    @classmethod
    def validate_modes(cls, v: Dict[str, Tuple[str, ...]]) -> Dict[str, Tuple[str, ...]]:
        normalized = {key.strip().lower(): args for key, args in v.items()}
        unknown = set(normalized) - set(TOOL_MODES)
        if unknown:
            raise ValueError(f"Unknown modes {sorted(unknown)}. Use one of {list(TOOL_MODES)}")
        return normalized

    @field_validator("parameters")
    @classmethod
    def upper_parameters(cls, v: Dict[str, Union[str, int, float]]) -> Dict[str, Union[str, int, float]]:
        return {key.upper(): value for key, value in v.items()}

    @model_validator(mode="after")
    def validate_template(self):
        if not self.arguments and not self.modes:
            raise ValueError(f"Tool '{self.name}' needs 'arguments' or 'modes'")
        if self.modes and self.category != MediaType.VIDEO:
            raise ValueError(f"Tool '{self.name}': modes are only supported for video tools")
        return self

    @property
    def executable_name(self) -> str:
        return self.executable or self.name

    def supports(self, ext: str, category: MediaType, mode: Optional[str] = None) -> bool:
        if self.category != category or _normalize_ext(ext) not in self.formats:
            return False
        return self.template_for(mode) is not None

    def template_for(self, mode: Optional[str] = None) -> Optional[Tuple[str, ...]]:
        """Argument template for a gpu/cpu mode; mode-less tools serve every mode."""
        if not self.modes:
            return self.arguments or None
        if mode is None:
            return self.arguments or None
        return self.modes.get(mode)


class ToolCatalog(BaseModel):
    model_config = ConfigDict(frozen=True)

    image_output_ext: str = ".avif"
    video_output_ext: str = ".h265.mp4"
    tools: Tuple[ToolDefinition, ...] = ()
    checker: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("image_output_ext", "video_output_ext")
    @classmethod
    def normalize_output_ext(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("output extension must not be empty")
        return _normalize_ext(v)

    def output_ext_for(self, media_type: MediaType) -> str:
        return self.image_output_ext if media_type == MediaType.IMAGE else self.video_output_ext

    def get_tools_for_extension(
        self, ext: str, category: MediaType, mode: Optional[str] = None
    ) -> List[ToolDefinition]:
        """Tools accepting `ext` for `category`, ascending by priority then declaration order."""
        matches = [tool for tool in self.tools if tool.supports(ext, category, mode)]
        return sorted(matches, key=lambda tool: (tool.priority, tool.order))

    def formats_for(self, category: MediaType) -> List[str]:
        seen: List[str] = []
        for tool in self.tools:
            if tool.category != category:
                continue
            for ext in tool.formats:
                if ext not in seen:
                    seen.append(ext)
        return seen

    def with_resolved_executables(
        self, resolver: Callable[[ToolDefinition], str]
    ) -> Tuple["ToolCatalog", List[ToolNotFoundError]]:
        """Returns a catalog of the tools whose executable resolved, plus the failures."""
        resolved: List[ToolDefinition] = []
        failures: List[ToolNotFoundError] = []
        for tool in self.tools:
            try:
                path = resolver(tool)
            except ToolNotFoundError as exc:
                logger.warning(f"Tool unavailable: {exc}")
                failures.append(exc)
                continue
            resolved.append(tool.model_copy(update={"executable_path": path}))
        return self.model_copy(update={"tools": tuple(resolved)}), failures


def _tool_entries(raw_tools: Any) -> List[Dict[str, Any]]:
    if isinstance(raw_tools, dict):
        entries = []
        for name, body in raw_tools.items():
            if not isinstance(body, dict):
                raise ConfigError(f"Tool '{name}' must be an object")
            entries.append({"name": name, **body})
        return entries
    if isinstance(raw_tools, list):
        for body in raw_tools:
            if not isinstance(body, dict) or "name" not in body:
                raise ConfigError("Each tool in the 'tools' list must be an object with a 'name'")
        return list(raw_tools)
    raise ConfigError("'tools' must be an object or a list")


def load_tools(config_path: Path) -> ToolCatalog:
    """Loads the tools JSON document into an immutable ToolCatalog."""
    config_path = Path(config_path)
    if not config_path.exists():
        raise ConfigError(f"Tool configuration not found: {config_path}")

    try:
        with open(config_path, "r", encoding="utf-8-sig") as f:
            data = json.load(f)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in {config_path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Tool configuration root must be an object: {config_path}")
    if "tools" not in data:
        raise ConfigError(f"Tool configuration has no 'tools' section: {config_path}")

    try:
        tools = tuple(
            ToolDefinition(**{**entry, "order": index})
            for index, entry in enumerate(_tool_entries(data["tools"]))
        )
        catalog = ToolCatalog(
            image_output_ext=data.get("ImageOutputExt", ".avif"),
            video_output_ext=data.get("VideoOutputExt", ".h265.mp4"),
            tools=tools,
            checker=data.get("checker") or {},
        )
    except ValidationError as exc:
        raise ConfigError(f"Invalid tool configuration {config_path}: {exc}") from exc

    logger.info(f"Loaded {len(catalog.tools)} tool definitions from {config_path}")
    return catalog
