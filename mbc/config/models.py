from typing import List, Dict, Optional, Union
from pydantic import BaseModel, Field, field_validator, model_validator

QUEUE_SORT_CHOICES = ("name", "size-asc", "size-desc", "ext", "rand")
QUEUE_SORT_ALIASES = {"size": "size-asc"}
SOURCE_ACTIONS = ("keep", "backup", "delete")
MEDIA_FILTERS = ("all", "image", "video")

DEFAULT_IMAGE_EXTENSIONS = [".jpg", ".jpeg", ".png", ".heic", ".heif", ".webp", ".bmp", ".tif", ".tiff"]
DEFAULT_VIDEO_EXTENSIONS = [".mp4", ".mov", ".m4v", ".avi", ".mkv", ".mts", ".m2ts", ".3gp", ".wmv"]


def _normalize_extension(ext: str) -> str:
    ext = ext.strip().lower()
    return ext if ext.startswith(".") else f".{ext}"


def validate_queue_sort(value: str, extensions: Optional[List[str]] = None) -> str:
    mode = (value or "").strip().lower()
    mode = QUEUE_SORT_ALIASES.get(mode, mode)
    if mode not in QUEUE_SORT_CHOICES:
        allowed = ", ".join(QUEUE_SORT_CHOICES)
        raise ValueError(f"Unsupported queue_sort '{value}'. Use one of: {allowed}.")
    if mode == "ext" and extensions is not None and not extensions:
        raise ValueError("queue_sort 'ext' requires a non-empty extensions list.")
    return mode


def parse_param_overrides(items: Optional[List[str]]) -> Dict[str, str]:
    """Parses CLI `KEY=VALUE` pairs into a tunable-parameter dict."""
    params: Dict[str, str] = {}
    for item in items or []:
        if "=" not in item:
            raise ValueError(f"Invalid parameter '{item}'. Expected KEY=VALUE.")
        key, value = item.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError(f"Invalid parameter '{item}'. Key is empty.")
        params[key.upper()] = value.strip()
    return params


class GeneralConfig(BaseModel):
    threads: int = Field(default=1, gt=0)
    # None = detect (nvidia-smi), True/False = forced
    gpu: Optional[bool] = None
    image_extensions: List[str] = Field(default_factory=lambda: list(DEFAULT_IMAGE_EXTENSIONS))
    video_extensions: List[str] = Field(default_factory=lambda: list(DEFAULT_VIDEO_EXTENSIONS))
    min_size_bytes: int = Field(default=10, ge=0)
    skip_marker: str = ".skip"
    include_subdirs: bool = True
    media_filter: str = "all"
    source_action: str = "keep"
    backup_dir: Optional[str] = None
    bin_dir: Optional[str] = "bin"
    params: Dict[str, Union[str, int, float]] = Field(default_factory=dict)
    copy_metadata: bool = False
    preserve_timestamps: bool = True
    queue_sort: str = "name"
    queue_seed: Optional[int] = None
    log_dir: str = "logs"
    debug: bool = False

    @field_validator("image_extensions", "video_extensions")
    @classmethod
    def normalize_extensions(cls, v: List[str]) -> List[str]:
        return [_normalize_extension(ext) for ext in v if ext.strip()]

    @field_validator("skip_marker")
    @classmethod
    def validate_skip_marker(cls, v: str) -> str:
        v = v.strip().lower()
        if not v:
            raise ValueError("skip_marker must not be empty")
        return v if v.startswith(".") else f".{v}"

    @field_validator("media_filter")
    @classmethod
    def validate_media_filter(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in MEDIA_FILTERS:
            raise ValueError(f"Unsupported media_filter: {v}. Use one of {list(MEDIA_FILTERS)}")
        return v

    @field_validator("source_action")
    @classmethod
    def validate_source_action(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in SOURCE_ACTIONS:
            raise ValueError(f"Unsupported source_action: {v}. Use one of {list(SOURCE_ACTIONS)}")
        return v

    @field_validator("params")
    @classmethod
    def normalize_params(cls, v: Dict[str, Union[str, int, float]]) -> Dict[str, Union[str, int, float]]:
        return {key.upper(): value for key, value in v.items()}

    @model_validator(mode="after")
    def validate_combinations(self):
        self.queue_sort = validate_queue_sort(
            self.queue_sort, self.image_extensions + self.video_extensions
        )
        if self.source_action == "backup" and not self.backup_dir:
            raise ValueError("source_action 'backup' requires backup_dir")
        return self


class AppConfig(BaseModel):
    general: GeneralConfig = Field(default_factory=GeneralConfig)
    tools_config: str = "conf/tools.json"
