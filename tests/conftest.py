import sys
import pytest
import yaml
from pathlib import Path
from mbc.config.models import AppConfig
from mbc.config.tools import ToolCatalog, ToolDefinition
from mbc.infrastructure.event_bus import EventBus
from mbc.infrastructure.file_scanner import FileClassifier
from mbc.infrastructure.logging import ErrorLog
from mbc.infrastructure.process_runner import ProcessRunner
from mbc.pipeline.executor import TaskExecutor
from mbc.pipeline.orchestrator import Orchestrator
from mbc.pipeline.scheduler import Scheduler
from mbc.pipeline.task_builder import TaskBuilder

# ============================================================================
# Fake tools: real child processes standing in for avifenc / ffmpeg
# ============================================================================

COPY_SCRIPT = "import shutil,sys; shutil.copy(sys.argv[1], sys.argv[2])"
SHRINK_SCRIPT = (
    "import sys; data = open(sys.argv[1], 'rb').read(); "
    "open(sys.argv[2], 'wb').write(data[: len(data) // 2])"
)
FAIL_SCRIPT = "import sys; sys.stderr.write('encoder exploded\\n'); sys.exit(3)"
NO_OUTPUT_SCRIPT = "import sys; sys.exit(0)"
PARTIAL_THEN_FAIL_SCRIPT = "import sys; open(sys.argv[2], 'wb').write(b'partial'); sys.exit(1)"
SLOW_SCRIPT = "import time; time.sleep(30)"
PROGRESS_SCRIPT = (
    "import shutil, sys; "
    "print('frame=1 time=00:00:05.00 speed=2.0x', flush=True); "
    "shutil.copy(sys.argv[1], sys.argv[2])"
)


def python_tool(name, script, category="image", formats=(".jpg", ".png"), priority=1, **kwargs):
    """ToolDefinition running `python -c script $IN$ $OUT$`, already resolved."""
    return ToolDefinition(
        name=name,
        category=category,
        formats=formats,
        priority=priority,
        arguments=("-c", script, "$IN$", "$OUT$"),
        executable_path=sys.executable,
        **kwargs,
    )


def make_catalog(*tools):
    return ToolCatalog(
        image_output_ext=".avif",
        video_output_ext=".h265.mp4",
        tools=tuple(tool.model_copy(update={"order": index}) for index, tool in enumerate(tools)),
    )


def write_file(path: Path, size: int = 1000, fill: bytes = b"x") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes((fill * size)[:size])
    return path

# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def sample_config():
    """Returns a sample AppConfig object for testing."""
    return AppConfig(
        general={
            "threads": 1,
            "gpu": False,
            "image_extensions": [".jpg", ".png"],
            "video_extensions": [".mov", ".mp4"],
            "min_size_bytes": 10,
            "log_dir": "logs",
        }
    )


@pytest.fixture
def config_yaml_path(tmp_path):
    """Creates a temporary YAML config file."""
    conf_dir = tmp_path / "conf"
    conf_dir.mkdir()
    conf_file = conf_dir / "mbc.yaml"

    content = {
        'general': {
            'threads': 2,
            'gpu': False,
            'image_extensions': ['jpg', 'PNG'],
            'video_extensions': ['mov'],
            'min_size_bytes': 0,
            'source_action': 'keep',
            'params': {'quality': 55},
            'debug': False,
        },
        'tools_config': str(conf_dir / "tools.json"),
    }

    with open(conf_file, 'w') as f:
        yaml.dump(content, f)

    return conf_file

# ============================================================================
# EventBus Fixtures
# ============================================================================

@pytest.fixture
def event_bus():
    """Returns a fresh EventBus instance."""
    return EventBus()


@pytest.fixture
def recorded_events(event_bus):
    """Every event published on `event_bus`, in order."""
    from mbc.domain.events import Event
    events = []
    event_bus.subscribe(Event, events.append)
    return events

# ============================================================================
# File System Fixtures
# ============================================================================

@pytest.fixture
def source_dir(tmp_path):
    """Creates a test source directory."""
    src = tmp_path / "media"
    src.mkdir()
    return src


@pytest.fixture
def log_dir(tmp_path):
    return tmp_path / "logs"

# ============================================================================
# Pipeline Fixtures
# ============================================================================

@pytest.fixture
def build_orchestrator(event_bus, log_dir):
    """Factory wiring a full pipeline around a catalog of fake tools."""

    def _build(catalog, threads=1, backup_dir=None, delete_source=False, media_filter="all",
               params=None, duration_prober=None):
        general = {
            "threads": threads,
            "gpu": False,
            "image_extensions": [".jpg", ".png"],
            "video_extensions": [".mov", ".mp4"],
            "media_filter": media_filter,
            "log_dir": str(log_dir),
            "params": params or {},
        }
        if backup_dir is not None:
            general["source_action"] = "backup"
            general["backup_dir"] = str(backup_dir)
        elif delete_source:
            general["source_action"] = "delete"
        config = AppConfig(general=general)

        classifier = FileClassifier(
            image_extensions=config.general.image_extensions,
            video_extensions=config.general.video_extensions,
            image_output_ext=catalog.image_output_ext,
            video_output_ext=catalog.video_output_ext,
            exclude_dirs=[backup_dir] if backup_dir else None,
        )
        builder = TaskBuilder(
            catalog,
            image_extensions=config.general.image_extensions,
            video_extensions=config.general.video_extensions,
            params=config.general.params,
            duration_prober=duration_prober,
        )
        executor = TaskExecutor(
            runner=ProcessRunner(event_bus=event_bus),
            error_log=ErrorLog(log_dir),
            event_bus=event_bus,
            delete_source=delete_source,
        )
        scheduler = Scheduler(executor, event_bus=event_bus)
        return Orchestrator(
            config=config,
            event_bus=event_bus,
            classifier=classifier,
            task_builder=builder,
            scheduler=scheduler,
        )

    return _build


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests that spawn long-running child processes"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )
