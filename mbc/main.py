import typer
import logging
import warnings
from pathlib import Path
from typing import Optional, List
from pydantic import ValidationError
from rich.console import Console

# pyexiftool warns about exiftool versions on stderr; keep the console clean
warnings.filterwarnings("ignore")
from mbc.config.loader import load_config
from mbc.config.models import AppConfig, GeneralConfig, parse_param_overrides
from mbc.config.tools import load_tools
from mbc.domain.exceptions import ConfigError, ToolNotFoundError
from mbc.infrastructure.logging import ErrorLog, setup_logging
from mbc.infrastructure.event_bus import EventBus
from mbc.infrastructure.file_scanner import FileClassifier
from mbc.infrastructure.exif_tool import ExifToolAdapter
from mbc.infrastructure.ffprobe import FFprobeAdapter
from mbc.infrastructure.housekeeping import HousekeepingService
from mbc.infrastructure.process_runner import ProcessRunner
from mbc.infrastructure.tool_resolver import ToolResolver, detect_gpu, resolve_executable
from mbc.pipeline.executor import TaskExecutor
from mbc.pipeline.orchestrator import Orchestrator
from mbc.pipeline.scheduler import Scheduler
from mbc.pipeline.task_builder import TaskBuilder
from mbc.ui.console import ConsoleReporter, print_plan

DEFAULT_CONFIG_PATH = Path("conf/mbc.yaml")

app = typer.Typer(help="MBC (Media Batch Converter) - photos to AVIF, videos to H.265")


def _load_app_config(config_path: Optional[Path]) -> AppConfig:
    if config_path is not None:
        return load_config(config_path)
    if DEFAULT_CONFIG_PATH.exists():
        return load_config(DEFAULT_CONFIG_PATH)
    return AppConfig()


def _apply_overrides(config: AppConfig, overrides: dict, params: dict) -> AppConfig:
    """Re-validates the general section with CLI overrides applied."""
    data = config.general.model_dump()
    data.update(overrides)
    data["params"] = {**data.get("params", {}), **params}
    try:
        general = GeneralConfig(**data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid option combination: {exc}") from exc
    return config.model_copy(update={"general": general})


@app.command()
def convert(
    source_dir: Path = typer.Argument(..., help="Directory tree with photos and videos to convert"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML config (default: conf/mbc.yaml)"),
    tools_path: Optional[Path] = typer.Option(None, "--tools", help="Path to the tools JSON catalog (overrides config)"),
    threads: Optional[int] = typer.Option(None, "--threads", "-t", help="Override number of parallel workers"),
    gpu: Optional[bool] = typer.Option(None, "--gpu/--cpu", help="Force GPU or CPU video templates (default: detect)"),
    backup_dir: Optional[Path] = typer.Option(None, "--backup-dir", help="Move converted sources here, mirroring their paths"),
    delete_source: bool = typer.Option(False, "--delete-source", help="Delete sources after a successful conversion"),
    media_filter: Optional[str] = typer.Option(None, "--type", help="Media to convert: all, image, video"),
    params: Optional[List[str]] = typer.Option(None, "--param", "-p", help="Tool parameter override KEY=VALUE (repeatable)"),
    no_subdirs: bool = typer.Option(False, "--no-subdirs", help="Only scan the top-level directory"),
    queue_sort: Optional[str] = typer.Option(None, "--queue-sort", help="Queue order (name, size-asc, size-desc, ext, rand)"),
    queue_seed: Optional[int] = typer.Option(None, "--queue-seed", help="Seed for deterministic random queue order"),
    min_size: Optional[int] = typer.Option(None, "--min-size", help="Files of this many bytes or fewer are ignored"),
    copy_metadata: Optional[bool] = typer.Option(None, "--copy-metadata/--no-copy-metadata", help="Copy tags with exiftool"),
    log_dir: Optional[Path] = typer.Option(None, "--log-dir", help="Directory for conversion.log and error logs"),
    dry_run: bool = typer.Option(False, "--dry-run", help="List what would be converted and exit"),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging")
):
    """Convert every pending photo and video under SOURCE_DIR."""
    console = Console()
    exif = None

    try:
        if not source_dir.is_dir():
            raise ConfigError(f"Source directory not found: {source_dir}")
        if backup_dir is not None and delete_source:
            raise ConfigError("--backup-dir and --delete-source are mutually exclusive")

        config = _load_app_config(config_path)

        overrides = {}
        if threads: overrides["threads"] = threads
        if gpu is not None: overrides["gpu"] = gpu
        if backup_dir is not None:
            overrides["source_action"] = "backup"
            overrides["backup_dir"] = str(backup_dir)
        if delete_source: overrides["source_action"] = "delete"
        if media_filter is not None: overrides["media_filter"] = media_filter
        if no_subdirs: overrides["include_subdirs"] = False
        if queue_sort is not None: overrides["queue_sort"] = queue_sort
        if queue_seed is not None: overrides["queue_seed"] = queue_seed
        if min_size is not None: overrides["min_size_bytes"] = min_size
        if copy_metadata is not None: overrides["copy_metadata"] = copy_metadata
        if log_dir is not None: overrides["log_dir"] = str(log_dir)
        if debug: overrides["debug"] = True
        try:
            param_overrides = parse_param_overrides(params)
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc
        config = _apply_overrides(config, overrides, param_overrides)
        general = config.general

        logger = setup_logging(Path(general.log_dir), debug=general.debug)
        logger.info(f"MBC started: source={source_dir.resolve()}")
        logger.info(
            f"Config: threads={general.threads}, gpu={general.gpu}, type={general.media_filter}, "
            f"source_action={general.source_action}, queue_sort={general.queue_sort}, debug={general.debug}"
        )

        bin_dir = Path(general.bin_dir) if general.bin_dir else None
        full_catalog = load_tools(tools_path or Path(config.tools_config))
        catalog, failures = full_catalog.with_resolved_executables(ToolResolver(bin_dir))
        for failure in failures:
            typer.secho(f"Warning: tool unavailable: {failure}", fg=typer.colors.YELLOW, err=True)
        if not catalog.tools:
            raise ConfigError("No usable conversion tool: every configured tool failed to resolve")
        missing_names = {failure.tool_name for failure in failures}
        unavailable = [tool for tool in full_catalog.tools if tool.name in missing_names]

        use_gpu = general.gpu if general.gpu is not None else detect_gpu()
        logger.info(f"Video mode: {'gpu' if use_gpu else 'cpu'}")

        duration_prober = None
        try:
            duration_prober = FFprobeAdapter(resolve_executable("ffprobe", bin_dir)).get_duration
        except ToolNotFoundError as exc:
            logger.info(f"Video progress disabled: {exc}")

        if general.copy_metadata and not dry_run:
            try:
                exif = ExifToolAdapter(resolve_executable("exiftool", bin_dir, "-ver"))
                exif.et.run()  # Start ExifTool ONCE before processing
                logger.info("ExifTool started")
            except ToolNotFoundError as exc:
                typer.secho(f"Warning: metadata copy disabled: {exc}", fg=typer.colors.YELLOW, err=True)
                exif = None

        bus = EventBus()
        reporter = ConsoleReporter(bus, console)

        backup_root = Path(general.backup_dir).resolve() if general.source_action == "backup" else None
        classifier = FileClassifier(
            image_extensions=general.image_extensions,
            video_extensions=general.video_extensions,
            image_output_ext=catalog.image_output_ext,
            video_output_ext=catalog.video_output_ext,
            skip_marker=general.skip_marker,
            min_size_bytes=general.min_size_bytes,
            exclude_dirs=[backup_root] if backup_root else None,
        )
        task_builder = TaskBuilder(
            catalog,
            image_extensions=general.image_extensions,
            video_extensions=general.video_extensions,
            params=general.params,
            duration_prober=duration_prober,
            unavailable_tools=unavailable,
        )
        executor = TaskExecutor(
            runner=ProcessRunner(event_bus=bus, debug=general.debug),
            error_log=ErrorLog(Path(general.log_dir)),
            event_bus=bus,
            delete_source=general.source_action == "delete",
            preserve_timestamps=general.preserve_timestamps,
            metadata_copier=exif.copy_metadata if exif else None,
        )
        scheduler = Scheduler(executor, event_bus=bus)
        orchestrator = Orchestrator(
            config=config,
            event_bus=bus,
            classifier=classifier,
            task_builder=task_builder,
            scheduler=scheduler,
            use_gpu=use_gpu,
            # A dry run must not touch the tree, not even stale temp files
            housekeeper=None if dry_run else HousekeepingService(
                [catalog.image_output_ext, catalog.video_output_ext]
            ),
        )

        if dry_run:
            _, tasks = orchestrator.plan(source_dir)
            print_plan(console, tasks)
            return

        try:
            with reporter:
                orchestrator.run(source_dir)
        except KeyboardInterrupt:
            reporter.print_summary(scheduler.summary)
            raise

    except KeyboardInterrupt:
        # Ctrl+C was already handled by the scheduler - just exit gracefully
        typer.secho("\n✓ Conversion stopped by user (Ctrl+C)", fg=typer.colors.YELLOW)
        raise typer.Exit(code=130)

    except typer.Exit:
        raise

    except ConfigError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    except Exception as e:
        logging.getLogger(__name__).exception("Fatal error")
        typer.secho(f"Fatal Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    finally:
        if exif:
            exif.close()

if __name__ == "__main__":
    app()
