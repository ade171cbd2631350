"""Turns pending source files into Task descriptors.

For each file the builder decides the media type, derives the output, temp and
backup paths, and expands every matching tool's argument template into a
ResolvedCommand, in priority order. Nothing touches the filesystem here;
backup directories are created by the executor when a task succeeds.
"""

import re
import logging
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union
from mbc.config.tools import ToolCatalog, ToolDefinition
from mbc.domain.models import MediaFile, MediaType, ResolvedCommand, Task
from mbc.infrastructure.housekeeping import TEMP_SUFFIX

logger = logging.getLogger(__name__)

PLACEHOLDER_REGEX = re.compile(r"\$([A-Za-z0-9_]+)\$")


class UnresolvedPlaceholder(ValueError):
    pass


def expand_template(template, values: Dict[str, str]) -> List[str]:
    """Substitutes $NAME$ placeholders; raises UnresolvedPlaceholder for unknown names."""
    def _replace(match: re.Match) -> str:
        name = match.group(1).upper()
        if name not in values:
            raise UnresolvedPlaceholder(name)
        return values[name]

    return [PLACEHOLDER_REGEX.sub(_replace, token) for token in template]


class TaskBuilder:
    def __init__(
        self,
        catalog: ToolCatalog,
        image_extensions: List[str],
        video_extensions: List[str],
        params: Optional[Dict[str, Union[str, int, float]]] = None,
        duration_prober: Optional[Callable[[Path], Optional[float]]] = None,
        unavailable_tools: Optional[List[ToolDefinition]] = None,
    ):
        self.catalog = catalog
        self.image_extensions = {ext.lower() for ext in image_extensions}
        self.video_extensions = {ext.lower() for ext in video_extensions}
        self.params = {key.upper(): str(value) for key, value in (params or {}).items()}
        self.duration_prober = duration_prober
        self.unavailable_tools = unavailable_tools or []

    def media_type_for(self, ext: str) -> Optional[MediaType]:
        ext = ext.lower()
        if ext in self.image_extensions:
            return MediaType.IMAGE
        if ext in self.video_extensions:
            return MediaType.VIDEO
        return None

    @staticmethod
    def command_key(ext: str, media_type: MediaType, use_gpu: bool) -> str:
        if media_type == MediaType.VIDEO:
            return f"{ext}_{'gpu' if use_gpu else 'cpu'}"
        return ext

    def _resolve_commands(self, tools: List[ToolDefinition], mode: Optional[str], source: Path, temp_output: Path) -> List[ResolvedCommand]:
        commands: List[ResolvedCommand] = []
        for tool in tools:
            values = {key.upper(): str(value) for key, value in tool.parameters.items()}
            values.update(self.params)
            values["IN"] = str(source)
            values["OUT"] = str(temp_output)
            try:
                arguments = expand_template(tool.template_for(mode), values)
            except UnresolvedPlaceholder as exc:
                logger.warning(f"Tool '{tool.name}' skipped for {source.name}: no value for ${exc.args[0]}$")
                continue
            commands.append(ResolvedCommand(
                tool_name=tool.name,
                executable=tool.executable_path or tool.executable_name,
                arguments=arguments,
                timeout_s=tool.timeout_s,
            ))
        return commands

    def _missing_tools_message(self, ext: str, media_type: MediaType, key: str, mode: Optional[str]) -> str:
        missing = [
            tool.name for tool in self.unavailable_tools
            if tool.supports(ext, media_type, mode)
        ]
        if missing:
            return f"No usable tool for '{key}' (unavailable: {', '.join(missing)})"
        return f"No tool configured for '{key}'"

    def build_task(
        self,
        media_file: MediaFile,
        root_dir: Path,
        backup_root: Optional[Path] = None,
        use_gpu: bool = False,
    ) -> Optional[Task]:
        ext = media_file.extension.lower()
        media_type = self.media_type_for(ext)
        if media_type is None:
            logger.debug(f"TASK_DROP: {media_file.relative_path} (unrecognized extension {ext})")
            return None

        source = media_file.path
        final_output = source.with_name(f"{source.stem}{self.catalog.output_ext_for(media_type)}")
        temp_output = final_output.with_name(f"{final_output.name}{TEMP_SUFFIX}")
        try:
            relative_path = source.relative_to(root_dir)
        except ValueError:
            relative_path = media_file.relative_path
        backup_path = Path(backup_root) / relative_path if backup_root else None

        mode = ("gpu" if use_gpu else "cpu") if media_type == MediaType.VIDEO else None
        key = self.command_key(ext, media_type, use_gpu)
        tools = self.catalog.get_tools_for_extension(ext, media_type, mode)
        commands = self._resolve_commands(tools, mode, source, temp_output)

        build_error = None
        if not commands:
            build_error = self._missing_tools_message(ext, media_type, key, mode)
            logger.warning(f"TASK_NO_TOOL: {relative_path}: {build_error}")

        duration = None
        if media_type == MediaType.VIDEO and commands and self.duration_prober:
            duration = self.duration_prober(source)

        # Any fallback may end up running, so one exclusive tool makes the whole task sequential
        resolved_names = {command.tool_name for command in commands}
        allow_parallel = all(tool.allow_parallel for tool in tools if tool.name in resolved_names)

        return Task(
            source_path=source,
            relative_path=relative_path,
            temp_output_path=temp_output,
            final_output_path=final_output,
            backup_dir=Path(backup_root) if backup_root else None,
            backup_path=backup_path,
            media_type=media_type,
            candidate_commands=commands,
            duration_seconds=duration,
            allow_parallel=allow_parallel,
            source_size_bytes=media_file.size_bytes,
            build_error=build_error,
        )

    def build_tasks(
        self,
        pending_files: List[MediaFile],
        root_dir: Path,
        backup_root: Optional[Path] = None,
        media_type_filter: Optional[MediaType] = None,
        use_gpu: bool = False,
    ) -> List[Task]:
        """Builds one Task per pending file; files outside the media filter are dropped."""
        tasks: List[Task] = []
        for media_file in pending_files:
            if media_type_filter is not None and self.media_type_for(media_file.extension) != media_type_filter:
                continue
            task = self.build_task(media_file, root_dir, backup_root, use_gpu)
            if task is None:
                continue
            tasks.append(task)
        logger.info(
            f"TASKS_BUILT: {len(tasks)} tasks "
            f"({sum(1 for t in tasks if t.build_error)} without a usable tool)"
        )
        return tasks
