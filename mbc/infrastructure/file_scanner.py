import logging
import os
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple
from mbc.domain.models import MatchEntry, MediaFile, ScanResult

logger = logging.getLogger(__name__)


def _lower_exts(extensions: Iterable[str]) -> List[str]:
    return [(ext if ext.startswith(".") else f".{ext}").lower() for ext in extensions]


def make_match_key(relative_dir: Path, base_name: str, output_ext: str) -> str:
    """Relative path of the output a file produces or is, casefolded, POSIX separators."""
    return (relative_dir / f"{base_name}{output_ext}").as_posix().casefold()


class FileClassifier:
    """Recursively scans a tree and pairs sources with their converted outputs.

    A converted output is recognised by suffix (`.h265.mp4`, `.avif`) and keyed by
    its own relative path. A source is keyed by the path of the output its media
    type would produce, so `photo.jpg` and `photo.avif` share a key whether or not
    the output exists yet, while `clip.mov` next to `clip.avif` does not.
    """

    def __init__(
        self,
        image_extensions: List[str],
        video_extensions: List[str],
        image_output_ext: str,
        video_output_ext: str,
        skip_marker: str = ".skip",
        min_size_bytes: int = 10,
        exclude_dirs: Optional[List[Path]] = None,
    ):
        self.image_extensions = _lower_exts(image_extensions)
        self.video_extensions = _lower_exts(video_extensions)
        self.image_output_ext = image_output_ext.lower()
        self.video_output_ext = video_output_ext.lower()
        self.skip_marker = skip_marker.lower()
        self.min_size_bytes = min_size_bytes
        self.exclude_dirs = [Path(d).resolve() for d in (exclude_dirs or [])]
        # Longest suffix first so '.h265.mp4' wins over a plain '.mp4' rule
        self._output_suffixes = sorted(
            {self.image_output_ext, self.video_output_ext}, key=len, reverse=True
        )

    @property
    def source_extensions(self) -> List[str]:
        return self.image_extensions + self.video_extensions

    def _iter_files(self, root_dir: Path, include_subdirs: bool):
        for root, dirs, files in os.walk(str(root_dir)):
            root_path = Path(root)

            if not include_subdirs:
                dirs[:] = []
            else:
                # Deterministic traversal; never descend into the backup tree
                dirs[:] = sorted(
                    d for d in dirs if (root_path / d).resolve() not in self.exclude_dirs
                )
            files.sort()

            for file_name in files:
                yield root_path / file_name

    def _converted_base(self, name_lower: str, name: str) -> Tuple[Optional[str], Optional[str]]:
        for suffix in self._output_suffixes:
            if name_lower.endswith(suffix) and len(name) > len(suffix):
                return name[: -len(suffix)], suffix
        return None, None

    def output_ext_for(self, ext: str) -> Optional[str]:
        if ext in self.image_extensions:
            return self.image_output_ext
        if ext in self.video_extensions:
            return self.video_output_ext
        return None

    def classify(self, file_path: Path) -> Tuple[str, Optional[str], Optional[str]]:
        """Returns (kind, base name, output extension).

        kind is one of converted/source/skipped/ignored. For a converted file the
        output extension is the suffix it matched; for a source it is the suffix
        its conversion would write.
        """
        name = file_path.name
        name_lower = name.lower()

        base, suffix = self._converted_base(name_lower, name)
        if base is not None:
            return "converted", base, suffix

        ext = file_path.suffix.lower()
        output_ext = self.output_ext_for(ext)
        if output_ext is None:
            return "ignored", None, None
        # Marker must sit immediately before the final known extension: a.skip.jpg
        if name_lower.endswith(self.skip_marker + ext):
            return "skipped", None, None
        return "source", file_path.stem, output_ext

    def scan(self, root_dir: Path, include_subdirs: bool = True) -> ScanResult:
        """Walks `root_dir` and returns the classified match index."""
        root_dir = Path(root_dir)
        result = ScanResult(root_dir=root_dir)
        entries: Dict[str, MatchEntry] = {}

        for file_path in self._iter_files(root_dir, include_subdirs):
            kind, base, output_ext = self.classify(file_path)
            if kind == "ignored":
                continue
            if kind == "skipped":
                result.skipped.append(file_path)
                continue

            try:
                size = file_path.stat().st_size
            except OSError as exc:
                logger.warning(f"Cannot stat {file_path}: {exc}")
                continue
            # Zero-byte lockfiles and placeholders are not real media
            if size <= self.min_size_bytes:
                result.ignored_small += 1
                continue

            relative_path = file_path.relative_to(root_dir)
            key = make_match_key(relative_path.parent, base, output_ext)
            media_file = MediaFile(
                path=file_path,
                relative_path=relative_path,
                # Converted files carry the whole matched suffix (.h265.mp4, not .mp4)
                extension=output_ext if kind == "converted" else file_path.suffix.lower(),
                size_bytes=size,
                match_key=key,
            )
            entry = entries.setdefault(key, MatchEntry())

            if kind == "converted":
                if entry.converted_file is not None:
                    logger.warning(
                        f"Duplicate converted output for '{key}': keeping {entry.converted_file.relative_path}, "
                        f"ignoring {relative_path}"
                    )
                    continue
                entry.converted_file = media_file
            elif entry.original_file is None:
                entry.original_file = media_file
            else:
                logger.warning(
                    f"Match key collision '{key}': {entry.original_file.relative_path} and {relative_path} "
                    f"would convert to the same output; both excluded"
                )
                entry.collisions.append(media_file)

        for key, entry in entries.items():
            if entry.is_ambiguous:
                result.collisions[key] = [entry.original_file, *entry.collisions]
            elif entry.original_file and entry.converted_file:
                result.converted.append(entry)
            elif entry.original_file:
                result.pending.append(entry.original_file)
            elif entry.converted_file:
                result.orphans.append(entry.converted_file)

        result.entries = entries
        logger.info(
            f"SCAN_END ({root_dir}): pending={len(result.pending)}, converted={len(result.converted)}, "
            f"orphans={len(result.orphans)}, skipped={len(result.skipped)}, "
            f"collisions={len(result.collisions)}, ignored_small={result.ignored_small}"
        )
        return result
