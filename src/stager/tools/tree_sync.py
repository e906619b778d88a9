"""Directory walking, copying, and byte-level change detection between trees."""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from .path_filter import PathFilter

__all__ = [
    "Comparator",
    "SyncReport",
    "changed_files",
    "copy_files",
    "copy_tree",
    "files_differ",
    "iter_files",
]

LOGGER = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024

Comparator = Callable[[Path, Path], bool]


@dataclass(slots=True)
class SyncReport:
    """Files copied (or skipped because they could not be read) by a sync."""

    copied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.copied)


def iter_files(root: Path | str, path_filter: PathFilter | None = None) -> Iterator[str]:
    """Yield POSIX relative paths of files beneath ``root`` in sorted, top-down order.

    Excluded directories are pruned rather than descended. Symlinked
    directories are not followed; symlinked files are yielded.
    """

    base = Path(root)
    for current, dirnames, filenames in os.walk(base, topdown=True, onerror=_log_walk_error):
        current_path = Path(current)
        relative_dir = current_path.relative_to(base).as_posix()
        prefix = "" if relative_dir == "." else f"{relative_dir}/"

        kept: list[str] = []
        for name in sorted(dirnames):
            relative = f"{prefix}{name}"
            if path_filter is not None and path_filter.is_excluded(relative):
                continue
            if (current_path / name).is_symlink():
                LOGGER.debug("Not following symlinked directory %s", relative)
                continue
            kept.append(name)
        dirnames[:] = kept

        for name in sorted(filenames):
            relative = f"{prefix}{name}"
            if path_filter is not None and path_filter.is_excluded(relative):
                continue
            yield relative


def _log_walk_error(error: OSError) -> None:
    LOGGER.warning("Unable to read directory %s: %s", error.filename, error.strerror or error)


def _copy_one(relative: str, source: Path, destination: Path, report: SyncReport) -> None:
    src = source / relative
    dst = destination / relative
    try:
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(src, dst)
        shutil.copymode(src, dst)
    except OSError as error:
        LOGGER.warning("Skipping file that cannot be copied: %s (%s)", relative, error)
        report.skipped.append(relative)
        return
    report.copied.append(relative)


def copy_tree(source: Path | str, destination: Path | str, path_filter: PathFilter) -> SyncReport:
    """Copy every non-excluded file from ``source`` into ``destination``."""

    source_path = Path(source)
    destination_path = Path(destination)
    report = SyncReport()
    for relative in iter_files(source_path, path_filter):
        _copy_one(relative, source_path, destination_path, report)
    return report


def copy_files(paths: Iterable[str], source: Path | str, destination: Path | str) -> SyncReport:
    """Copy exactly ``paths`` from ``source`` to ``destination``."""

    source_path = Path(source)
    destination_path = Path(destination)
    report = SyncReport()
    for relative in paths:
        _copy_one(relative, source_path, destination_path, report)
    return report


def files_differ(left: Path, right: Path) -> bool:
    """Return ``True`` when the byte contents of ``left`` and ``right`` differ."""

    if left.stat().st_size != right.stat().st_size:
        return True
    with left.open("rb") as left_handle, right.open("rb") as right_handle:
        while True:
            left_chunk = left_handle.read(_CHUNK_SIZE)
            right_chunk = right_handle.read(_CHUNK_SIZE)
            if left_chunk != right_chunk:
                return True
            if not left_chunk:
                return False


def changed_files(
    staging: Path | str,
    original: Path | str,
    path_filter: PathFilter,
    *,
    comparator: Comparator = files_differ,
) -> list[str]:
    """Return staged files that are new or byte-different from ``original``.

    Files that only exist in ``original`` are not reported. Files that cannot
    be read on either side are skipped.
    """

    staging_path = Path(staging)
    original_path = Path(original)
    changes: list[str] = []
    for relative in iter_files(staging_path, path_filter):
        staged = staging_path / relative
        counterpart = original_path / relative
        try:
            if not counterpart.is_file():
                if counterpart.exists() or counterpart.is_symlink():
                    # A directory or dangling link occupies the path in the original tree.
                    LOGGER.warning("Skipping %s: original path is not a regular file", relative)
                    continue
                staged.stat()
                changes.append(relative)
                continue
            if comparator(staged, counterpart):
                changes.append(relative)
        except OSError as error:
            LOGGER.warning("Skipping unreadable file during change detection: %s (%s)", relative, error)
    return changes
