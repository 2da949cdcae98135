"""Bounded "is the source tree newer?" comparison between two directories.

The comparator walks the source tree in sorted order, looks at no more than
``sample_size`` regular files and compares whole-second modification times
against the same relative path in the target. Any sampled file that is
missing in the target, or strictly newer in the source, makes the source
newer.

Known limitation: only the first ``sample_size`` files in walk order are
inspected, so a change confined to a file beyond the sample goes unnoticed
until an earlier file changes too. Files deleted from the source are never
detected. Callers that need certainty should force a full copy.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from pathlib import Path

LOGGER = logging.getLogger(__name__)

DEFAULT_SAMPLE_SIZE = 50

SKIPPED_DIRECTORIES = frozenset(
    {
        "__pycache__",
        ".git",
        ".mypy_cache",
        ".pytest_cache",
        ".ruff_cache",
        ".tox",
        ".venv",
        "node_modules",
    }
)


def iter_sample(source: Path, *, sample_size: int = DEFAULT_SAMPLE_SIZE) -> Iterator[Path]:
    """Yield up to *sample_size* regular files under *source*, relative to it."""
    yielded = 0
    for root, dirs, files in os.walk(source):
        dirs[:] = sorted(name for name in dirs if name not in SKIPPED_DIRECTORIES)
        root_path = Path(root)
        for name in sorted(files):
            path = root_path / name
            if not path.is_file() or path.is_symlink():
                continue
            yield path.relative_to(source)
            yielded += 1
            if yielded >= sample_size:
                return


def _mtime_seconds(path: Path) -> int:
    return int(path.stat().st_mtime)


def is_source_newer(
    source: Path,
    target: Path,
    *,
    sample_size: int = DEFAULT_SAMPLE_SIZE,
) -> bool:
    """Return ``True`` when *target* should be refreshed from *source*.

    A missing target is always stale. Raises :class:`ValueError` for a
    non-positive *sample_size* and :class:`FileNotFoundError` when *source*
    does not exist.
    """
    if sample_size <= 0:
        raise ValueError("sample_size must be greater than zero.")
    if not source.is_dir():
        raise FileNotFoundError(f"Source directory {source} does not exist.")
    if not target.exists():
        LOGGER.debug("Target %s missing; treating source as newer", target)
        return True

    for relative in iter_sample(source, sample_size=sample_size):
        target_file = target / relative
        try:
            target_mtime = _mtime_seconds(target_file)
        except FileNotFoundError:
            LOGGER.debug("%s missing in target; source is newer", relative)
            return True
        if _mtime_seconds(source / relative) > target_mtime:
            LOGGER.debug("%s newer in source; refresh required", relative)
            return True
    return False


__all__ = ["DEFAULT_SAMPLE_SIZE", "SKIPPED_DIRECTORIES", "is_source_newer", "iter_sample"]
