"""Tests for the bounded directory freshness comparator."""
from __future__ import annotations

import os
import shutil
from pathlib import Path

import pytest

from milouctl.bootstrap.freshness import is_source_newer, iter_sample


def _tree(root: Path, names: list[str], *, mtime: int) -> None:
    for name in names:
        path = root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(name)
        os.utime(path, (mtime, mtime))


def test_missing_target_is_stale(tmp_path: Path) -> None:
    """Nothing to compare against means the source wins."""
    source = tmp_path / "src"
    _tree(source, ["a.py"], mtime=1_000)

    assert is_source_newer(source, tmp_path / "absent") is True


def test_identical_trees_are_fresh(tmp_path: Path) -> None:
    """A copy with the same timestamps is up to date."""
    source = tmp_path / "src"
    _tree(source, ["a.py", "pkg/b.py"], mtime=1_000)
    target = tmp_path / "dst"
    shutil.copytree(source, target, copy_function=shutil.copy2)

    assert is_source_newer(source, target) is False


def test_direction_matters(tmp_path: Path) -> None:
    """Newer source files trigger a refresh; newer target files do not."""
    source = tmp_path / "src"
    target = tmp_path / "dst"
    _tree(source, ["a.py"], mtime=2_000)
    _tree(target, ["a.py"], mtime=1_000)

    assert is_source_newer(source, target) is True
    assert is_source_newer(target, source) is False


def test_sub_second_differences_are_ignored(tmp_path: Path) -> None:
    """Timestamps are compared at whole-second resolution."""
    source = tmp_path / "src"
    target = tmp_path / "dst"
    _tree(source, ["a.py"], mtime=1_000)
    _tree(target, ["a.py"], mtime=1_000)
    os.utime(source / "a.py", (1_000.7, 1_000.7))

    assert is_source_newer(source, target) is False


def test_file_missing_in_target_is_stale(tmp_path: Path) -> None:
    """A sampled file absent from the target triggers a refresh."""
    source = tmp_path / "src"
    target = tmp_path / "dst"
    _tree(source, ["a.py", "b.py"], mtime=1_000)
    _tree(target, ["a.py"], mtime=1_000)

    assert is_source_newer(source, target) is True


def test_changes_beyond_the_sample_go_unnoticed(tmp_path: Path) -> None:
    """Only the first sample_size files in walk order are inspected."""
    source = tmp_path / "src"
    target = tmp_path / "dst"
    _tree(source, ["a.py", "b.py", "c.py"], mtime=1_000)
    _tree(target, ["a.py", "b.py", "c.py"], mtime=1_000)
    os.utime(source / "c.py", (5_000, 5_000))

    assert is_source_newer(source, target, sample_size=2) is False
    assert is_source_newer(source, target, sample_size=3) is True


def test_sample_skips_caches(tmp_path: Path) -> None:
    """Bytecode caches and VCS metadata are never sampled."""
    source = tmp_path / "src"
    _tree(source, ["a.py", "__pycache__/a.pyc", ".git/HEAD"], mtime=1_000)

    assert list(iter_sample(source)) == [Path("a.py")]


def test_invalid_arguments(tmp_path: Path) -> None:
    """A missing source or non-positive sample size is rejected."""
    with pytest.raises(FileNotFoundError):
        is_source_newer(tmp_path / "absent", tmp_path)
    with pytest.raises(ValueError):
        is_source_newer(tmp_path, tmp_path, sample_size=0)
