"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
import subprocess
from collections.abc import Callable, Sequence
from pathlib import Path

import pytest

from milouctl.config import AppConfig, load_config


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep host overlay variables and tokens out of every test."""
    for key in list(os.environ):
        if key.startswith("MILOUCTL_") or key == "GITHUB_TOKEN":
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Return a configuration rooted entirely inside ``tmp_path``."""
    return load_config(
        config_file=tmp_path / "missing.yml",
        env={},
        overrides={
            "env_file": str(tmp_path / "milou" / ".env"),
            "logs_dir": str(tmp_path / "logs"),
        },
    )


class FakeRunner:
    """Scripted stand-in for ``subprocess.run`` keyed on argument prefixes."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.inputs: list[str | None] = []
        self._responses: list[tuple[tuple[str, ...], Callable[[], subprocess.CompletedProcess[str]]]] = []

    def respond(
        self,
        prefix: Sequence[str],
        *,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        raises: BaseException | None = None,
    ) -> None:
        def _build() -> subprocess.CompletedProcess[str]:
            if raises is not None:
                raise raises
            return subprocess.CompletedProcess(list(prefix), returncode, stdout, stderr)

        self._responses.insert(0, (tuple(prefix), _build))

    def __call__(
        self,
        args: list[str],
        *,
        input: str | None = None,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        self.calls.append(list(args))
        self.inputs.append(input)
        for prefix, build in self._responses:
            if tuple(args[: len(prefix)]) == prefix:
                return build()
        return subprocess.CompletedProcess(args, 0, "", "")


@pytest.fixture
def fake_runner() -> FakeRunner:
    """Return an empty scripted docker runner."""
    return FakeRunner()
