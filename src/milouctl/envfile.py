"""Reading and writing the flat ``KEY=VALUE`` configuration file."""
from __future__ import annotations

import os
import re
import tempfile
from collections.abc import Iterable, Mapping
from pathlib import Path

ENV_FILE_MODE = 0o600

_KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class EnvFileError(RuntimeError):
    """Raised when the configuration file cannot be read or written."""


def _strip_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] == "'":
        return value[1:-1]
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return re.sub(r"\\(.)", r"\1", value[1:-1])
    return value


def parse_env_text(text: str) -> dict[str, str]:
    """Parse ``KEY=VALUE`` lines, ignoring blanks and ``#`` comments."""
    values: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].lstrip()
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not _KEY_PATTERN.match(key):
            continue
        values[key] = _strip_quotes(value.strip())
    return values


def read_env_file(path: Path) -> dict[str, str]:
    """Return parsed values from *path*; a missing file yields an empty mapping."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError as exc:
        raise EnvFileError(f"Cannot read configuration file {path}: {exc}") from exc
    except UnicodeDecodeError as exc:
        raise EnvFileError(f"Configuration file {path} is not valid UTF-8: {exc}") from exc
    return parse_env_text(text)


def _format_value(value: str) -> str:
    if value == "" or re.search(r"[\s#'\"$`\\]", value) is None:
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def render_env(values: Mapping[str, str], *, header: Iterable[str] = ()) -> str:
    """Render *values* as ``KEY=VALUE`` lines preceded by optional comments."""
    lines = [f"# {line}" if line else "#" for line in header]
    for key, value in values.items():
        if not _KEY_PATTERN.match(key):
            raise EnvFileError(f"Invalid configuration key: {key!r}.")
        lines.append(f"{key}={_format_value(str(value))}")
    return "\n".join(lines) + "\n"


def merge_env_text(text: str, updates: Mapping[str, str]) -> str:
    """Return *text* with *updates* applied, keeping comments and key order."""
    pending = dict(updates)
    lines: list[str] = []
    for raw_line in text.splitlines():
        stripped = raw_line.strip()
        key = stripped.partition("=")[0].strip() if "=" in stripped else ""
        if stripped.startswith("export "):
            key = stripped[len("export ") :].partition("=")[0].strip()
        if key and not stripped.startswith("#") and key in pending:
            lines.append(f"{key}={_format_value(str(pending.pop(key)))}")
            continue
        lines.append(raw_line)
    for key, value in pending.items():
        if not _KEY_PATTERN.match(key):
            raise EnvFileError(f"Invalid configuration key: {key!r}.")
        lines.append(f"{key}={_format_value(str(value))}")
    return "\n".join(lines) + "\n"


def atomic_write_text(path: Path, text: str, *, mode: int = ENV_FILE_MODE) -> None:
    """Atomically replace *path* with *text* and apply *mode*."""
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise EnvFileError(f"Cannot create directory {path.parent}: {exc}") from exc
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except OSError as exc:
        raise EnvFileError(f"Failed to write configuration file {path}: {exc}") from exc
    finally:
        tmp_path.unlink(missing_ok=True)


def write_env_file(
    path: Path,
    values: Mapping[str, str],
    *,
    header: Iterable[str] = (),
) -> None:
    """Replace *path* with freshly rendered *values* (mode 0600)."""
    atomic_write_text(path, render_env(values, header=header))


def update_env_file(path: Path, updates: Mapping[str, str]) -> None:
    """Apply *updates* to *path* in place, creating the file when missing."""
    path = Path(path)
    try:
        current = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        current = ""
    except OSError as exc:
        raise EnvFileError(f"Cannot read configuration file {path}: {exc}") from exc
    except UnicodeDecodeError as exc:
        raise EnvFileError(f"Configuration file {path} is not valid UTF-8: {exc}") from exc
    atomic_write_text(path, merge_env_text(current, updates))


__all__ = [
    "ENV_FILE_MODE",
    "EnvFileError",
    "atomic_write_text",
    "merge_env_text",
    "parse_env_text",
    "read_env_file",
    "render_env",
    "update_env_file",
    "write_env_file",
]
