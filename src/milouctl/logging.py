"""Structured operation logging for milouctl.

Every CLI operation appends one JSON record to ``operations.jsonl`` and a
single summary line to ``milouctl.log`` inside the configured logs directory.
Records carry the command, its arguments, the target, the steps performed and
a result block. Values that look like credentials are masked before they are
written; the logger disables itself rather than failing a command when the
logs directory is not writable.
"""
from __future__ import annotations

import json
import logging
import os
import pwd
import re
import uuid
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from rich.logging import RichHandler

from . import __version__

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG_NAME = "operations.jsonl"
HUMAN_LOG_NAME = "milouctl.log"
MASK = "********"

_SECRET_KEY_PATTERN = re.compile(
    r"(PASSWORD|SECRET|TOKEN|ENCRYPTION_KEY|PASSWD|CREDENTIAL)", re.IGNORECASE
)
_SECRET_VALUE_PATTERN = re.compile(r"\b(ghp|gho|ghs|ghu|github_pat)_[A-Za-z0-9_]+")
_ASSIGNMENT_PATTERN = re.compile(r"\b([A-Za-z_][A-Za-z0-9_]*)=(\S+)")


def is_secret_key(key: str) -> bool:
    """Return ``True`` when *key* names a credential-like value."""
    return bool(_SECRET_KEY_PATTERN.search(key))


def mask_text(text: str, secrets: Iterable[str] = ()) -> str:
    """Mask known secrets, token-shaped words and ``SECRET_KEY=value`` pairs."""
    masked = text
    for secret in secrets:
        if secret:
            masked = masked.replace(secret, MASK)
    masked = _SECRET_VALUE_PATTERN.sub(MASK, masked)

    def _mask_assignment(match: re.Match[str]) -> str:
        key = match.group(1)
        if is_secret_key(key):
            return f"{key}={MASK}"
        return match.group(0)

    return _ASSIGNMENT_PATTERN.sub(_mask_assignment, masked)


def mask_mapping(values: Mapping[str, object]) -> dict[str, object]:
    """Return a copy of *values* with credential-like entries masked."""
    masked: dict[str, object] = {}
    for key, value in values.items():
        if is_secret_key(str(key)) and value not in (None, ""):
            masked[str(key)] = MASK
        elif isinstance(value, Mapping):
            masked[str(key)] = mask_mapping(value)
        elif isinstance(value, str):
            masked[str(key)] = mask_text(value)
        else:
            masked[str(key)] = value
    return masked


def _sanitise(value: object) -> object:
    """Convert *value* into JSON-safe primitives."""
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return mask_text(value)
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitise(item) for key, item in mask_mapping(value).items()}
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    return mask_text(str(value))


def configure_console_logging(verbose: bool) -> None:
    """Route package diagnostics to stderr through Rich, DEBUG when *verbose*."""
    package_logger = logging.getLogger("milouctl")
    level = logging.DEBUG if verbose else logging.WARNING
    package_logger.setLevel(level)
    for handler in package_logger.handlers:
        if isinstance(handler, RichHandler):
            handler.setLevel(level)
            return
    handler = RichHandler(show_path=False, rich_tracebacks=False)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    package_logger.addHandler(handler)


@dataclass(slots=True)
class OperationScope:
    """Accumulates steps and the final result for a single operation."""

    operation_id: str
    command: str
    args: dict[str, object]
    target: dict[str, object] | None
    started_at: datetime
    steps: list[dict[str, object]] = field(default_factory=list)
    result: dict[str, object] | None = None

    def add_step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = mask_text(detail)
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self._set_result(
            "success",
            message,
            rc=0,
            changed=changed,
            backups=backups,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int | None = None,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation complete with warnings."""
        self._set_result(
            "warning",
            message,
            rc=0,
            warnings=list(warnings) if warnings is not None else [message],
            errors=errors,
            changed=changed,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int = 1,
        warnings: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation failed."""
        self._set_result(
            "error",
            message,
            rc=rc,
            warnings=warnings,
            errors=list(errors) if errors is not None else [message],
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        rc: int,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int | None = None,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": mask_text(message),
            "rc": rc,
        }
        if changed is not None:
            result["changed"] = changed
        if warnings is not None:
            result["warnings"] = [mask_text(str(item)) for item in warnings]
        if errors is not None:
            result["errors"] = [mask_text(str(item)) for item in errors]
        if backups is not None:
            result["backups"] = [str(item) for item in backups]
        if context:
            result["context"] = _sanitise(dict(context))
        self.result = result


class StructuredLogger:
    """Append-only JSONL operations log with a human-readable companion."""

    def __init__(self, log_dir: Path) -> None:
        self._log_dir = Path(log_dir)
        self._operations_log_path = self._log_dir / OPERATIONS_LOG_NAME
        self._human_log_path = self._log_dir / HUMAN_LOG_NAME
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.debug("Disabling operations log; cannot create %s: %s", self._log_dir, exc)
            self._enabled = False

    @property
    def operations_log_path(self) -> Path:
        """Return the JSONL log location."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Open an operation scope and write its record when the block exits."""
        scope = OperationScope(
            operation_id=uuid.uuid4().hex,
            command=command,
            args=dict(args or {}),
            target=dict(target) if target is not None else None,
            started_at=datetime.now(tz=UTC),
        )
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                code = getattr(exc, "exit_code", None)
                if code == 0:
                    scope.success("Completed.")
                else:
                    scope.error(
                        f"Operation aborted: {type(exc).__name__}",
                        rc=code if isinstance(code, int) else 1,
                    )
            self._write(scope)
            raise
        if scope.result is None:
            scope.success("Completed.")
        self._write(scope)

    def _write(self, scope: OperationScope) -> None:
        if not self._enabled:
            return
        finished = datetime.now(tz=UTC)
        record: dict[str, object] = {
            "op_id": scope.operation_id,
            "ts": finished.isoformat(),
            "duration_ms": int((finished - scope.started_at).total_seconds() * 1000),
            "user": _current_user(),
            "command": scope.command,
            "args": _sanitise(scope.args),
            "target": _sanitise(scope.target) if scope.target is not None else None,
            "steps": list(scope.steps),
            "result": scope.result,
            "context": {"milouctl_version": __version__},
        }
        status = (scope.result or {}).get("status", "unknown")
        message = (scope.result or {}).get("message", "")
        human_line = (
            f"{finished.isoformat()} {scope.operation_id[:8]} {scope.command} "
            f"status={status} {message}\n"
        )
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
            with self._human_log_path.open("a", encoding="utf-8") as handle:
                handle.write(human_line)
        except OSError as exc:
            LOGGER.debug("Disabling operations log after write failure: %s", exc)
            self._enabled = False


def _current_user() -> str:
    try:
        return pwd.getpwuid(os.geteuid()).pw_name
    except KeyError:
        return str(os.environ.get("USER", "unknown"))


__all__ = [
    "LOGGER",
    "MASK",
    "OperationScope",
    "StructuredLogger",
    "configure_console_logging",
    "is_secret_key",
    "mask_mapping",
    "mask_text",
]
