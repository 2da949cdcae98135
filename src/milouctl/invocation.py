"""Capture and replay of the CLI invocation across a privilege drop.

The argument vector is captured once at process start. When the process
re-executes itself as the service account, the arguments travel in a single
``MILOUCTL_ORIGINAL_ARGS`` variable encoded with :func:`shlex.join`, and the
resumed process decodes them with :func:`shlex.split` exactly once, popping
the variable so that nested invocations never replay a stale vector.
"""
from __future__ import annotations

import logging
import os
import shlex
import sys
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass, field, fields
from pathlib import Path

from .logging import mask_text

LOGGER = logging.getLogger(__name__)

PROGRAM_NAME = "milouctl"

ORIGINAL_COMMAND_ENV = "MILOUCTL_ORIGINAL_COMMAND"
ORIGINAL_ARGS_ENV = "MILOUCTL_ORIGINAL_ARGS"
USER_SWITCH_ENV = "MILOUCTL_USER_SWITCH"
TOKEN_FILE_ENV = "MILOUCTL_TOKEN_FILE"
TOKEN_ENV = "GITHUB_TOKEN"

OPTION_ENV_VARS: dict[str, str] = {
    "verbose": "MILOUCTL_VERBOSE",
    "dry_run": "MILOUCTL_DRY_RUN",
    "force": "MILOUCTL_FORCE",
    "non_interactive": "MILOUCTL_NON_INTERACTIVE",
    "fresh_install": "MILOUCTL_FRESH_INSTALL",
    "update_check": "MILOUCTL_UPDATE_CHECK",
}

_TRUTHY = {"1", "true", "yes", "on"}


class InvocationError(RuntimeError):
    """Raised when a preserved invocation cannot be decoded."""


def _env_flag(env: Mapping[str, str], name: str) -> bool:
    return env.get(name, "").strip().lower() in _TRUTHY


@dataclass(frozen=True)
class RuntimeOptions:
    """Global switches for one invocation, built once and passed explicitly."""

    verbose: bool = False
    dry_run: bool = False
    force: bool = False
    non_interactive: bool = False
    fresh_install: bool = False
    update_check: bool = False
    skip_user_switch: bool = False
    token: str | None = field(default=None, repr=False)

    @classmethod
    def from_environment(
        cls,
        env: Mapping[str, str] | None = None,
        **explicit: object,
    ) -> RuntimeOptions:
        """Merge *explicit* flag values with ``MILOUCTL_*`` overlay switches.

        A switch is on when either the command line or the environment turns
        it on. The token falls back to ``GITHUB_TOKEN``.
        """
        source = os.environ if env is None else env
        values: dict[str, object] = {}
        for item in fields(cls):
            name = item.name
            given = explicit.get(name)
            if name == "token":
                token = given if isinstance(given, str) and given else source.get(TOKEN_ENV)
                values[name] = token or None
            elif name in OPTION_ENV_VARS:
                values[name] = bool(given) or _env_flag(source, OPTION_ENV_VARS[name])
            else:
                values[name] = bool(given)
        return cls(**values)  # type: ignore[arg-type]

    def overlay(self) -> dict[str, str]:
        """Return the environment overlay that reproduces these switches."""
        overlay = {
            env_name: "true" if getattr(self, name) else "false"
            for name, env_name in OPTION_ENV_VARS.items()
        }
        if self.token:
            overlay[TOKEN_ENV] = self.token
        return overlay

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation with the token masked."""
        data: dict[str, object] = {
            item.name: getattr(self, item.name) for item in fields(self) if item.name != "token"
        }
        data["token"] = "********" if self.token else None
        return data


@dataclass(frozen=True)
class PreservedInvocation:
    """The command name, argument vector and environment overlay of one run."""

    command: str
    arguments: tuple[str, ...]
    environment: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def capture(
        cls,
        argv: Sequence[str] | None = None,
        *,
        environment: Mapping[str, str] | None = None,
    ) -> PreservedInvocation:
        """Record *argv* (default :data:`sys.argv`) before anything else runs."""
        vector = list(sys.argv if argv is None else argv)
        command = _command_name(vector[0] if vector else PROGRAM_NAME)
        return cls(
            command=command,
            arguments=tuple(str(arg) for arg in vector[1:]),
            environment=dict(environment or {}),
        )

    @classmethod
    def resume(cls, environ: MutableMapping[str, str] | None = None) -> PreservedInvocation | None:
        """Reconstruct the invocation from the overlay, consuming it.

        Returns ``None`` when no invocation was handed over.
        """
        env = os.environ if environ is None else environ
        stream = env.pop(ORIGINAL_ARGS_ENV, None)
        command = env.pop(ORIGINAL_COMMAND_ENV, None) or PROGRAM_NAME
        if stream is None:
            return None
        arguments = cls.deserialize(stream)
        carried = {
            name: env[name]
            for name in (*OPTION_ENV_VARS.values(), USER_SWITCH_ENV)
            if name in env
        }
        LOGGER.debug("Resumed preserved invocation with %d argument(s)", len(arguments))
        return cls(command=command, arguments=arguments, environment=carried)

    def serialize(self) -> str:
        """Encode the arguments as a shell-quoted token stream."""
        return shlex.join(self.arguments)

    @staticmethod
    def deserialize(stream: str) -> tuple[str, ...]:
        """Decode a token stream produced by :meth:`serialize`."""
        try:
            return tuple(shlex.split(stream))
        except ValueError as exc:
            raise InvocationError(f"Preserved arguments are malformed: {exc}") from exc

    def overlay(self) -> dict[str, str]:
        """Return the variables that carry this invocation across an exec."""
        overlay = dict(self.environment)
        overlay[ORIGINAL_COMMAND_ENV] = self.command
        overlay[ORIGINAL_ARGS_ENV] = self.serialize()
        return overlay

    def with_environment(self, extra: Mapping[str, str]) -> PreservedInvocation:
        """Return a copy whose overlay also includes *extra*."""
        merged = dict(self.environment)
        merged.update(extra)
        return PreservedInvocation(self.command, self.arguments, merged)

    def without_option(self, option: str) -> PreservedInvocation:
        """Return a copy with ``option VALUE`` and ``option=VALUE`` removed."""
        kept: list[str] = []
        skip_next = False
        for argument in self.arguments:
            if skip_next:
                skip_next = False
                continue
            if argument == option:
                skip_next = True
                continue
            if argument.startswith(f"{option}="):
                continue
            kept.append(argument)
        return PreservedInvocation(self.command, tuple(kept), dict(self.environment))

    def argv(self) -> list[str]:
        """Return the full argument vector including the command name."""
        return [self.command, *self.arguments]

    def display(self, secrets: Sequence[str] = ()) -> str:
        """Return a printable, masked rendering of the command line."""
        return mask_text(shlex.join(self.argv()), secrets)


def _command_name(argv0: str) -> str:
    name = Path(argv0).name
    if name in {"__main__.py", "-m", "-c", ""} or name.startswith("python"):
        return PROGRAM_NAME
    return name


def consume_token_file(environ: MutableMapping[str, str] | None = None) -> str | None:
    """Read and delete the token file handed over by a privilege drop.

    The file location comes from ``MILOUCTL_TOKEN_FILE``, which is popped.
    The token, when read, is also published as ``GITHUB_TOKEN`` for the rest
    of the process.
    """
    env = os.environ if environ is None else environ
    location = env.pop(TOKEN_FILE_ENV, None)
    if not location:
        return None
    path = Path(location)
    try:
        token = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        LOGGER.debug("Token file %s already consumed", path)
        return None
    except OSError as exc:
        LOGGER.warning("Cannot read token file %s: %s", path, exc)
        return None
    try:
        path.unlink()
    except OSError as exc:
        LOGGER.warning("Cannot remove token file %s: %s", path, exc)
    if token:
        env[TOKEN_ENV] = token
    return token or None


__all__ = [
    "InvocationError",
    "OPTION_ENV_VARS",
    "ORIGINAL_ARGS_ENV",
    "ORIGINAL_COMMAND_ENV",
    "PROGRAM_NAME",
    "PreservedInvocation",
    "RuntimeOptions",
    "TOKEN_ENV",
    "TOKEN_FILE_ENV",
    "USER_SWITCH_ENV",
    "consume_token_file",
]
