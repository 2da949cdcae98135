"""Probe registration entry point for the doctor command."""

from __future__ import annotations

import os
import platform
import sys
from collections.abc import Callable, Sequence
from pathlib import Path

from packaging.version import InvalidVersion, Version

from .. import __version__
from ..envfile import EnvFileError, read_env_file
from .models import (
    DoctorImpact,
    ProbeCategory,
    ProbeContext,
    ProbeDefinition,
    ProbeResult,
    ProbeStatus,
)

AUXILIARY_TOOLS: tuple[tuple[str, str], ...] = (
    ("curl", "secure transfer client"),
    ("tar", "archive tool"),
    ("openssl", "cryptographic tool"),
    ("jq", "JSON processor"),
)


def collect_probes(context: ProbeContext) -> Sequence[ProbeDefinition]:
    """Return the set of probes that should run for the current context."""
    probes: list[ProbeDefinition] = []
    probes.extend(_env_probes())
    probes.extend(prerequisite_probes())
    probes.extend(_config_probes())
    return tuple(probes)


def prerequisite_probes() -> Sequence[ProbeDefinition]:
    """Return the probes whose outcome gates setup."""
    probes: list[ProbeDefinition] = []
    probes.extend(_docker_probes())
    probes.extend(_tool_probes())
    return tuple(probes)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_probe(
    probe_id: str,
    category: ProbeCategory,
    handler: Callable[[ProbeContext], ProbeResult],
) -> ProbeDefinition:
    def _runner(context: ProbeContext) -> ProbeResult:
        return handler(context)

    return ProbeDefinition(id=probe_id, category=category, run=_runner)


def _command_exists(context: ProbeContext, command: str) -> bool:
    path = Path(command)
    if path.is_absolute() or (path.parent and str(path.parent) not in {"", "."}):
        return path.exists() and os.access(path, os.X_OK)
    return context.which(command) is not None


# ---------------------------------------------------------------------------
# Environment probes
# ---------------------------------------------------------------------------


def _env_probes() -> Sequence[ProbeDefinition]:
    return (
        _make_probe("env-python", "env", _probe_env_python),
        _make_probe("env-milouctl", "env", _probe_env_milouctl),
    )


def _probe_env_python(context: ProbeContext) -> ProbeResult:
    version = platform.python_version()
    return ProbeResult(
        id="env-python",
        category="env",
        status=ProbeStatus.GREEN,
        impact=DoctorImpact.OK,
        message=f"Python {version} detected.",
        data={
            "executable": sys.executable,
            "version": version,
        },
    )


def _probe_env_milouctl(_context: ProbeContext) -> ProbeResult:
    return ProbeResult(
        id="env-milouctl",
        category="env",
        status=ProbeStatus.GREEN,
        impact=DoctorImpact.OK,
        message=f"milouctl {__version__} installed.",
    )


# ---------------------------------------------------------------------------
# Docker probes
# ---------------------------------------------------------------------------


def _docker_probes() -> Sequence[ProbeDefinition]:
    return (
        _make_probe("docker-binary", "docker", _probe_docker_binary),
        _make_probe("docker-daemon", "docker", _probe_docker_daemon),
        _make_probe("docker-compose", "docker", _probe_docker_compose),
        _make_probe("docker-version", "docker", _probe_docker_version),
    )


def _probe_docker_binary(context: ProbeContext) -> ProbeResult:
    binary = context.docker.docker_bin
    if context.docker.is_present():
        return ProbeResult(
            id="docker-binary",
            category="docker",
            status=ProbeStatus.GREEN,
            impact=DoctorImpact.OK,
            message=f"Binary '{binary}' available.",
        )
    return ProbeResult(
        id="docker-binary",
        category="docker",
        status=ProbeStatus.RED,
        impact=DoctorImpact.ENVIRONMENT,
        message=f"Required binary '{binary}' not found on PATH.",
        remediation="Install Docker Engine 20.10 or newer.",
        data={"item": "docker"},
    )


def _probe_docker_daemon(context: ProbeContext) -> ProbeResult:
    if not context.docker.is_present():
        return ProbeResult(
            id="docker-daemon",
            category="docker",
            status=ProbeStatus.GREEN,
            impact=DoctorImpact.OK,
            message="Docker daemon check skipped; client not installed.",
            data={"skipped": True},
        )
    if context.docker.is_daemon_reachable():
        return ProbeResult(
            id="docker-daemon",
            category="docker",
            status=ProbeStatus.GREEN,
            impact=DoctorImpact.OK,
            message="Docker daemon reachable.",
        )
    return ProbeResult(
        id="docker-daemon",
        category="docker",
        status=ProbeStatus.YELLOW,
        impact=DoctorImpact.OK,
        message="Docker daemon not accessible.",
        remediation=(
            "Start the daemon (systemctl start docker) or add the user to the docker group."
        ),
        warnings=("docker:daemon-unreachable",),
    )


def _probe_docker_compose(context: ProbeContext) -> ProbeResult:
    if context.docker.is_present() and context.docker.compose_available():
        return ProbeResult(
            id="docker-compose",
            category="docker",
            status=ProbeStatus.GREEN,
            impact=DoctorImpact.OK,
            message="Docker Compose plugin available.",
        )
    return ProbeResult(
        id="docker-compose",
        category="docker",
        status=ProbeStatus.RED,
        impact=DoctorImpact.ENVIRONMENT,
        message="Docker Compose plugin ('docker compose') not available.",
        remediation="Install the docker-compose-plugin package.",
        data={"item": "docker-compose"},
    )


def _probe_docker_version(context: ProbeContext) -> ProbeResult:
    required = context.config.docker.min_version
    if not context.docker.is_present():
        return ProbeResult(
            id="docker-version",
            category="docker",
            status=ProbeStatus.GREEN,
            impact=DoctorImpact.OK,
            message="Docker version check skipped; client not installed.",
            data={"skipped": True, "required": required},
        )
    detected = context.docker.client_version()
    if detected is None:
        return ProbeResult(
            id="docker-version",
            category="docker",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message="Could not determine the Docker client version.",
            data={"required": required},
            warnings=("docker:version-unknown",),
        )
    try:
        too_old = Version(detected) < Version(required)
    except InvalidVersion:
        return ProbeResult(
            id="docker-version",
            category="docker",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message=f"Unrecognised Docker version '{detected}'.",
            data={"detected": detected, "required": required},
            warnings=("docker:version-unknown",),
        )
    if too_old:
        return ProbeResult(
            id="docker-version",
            category="docker",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message=f"Docker {detected} is older than the recommended {required}.",
            remediation="Upgrade Docker Engine.",
            data={"detected": detected, "required": required},
            warnings=("docker:version-old",),
        )
    return ProbeResult(
        id="docker-version",
        category="docker",
        status=ProbeStatus.GREEN,
        impact=DoctorImpact.OK,
        message=f"Docker {detected} satisfies >= {required}.",
        data={"detected": detected, "required": required},
    )


# ---------------------------------------------------------------------------
# Auxiliary tool probes
# ---------------------------------------------------------------------------


def _tool_probes() -> Sequence[ProbeDefinition]:
    return tuple(
        _make_probe(f"tools-{command}", "tools", _probe_tool(command, purpose))
        for command, purpose in AUXILIARY_TOOLS
    )


def _probe_tool(command: str, purpose: str) -> Callable[[ProbeContext], ProbeResult]:
    def _run(context: ProbeContext) -> ProbeResult:
        if _command_exists(context, command):
            return ProbeResult(
                id=f"tools-{command}",
                category="tools",
                status=ProbeStatus.GREEN,
                impact=DoctorImpact.OK,
                message=f"Binary '{command}' available.",
            )
        return ProbeResult(
            id=f"tools-{command}",
            category="tools",
            status=ProbeStatus.RED,
            impact=DoctorImpact.ENVIRONMENT,
            message=f"Required {purpose} '{command}' not found on PATH.",
            data={"item": command},
        )

    return _run


# ---------------------------------------------------------------------------
# Configuration probes
# ---------------------------------------------------------------------------


def _config_probes() -> Sequence[ProbeDefinition]:
    return (
        _make_probe("config-file", "config", _probe_config_file),
        _make_probe("config-env-file", "config", _probe_env_file),
    )


def _probe_config_file(context: ProbeContext) -> ProbeResult:
    config_file = context.config.config_file
    if config_file.exists():
        message = f"Config file {config_file} loaded successfully."
    else:
        message = f"Config file {config_file} not present; using defaults."
    return ProbeResult(
        id="config-file",
        category="config",
        status=ProbeStatus.GREEN,
        impact=DoctorImpact.OK,
        message=message,
    )


def _probe_env_file(context: ProbeContext) -> ProbeResult:
    env_file = context.config.env_file
    if not env_file.exists():
        return ProbeResult(
            id="config-env-file",
            category="config",
            status=ProbeStatus.GREEN,
            impact=DoctorImpact.OK,
            message=f"No configuration at {env_file} yet; setup will create it.",
        )
    try:
        values = read_env_file(env_file)
    except EnvFileError as exc:
        return ProbeResult(
            id="config-env-file",
            category="config",
            status=ProbeStatus.RED,
            impact=DoctorImpact.VALIDATION,
            message=str(exc),
        )
    mode = env_file.stat().st_mode & 0o777
    if mode & 0o077:
        return ProbeResult(
            id="config-env-file",
            category="config",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message=f"Configuration {env_file} is readable by other users (mode {mode:03o}).",
            remediation=f"chmod 600 {env_file}",
            data={"keys": len(values), "mode": f"{mode:03o}"},
            warnings=("config:permissions",),
        )
    return ProbeResult(
        id="config-env-file",
        category="config",
        status=ProbeStatus.GREEN,
        impact=DoctorImpact.OK,
        message=f"Configuration {env_file} readable ({len(values)} keys).",
        data={"keys": len(values), "mode": f"{mode:03o}"},
    )
