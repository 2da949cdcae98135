"""Classification of the host into a discrete installation state.

Detection only reads: it looks at the effective UID, the passwd database, the
configuration file, the docker client and the managed containers. Each probe
is guarded on its own; a probe that raises or times out counts as its fresh
indicator being set, so a misbehaving tool pushes the verdict towards a fresh
install rather than crashing the CLI.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from ..backups import SnapshotsRegistry
from ..config import AppConfig
from ..envfile import EnvFileError, read_env_file
from ..guard import check_integrity
from ..providers.docker import ContainerInfo, DockerProvider
from .service_accounts import ServiceAccountManager

LOGGER = logging.getLogger(__name__)


class InstallationState(str, Enum):
    """Discrete installation state of the host, recomputed on every run."""

    FRESH = "fresh"
    RUNNING = "running"
    STOPPED_INSTALLED = "stopped_installed"
    CONFIGURED_ONLY = "configured_only"
    CONTAINERS_ONLY = "containers_only"
    BROKEN = "broken"


@dataclass(frozen=True)
class FreshIndicators:
    """The five independent signals that suggest a never-installed host."""

    privileged: bool
    account_missing: bool
    config_missing: bool
    engine_missing: bool
    no_containers: bool

    @property
    def count(self) -> int:
        """Return how many indicators are set."""
        return sum(
            (
                self.privileged,
                self.account_missing,
                self.config_missing,
                self.engine_missing,
                self.no_containers,
            )
        )

    def reasons(self, *, service_user: str) -> list[str]:
        """Return a human-readable reason for every set indicator."""
        reasons: list[str] = []
        if self.privileged:
            reasons.append("Running as root")
        if self.account_missing:
            reasons.append(f"Service account '{service_user}' does not exist")
        if self.config_missing:
            reasons.append("No configuration file found")
        if self.engine_missing:
            reasons.append("Docker is not installed")
        if self.no_containers:
            reasons.append("No managed containers found")
        return reasons

    def to_dict(self) -> dict[str, bool]:
        """Return a serialisable representation."""
        return {
            "privileged": self.privileged,
            "account_missing": self.account_missing,
            "config_missing": self.config_missing,
            "engine_missing": self.engine_missing,
            "no_containers": self.no_containers,
        }


@dataclass(frozen=True)
class DetectionReport:
    """The detected state together with the evidence behind it."""

    state: InstallationState
    indicators: FreshIndicators
    reasons: tuple[str, ...]
    config_present: bool
    containers: tuple[ContainerInfo, ...] = ()
    consistency_errors: tuple[str, ...] = ()
    threshold: int = 3
    forced: bool = False
    probe_errors: tuple[str, ...] = field(default=(), compare=False)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "state": self.state.value,
            "indicators": self.indicators.to_dict(),
            "indicator_count": self.indicators.count,
            "threshold": self.threshold,
            "forced": self.forced,
            "reasons": list(self.reasons),
            "config_present": self.config_present,
            "containers": [container.to_dict() for container in self.containers],
            "consistency_errors": list(self.consistency_errors),
            "probe_errors": list(self.probe_errors),
        }


@dataclass(slots=True)
class InstallationStateDetector:
    """Probe the host and classify it without changing anything."""

    config: AppConfig
    docker: DockerProvider
    accounts: ServiceAccountManager
    backups: SnapshotsRegistry | None = None
    euid_provider: Callable[[], int] = os.geteuid

    def detect(self, *, force_fresh: bool = False) -> InstallationState:
        """Return the installation state of the host."""
        return self.report(force_fresh=force_fresh).state

    def report(self, *, force_fresh: bool = False) -> DetectionReport:
        """Return the installation state together with its evidence."""
        probe_errors: list[str] = []

        def guarded(label: str, probe: Callable[[], bool]) -> bool:
            try:
                return probe()
            except Exception as exc:  # noqa: BLE001 - a failing probe is a classified fact
                LOGGER.debug("Probe '%s' failed; assuming indicator set: %s", label, exc)
                probe_errors.append(f"{label}: {exc}")
                return True

        env_file = self.config.env_file
        privileged = guarded("privileged", lambda: self.euid_provider() == 0)
        account_missing = guarded("account", lambda: not self.accounts.account_exists())
        config_missing = guarded("config", lambda: not env_file.is_file())
        engine_missing = guarded("docker", lambda: not self.docker.is_present())

        containers: tuple[ContainerInfo, ...] = ()
        if engine_missing:
            no_containers = True
        else:
            try:
                containers = tuple(self.docker.list_containers(self.config.docker.container_prefix))
                no_containers = not containers
            except Exception as exc:  # noqa: BLE001 - docker may hang or error
                LOGGER.debug("Container listing failed; assuming none: %s", exc)
                probe_errors.append(f"containers: {exc}")
                no_containers = True

        indicators = FreshIndicators(
            privileged=privileged,
            account_missing=account_missing,
            config_missing=config_missing,
            engine_missing=engine_missing,
            no_containers=no_containers,
        )
        threshold = self.config.detection.fresh_threshold
        reasons = indicators.reasons(service_user=self.accounts.name)
        config_present = not config_missing

        if force_fresh or indicators.count >= threshold:
            if force_fresh:
                reasons.append("Fresh install requested")
            LOGGER.debug("Fresh install detected (%d indicators): %s", indicators.count, reasons)
            return DetectionReport(
                state=InstallationState.FRESH,
                indicators=indicators,
                reasons=tuple(reasons),
                config_present=config_present,
                containers=containers,
                threshold=threshold,
                forced=force_fresh,
                probe_errors=tuple(probe_errors),
            )

        errors = self._consistency_errors(config_present, containers)
        state = _classify(config_present, containers, errors)
        LOGGER.debug("Installation state: %s", state.value)
        return DetectionReport(
            state=state,
            indicators=indicators,
            reasons=tuple(reasons),
            config_present=config_present,
            containers=containers,
            consistency_errors=tuple(errors),
            threshold=threshold,
            probe_errors=tuple(probe_errors),
        )

    def _consistency_errors(
        self,
        config_present: bool,
        containers: tuple[ContainerInfo, ...],
    ) -> list[str]:
        errors: list[str] = []
        if config_present:
            try:
                read_env_file(self.config.env_file)
            except EnvFileError as exc:
                errors.append(f"Configuration file is unreadable: {exc}")
                return errors
            if self.backups is not None:
                try:
                    integrity = check_integrity(
                        self.config.env_file,
                        self.config.guard.critical_keys,
                        backups=self.backups,
                    )
                except Exception as exc:  # noqa: BLE001 - index problems never block detection
                    LOGGER.debug("Integrity check skipped: %s", exc)
                else:
                    if not integrity.ok:
                        joined = ", ".join(integrity.missing)
                        errors.append(
                            f"Configuration lost critical keys recorded in snapshot "
                            f"{integrity.snapshot_id}: {joined}"
                        )
            running = [container for container in containers if container.running]
            if running and (
                len(running) != len(containers)
                or any(not container.healthy for container in running)
            ):
                unhealthy = sorted(
                    container.name for container in containers if not container.healthy
                )
                errors.append(
                    "Some managed containers are stopped or unhealthy: " + ", ".join(unhealthy)
                )
        return errors


def _classify(
    config_present: bool,
    containers: tuple[ContainerInfo, ...],
    errors: list[str],
) -> InstallationState:
    if errors:
        return InstallationState.BROKEN
    if containers and config_present:
        if all(container.healthy for container in containers):
            return InstallationState.RUNNING
        return InstallationState.STOPPED_INSTALLED
    if config_present:
        return InstallationState.CONFIGURED_ONLY
    if containers:
        return InstallationState.CONTAINERS_ONLY
    return InstallationState.FRESH


__all__ = [
    "DetectionReport",
    "FreshIndicators",
    "InstallationState",
    "InstallationStateDetector",
]
