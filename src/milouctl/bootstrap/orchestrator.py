"""End-to-end setup flow: detect, select, assess, switch, then act."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from ..backups import SnapshotsRegistry
from ..config import AppConfig
from ..doctor import PrerequisiteReport, PrerequisiteStatus, ProbeContext, assess
from ..doctor.utils import serialize_prerequisites
from ..envfile import EnvFileError, read_env_file, update_env_file
from ..guard import (
    MutationOutcome,
    check_integrity,
    find_recovery_snapshot,
    restore_snapshot,
    with_safe_mutation,
)
from ..invocation import USER_SWITCH_ENV, PreservedInvocation, RuntimeOptions
from ..logging import OperationScope, mask_text
from ..providers.docker import DockerError, DockerProvider
from .credentials import generate_configuration
from .detection import DetectionReport, InstallationStateDetector
from .modes import SetupFlags, SetupMode, select_mode, underlying_mode
from .privileges import PrivilegeSwitch, SwitchPlan, locate_installation

LOGGER = logging.getLogger(__name__)


class SetupError(RuntimeError):
    """Base class for setup failures reported to the operator."""


class PrerequisiteError(SetupError):
    """Raised when required tools are missing and ``--force`` was not given."""

    def __init__(self, report: PrerequisiteReport) -> None:
        self.report = report
        super().__init__(
            "Missing prerequisites: " + ", ".join(report.missing) + ". Install them or use --force."
        )


@dataclass(frozen=True)
class SetupRequest:
    """Operator-supplied values for the generated configuration."""

    domain: str | None = None
    admin_email: str | None = None


@dataclass
class SetupResult:
    """What a setup run decided and did."""

    detection: DetectionReport
    mode: SetupMode
    executed_mode: SetupMode
    prerequisites: PrerequisiteReport
    dry_run: bool = False
    actions: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    mutation: MutationOutcome | None = None
    restored_snapshot: str | None = None
    switch_plan: SwitchPlan | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "state": self.detection.state.value,
            "mode": self.mode.value,
            "executed_mode": self.executed_mode.value,
            "dry_run": self.dry_run,
            "prerequisites": serialize_prerequisites(self.prerequisites),
            "actions": list(self.actions),
            "warnings": list(self.warnings),
            "mutation": self.mutation.to_dict() if self.mutation else None,
            "restored_snapshot": self.restored_snapshot,
            "switch": self.switch_plan.to_dict() if self.switch_plan else None,
        }


def flags_from_options(options: RuntimeOptions) -> SetupFlags:
    """Return the selector flags implied by the runtime options."""
    return SetupFlags(
        credential_present=bool(options.token),
        non_interactive=options.non_interactive,
        force_fresh=options.fresh_install,
        update_check=options.update_check,
    )


@dataclass(slots=True)
class SetupOrchestrator:
    """Run one setup invocation from detection to the final mutation."""

    config: AppConfig
    options: RuntimeOptions
    detector: InstallationStateDetector
    docker: DockerProvider
    backups: SnapshotsRegistry
    switch: PrivilegeSwitch
    probe_context: ProbeContext

    def select(self) -> tuple[DetectionReport, SetupMode, SetupMode]:
        """Detect the state once and return it with the selected and executed modes."""
        detection = self.detector.report(force_fresh=self.options.fresh_install)
        flags = flags_from_options(self.options)
        mode = select_mode(detection.state, flags)
        executed = underlying_mode(detection.state, flags) if mode is SetupMode.NON_INTERACTIVE else mode
        return detection, mode, executed

    def run(
        self,
        invocation: PreservedInvocation,
        request: SetupRequest,
        *,
        op: OperationScope | None = None,
    ) -> SetupResult:
        """Carry out setup; may replace the process when running as root."""
        dry_run = self.options.dry_run

        def step(name: str, status: str = "success", detail: str | None = None) -> None:
            if op is not None:
                op.add_step(name, status=status, detail=detail)

        detection, mode, executed = self.select()
        step("setup.detect", detail=detection.state.value)
        step("setup.mode", detail=f"{mode.value} -> {executed.value}")

        prerequisites = assess(self.probe_context)
        result = SetupResult(
            detection=detection,
            mode=mode,
            executed_mode=executed,
            prerequisites=prerequisites,
            dry_run=dry_run,
            warnings=list(prerequisites.warnings),
        )
        if prerequisites.status is PrerequisiteStatus.MISSING:
            if not self.options.force:
                step("setup.prerequisites", status="error", detail=", ".join(prerequisites.missing))
                raise PrerequisiteError(prerequisites)
            result.warnings.append(
                "Continuing despite missing prerequisites: " + ", ".join(prerequisites.missing)
            )
        step("setup.prerequisites", detail=prerequisites.status.value)

        if self.switch.needs_switch():
            if dry_run:
                result.switch_plan = self.switch.prepare(invocation, dry_run=True)
                result.actions.append(f"switch to service account '{self.switch.accounts.name}'")
                step("setup.switch", status="skipped", detail="dry-run")
                return result
            step("setup.switch", detail=self.switch.accounts.name)
            self.switch.switch(invocation)

        if self.options.token and not self.switch.environ.get(USER_SWITCH_ENV):
            self._login(self.options.token, result)

        handler = {
            SetupMode.INSTALL: self._install,
            SetupMode.RECONFIGURE: self._reconfigure,
            SetupMode.REPAIR: self._repair,
            SetupMode.RESUME: self._resume,
            SetupMode.UPDATE_CHECK: self._update_check,
        }[executed]
        handler(request, result)
        for action in result.actions:
            step(f"setup.{executed.value}", detail=action)
        return result

    # Mode handlers -----------------------------------------------------
    def _install(self, request: SetupRequest, result: SetupResult) -> None:
        result.mutation = self._write_configuration(request, result, reason="install")
        self._compose("up", result)

    def _reconfigure(self, request: SetupRequest, result: SetupResult) -> None:
        result.mutation = self._write_configuration(request, result, reason="reconfigure")
        self._compose("up", result)

    def _repair(self, request: SetupRequest, result: SetupResult) -> None:
        env_file = self.config.env_file
        keys = self.config.guard.critical_keys
        try:
            integrity = check_integrity(env_file, keys, backups=self.backups)
        except EnvFileError as exc:
            result.warnings.append(f"Configuration {env_file} is unreadable: {exc}")
        else:
            if integrity.ok:
                result.actions.append(f"configuration {env_file} intact; left unchanged")
                self._compose("up", result)
                return
        entry = find_recovery_snapshot(env_file, keys, backups=self.backups)
        if entry is None:
            result.warnings.append("No usable snapshot found; regenerating missing credentials.")
            result.mutation = self._write_configuration(request, result, reason="repair")
        elif self.options.dry_run:
            result.actions.append(f"would restore snapshot {entry.get('id')}")
        else:
            result.mutation = with_safe_mutation(
                env_file,
                lambda: restore_snapshot(env_file, entry, backups=self.backups),
                keys,
                backups=self.backups,
                reason="repair",
            )
            result.restored_snapshot = str(entry.get("id"))
            result.actions.append(f"restored snapshot {entry.get('id')}")
        self._compose("up", result)

    def _resume(self, _request: SetupRequest, result: SetupResult) -> None:
        self._compose("up", result)

    def _update_check(self, _request: SetupRequest, result: SetupResult) -> None:
        self._compose("pull", result)

    # Helpers -----------------------------------------------------------
    def _write_configuration(
        self,
        request: SetupRequest,
        result: SetupResult,
        *,
        reason: str,
    ) -> MutationOutcome | None:
        env_file = self.config.env_file
        keys = self.config.guard.critical_keys
        if self.options.dry_run:
            result.actions.append(f"would write configuration {env_file}")
            return None

        def mutate() -> None:
            existing = read_env_file(env_file)
            values = generate_configuration(
                existing,
                domain=request.domain,
                admin_email=request.admin_email,
                critical_keys=keys,
            )
            changes = {key: value for key, value in values.items() if existing.get(key) != value}
            if not existing:
                changes["MILOUCTL_GENERATED_AT"] = datetime.now(tz=UTC).isoformat(timespec="seconds")
            update_env_file(env_file, changes)

        outcome = with_safe_mutation(env_file, mutate, keys, backups=self.backups, reason=reason)
        result.actions.append(
            f"wrote configuration {env_file}" if outcome.changed else f"configuration {env_file} unchanged"
        )
        return outcome

    def _compose(self, command: str, result: SetupResult) -> None:
        compose_file = self._compose_file()
        if not compose_file.is_file():
            result.warnings.append(f"Compose file {compose_file} not found; skipped 'compose {command}'.")
            return
        env_file = self.config.env_file if self.config.env_file.exists() else None
        dry_run = self.options.dry_run
        if command == "pull":
            self.docker.compose_pull(compose_file, env_file=env_file, dry_run=dry_run)
        else:
            self.docker.compose_up(compose_file, env_file=env_file, dry_run=dry_run)
        prefix = "would run" if dry_run else "ran"
        result.actions.append(f"{prefix} compose {command}")

    def _compose_file(self) -> Path:
        compose_file = self.config.docker.compose_file
        if compose_file.is_absolute():
            return compose_file
        root, _ = locate_installation(self.switch.package_dir)
        return root / compose_file

    def _login(self, token: str, result: SetupResult) -> None:
        registry = self.config.docker.registry
        try:
            self.docker.login(registry, token, dry_run=self.options.dry_run)
        except DockerError as exc:
            message = mask_text(str(exc), [token])
            result.warnings.append(f"Registry login to {registry} failed: {message}")
            return
        result.actions.append(f"logged in to {registry}")


__all__ = [
    "PrerequisiteError",
    "SetupError",
    "SetupOrchestrator",
    "SetupRequest",
    "SetupResult",
    "flags_from_options",
]
