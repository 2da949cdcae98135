"""Utilities for inspecting, planning and provisioning the service account."""
from __future__ import annotations

import grp
import logging
import os
import pwd
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

LOGGER = logging.getLogger(__name__)

HOME_MODE = 0o750
_UNSET_HOMES = {"", "/", "/nonexistent"}


class ServiceAccountError(RuntimeError):
    """Raised when the service account cannot be provisioned or repaired."""


@dataclass(slots=True)
class ServiceAccountSpec:
    """Desired attributes for the milouctl runtime service account."""

    name: str
    group: str | None = None
    system: bool = False
    create_group: bool = True
    home: Path | None = None
    create_home: bool = True
    shell: str | None = "/bin/bash"
    comment: str | None = "Milou Service User"
    supplementary_groups: tuple[str, ...] = ("docker",)

    def default_home(self) -> Path:
        """Return the home directory the account should use."""
        return self.home or Path("/home") / self.name


@dataclass(slots=True)
class ServiceAccountStatus:
    """Current state of the service account on the host."""

    user_exists: bool
    group_exists: bool
    uid: int | None = None
    gid: int | None = None
    home: Path | None = None
    shell: str | None = None
    primary_group: str | None = None
    missing_groups: tuple[str, ...] = ()
    absent_groups: tuple[str, ...] = ()


@dataclass(slots=True)
class ServiceAccountAction:
    """Single remediation step required to satisfy the desired state."""

    kind: Literal["ensure-group", "create-user", "add-to-group", "warn"]
    description: str
    command: list[str] | None = None


@dataclass(slots=True)
class ServiceAccountPlan:
    """Aggregated actions and warnings required to provision the service account."""

    spec: ServiceAccountSpec
    status: ServiceAccountStatus
    actions: list[ServiceAccountAction] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class HomeRepair:
    """Outcome of resolving (and if needed repairing) the account's home."""

    path: Path
    actions: tuple[str, ...] = ()

    @property
    def repaired(self) -> bool:
        """Return ``True`` when anything had to be fixed."""
        return bool(self.actions)


def _group_members(name: str) -> list[str] | None:
    try:
        return list(grp.getgrnam(name).gr_mem)
    except KeyError:
        return None


def inspect_service_account(spec: ServiceAccountSpec) -> ServiceAccountStatus:
    """Return the current status for *spec* from system passwd/group databases."""
    try:
        pw_entry = pwd.getpwnam(spec.name)
        user_exists = True
        uid = pw_entry.pw_uid
        gid = pw_entry.pw_gid
        home = Path(pw_entry.pw_dir) if pw_entry.pw_dir else None
        shell = pw_entry.pw_shell
        try:
            primary_group = grp.getgrgid(gid).gr_name
        except KeyError:
            primary_group = None
    except KeyError:
        user_exists = False
        uid = None
        gid = None
        home = None
        shell = None
        primary_group = None

    group_exists = False
    if spec.group:
        try:
            grp.getgrnam(spec.group)
        except KeyError:
            pass
        else:
            group_exists = True

    missing_groups: list[str] = []
    absent_groups: list[str] = []
    for group_name in spec.supplementary_groups:
        members = _group_members(group_name)
        if members is None:
            absent_groups.append(group_name)
        elif spec.name not in members and primary_group != group_name:
            missing_groups.append(group_name)

    return ServiceAccountStatus(
        user_exists=user_exists,
        group_exists=group_exists,
        uid=uid,
        gid=gid,
        home=home,
        shell=shell,
        primary_group=primary_group,
        missing_groups=tuple(missing_groups),
        absent_groups=tuple(absent_groups),
    )


def plan_service_account(spec: ServiceAccountSpec) -> ServiceAccountPlan:
    """Return a plan describing how to satisfy *spec* on the current host."""
    status = inspect_service_account(spec)
    plan = ServiceAccountPlan(spec=spec, status=status)

    if spec.group and not status.group_exists:
        if spec.create_group:
            command = ["groupadd"]
            if spec.system:
                command.append("--system")
            command.append(spec.group)
            plan.actions.append(
                ServiceAccountAction(
                    kind="ensure-group",
                    description=f"Create group '{spec.group}'.",
                    command=command,
                )
            )
        else:
            plan.warnings.append(
                f"Group '{spec.group}' is missing and create_group is False."
            )

    for group_name in status.absent_groups:
        plan.warnings.append(
            f"Group '{group_name}' does not exist; install Docker first, then run "
            f"'usermod -aG {group_name} {spec.name}'."
        )

    if not status.user_exists:
        command = ["useradd"]
        if spec.system:
            command.append("--system")
        home = spec.default_home()
        command.extend(["--home", str(home)])
        command.append("--create-home" if spec.create_home else "--no-create-home")
        if spec.shell:
            command.extend(["--shell", str(spec.shell)])
        if spec.group:
            command.extend(["--gid", spec.group])
        existing_groups = [
            name for name in spec.supplementary_groups if name not in status.absent_groups
        ]
        if existing_groups:
            command.extend(["--groups", ",".join(existing_groups)])
        if spec.comment:
            command.extend(["--comment", spec.comment])
        command.append(spec.name)
        plan.actions.append(
            ServiceAccountAction(
                kind="create-user",
                description=f"Create service user '{spec.name}'.",
                command=command,
            )
        )
        return plan

    if spec.group and status.primary_group and status.primary_group != spec.group:
        plan.warnings.append(
            "User "
            f"'{spec.name}' primary group is '{status.primary_group}', "
            f"expected '{spec.group}'."
        )
    if spec.home and status.home and status.home != spec.home:
        plan.warnings.append(
            f"User '{spec.name}' home '{status.home}' differs from desired '{spec.home}'."
        )
    if spec.shell and status.shell and str(status.shell) != str(spec.shell):
        plan.warnings.append(
            f"User '{spec.name}' shell '{status.shell}' differs from desired '{spec.shell}'."
        )
    for group_name in status.missing_groups:
        plan.actions.append(
            ServiceAccountAction(
                kind="add-to-group",
                description=f"Add '{spec.name}' to group '{group_name}'.",
                command=["usermod", "-aG", group_name, spec.name],
            )
        )
    return plan


Runner = Callable[[list[str]], subprocess.CompletedProcess[str]]


def apply_service_account_plan(
    plan: ServiceAccountPlan,
    *,
    runner: Runner | None = None,
    dry_run: bool = False,
) -> None:
    """Execute the commands described by *plan*.

    Failing to join a supplementary group is recorded as a plan warning;
    every other failure raises :class:`ServiceAccountError`.
    """
    if runner is None:
        runner = _default_runner

    for action in plan.actions:
        if action.command is None:
            continue
        if dry_run:
            continue
        try:
            runner(action.command)
        except (subprocess.CalledProcessError, OSError) as exc:
            if action.kind == "add-to-group":
                LOGGER.warning("%s failed: %s", action.description, exc)
                plan.warnings.append(f"{action.description} failed: {exc}")
                continue
            raise ServiceAccountError(f"{action.description} failed: {exc}") from exc


def _default_runner(command: list[str]) -> subprocess.CompletedProcess[str]:
    return subprocess.run(command, check=True, capture_output=True, text=True)  # noqa: S603,S607


@dataclass(slots=True)
class ServiceAccountManager:
    """Provision and repair the dedicated account the CLI switches to."""

    spec: ServiceAccountSpec
    runner: Runner | None = None
    chown: Callable[[Path, int, int], None] = os.chown

    @property
    def name(self) -> str:
        """Return the account name."""
        return self.spec.name

    @property
    def group(self) -> str:
        """Return the account's primary group name."""
        return self.spec.group or self.spec.name

    def status(self) -> ServiceAccountStatus:
        """Return the current account status."""
        return inspect_service_account(self.spec)

    def account_exists(self) -> bool:
        """Return ``True`` when the account is present in the passwd database."""
        try:
            pwd.getpwnam(self.spec.name)
        except KeyError:
            return False
        return True

    def plan(self) -> ServiceAccountPlan:
        """Return the provisioning plan for the account."""
        return plan_service_account(self.spec)

    def create_account(self, *, dry_run: bool = False) -> ServiceAccountPlan:
        """Create the account and its groups when missing; return the applied plan."""
        plan = self.plan()
        for warning in plan.warnings:
            LOGGER.warning(warning)
        apply_service_account_plan(plan, runner=self.runner, dry_run=dry_run)
        if plan.actions and not dry_run:
            LOGGER.info("Service account '%s' provisioned", self.spec.name)
        return plan

    def home_directory(self) -> Path | None:
        """Return the account's home directory as recorded in passwd."""
        try:
            entry = pwd.getpwnam(self.spec.name)
        except KeyError:
            return None
        if entry.pw_dir in _UNSET_HOMES:
            return None
        return Path(entry.pw_dir)

    def ensure_home(self, *, dry_run: bool = False) -> HomeRepair:
        """Resolve the home directory, repairing an unset, missing or foreign-owned one."""
        status = self.status()
        if not status.user_exists or status.uid is None or status.gid is None:
            raise ServiceAccountError(f"Service account '{self.spec.name}' does not exist.")
        actions: list[str] = []
        home = status.home
        if home is None or str(home) in _UNSET_HOMES:
            home = self.spec.default_home()
            actions.append("set-home")
            if not dry_run:
                self._run(["usermod", "-d", str(home), self.spec.name], "Set home directory")

        if not home.exists():
            actions.append("create-home")
            if not dry_run:
                try:
                    home.mkdir(parents=True, exist_ok=True)
                    self.chown(home, status.uid, status.gid)
                    os.chmod(home, HOME_MODE)
                except OSError as exc:
                    raise ServiceAccountError(f"Cannot create home {home}: {exc}") from exc
        else:
            info = home.stat()
            if info.st_uid != status.uid or not info.st_mode & 0o200:
                actions.append("fix-home-ownership")
                if not dry_run:
                    try:
                        self.chown(home, status.uid, status.gid)
                        os.chmod(home, HOME_MODE)
                    except OSError as exc:
                        raise ServiceAccountError(f"Cannot repair home {home}: {exc}") from exc

        for action in actions:
            LOGGER.info("Home directory repair for '%s': %s", self.spec.name, action)
        return HomeRepair(path=home, actions=tuple(actions))

    def chown_tree(self, path: Path, *, dry_run: bool = False) -> None:
        """Recursively hand *path* to the service account."""
        if dry_run:
            return
        self._run(
            ["chown", "-R", f"{self.spec.name}:{self.group}", str(path)],
            f"Change ownership of {path}",
        )

    def _run(self, command: list[str], description: str) -> None:
        runner = self.runner or _default_runner
        try:
            runner(command)
        except (subprocess.CalledProcessError, OSError) as exc:
            raise ServiceAccountError(f"{description} failed: {exc}") from exc


__all__ = [
    "HomeRepair",
    "ServiceAccountAction",
    "ServiceAccountError",
    "ServiceAccountManager",
    "ServiceAccountPlan",
    "ServiceAccountSpec",
    "ServiceAccountStatus",
    "apply_service_account_plan",
    "inspect_service_account",
    "plan_service_account",
]
