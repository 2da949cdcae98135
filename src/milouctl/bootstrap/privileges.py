"""Re-execution of the CLI as the dedicated service account.

When milouctl runs as root it does not perform setup work itself. Instead it
makes sure the service account exists and has a usable home directory,
synchronises a copy of the CLI into that home, hands over the bearer token
through an owner-only file, and replaces the current process with::

    sudo -u <user> -g <docker group> -H --preserve-env=<keys> -- <python> -m milouctl

The original arguments travel in ``MILOUCTL_ORIGINAL_ARGS`` and the marker
``MILOUCTL_USER_SWITCH`` prevents a resumed process from switching again.
"""
from __future__ import annotations

import contextlib
import logging
import os
import pwd
import re
import secrets
import shlex
import shutil
import stat
import sys
from collections.abc import Callable, Mapping, MutableMapping
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import NoReturn

from ..config import AppConfig
from ..invocation import (
    TOKEN_FILE_ENV,
    USER_SWITCH_ENV,
    PreservedInvocation,
    RuntimeOptions,
)
from ..logging import mask_text
from ..providers.docker import DockerError, DockerProvider
from .freshness import SKIPPED_DIRECTORIES, is_source_newer
from .service_accounts import HomeRepair, ServiceAccountError, ServiceAccountManager

LOGGER = logging.getLogger(__name__)

TOKEN_DIR_NAME = ".milou"
TOKEN_FILE_NAME = ".token"
KNOWN_TOKEN_PREFIXES = ("ghp_", "github_pat_", "gho_", "ghu_", "ghs_", "ghr_")
CLASSIC_TOKEN_PATTERN = re.compile(r"^ghp_[A-Za-z0-9]{36}$")
_FORBIDDEN_TOKEN_CHARS = re.compile(r"[\s\x00-\x1f\x7f]")

ExecFunction = Callable[[str, list[str], Mapping[str, str]], object]


class PrivilegeSwitchError(RuntimeError):
    """Raised when the switch to the service account cannot be prepared."""


class SwitchLoopError(PrivilegeSwitchError):
    """Raised when a resumed process is still not running as the service account."""


class SwitchInvariantError(PrivilegeSwitchError):
    """Raised when process replacement returned control to the caller."""


class CredentialFormatError(PrivilegeSwitchError):
    """Raised when a supplied token cannot be handed over safely."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def validate_token(token: str) -> list[str]:
    """Check the surface format of *token*.

    Whitespace and control characters are fatal because they cannot survive
    the handover intact. An unfamiliar prefix or length only yields a
    warning, returned to the caller.
    """
    if not token:
        raise CredentialFormatError("Token is empty.")
    if _FORBIDDEN_TOKEN_CHARS.search(token):
        raise CredentialFormatError("Token contains whitespace or control characters.")
    warnings: list[str] = []
    if not token.startswith(KNOWN_TOKEN_PREFIXES):
        warnings.append("Token does not use a known GitHub token prefix.")
    elif token.startswith("ghp_") and not CLASSIC_TOKEN_PATTERN.match(token):
        warnings.append("Classic token has an unexpected length or character set.")
    return warnings


@dataclass(frozen=True)
class ServiceAccountInstallation:
    """A copy of the CLI tree owned by the service account."""

    root: Path
    owner: str
    package_relative: Path

    @property
    def python_path(self) -> Path:
        """Return the directory that must be importable to run the copy."""
        return (self.root / self.package_relative).parent


def locate_installation(package_dir: Path | None = None) -> tuple[Path, Path]:
    """Return ``(source_root, package_relative)`` for the running CLI.

    Symlinks are resolved. A package living under ``src/`` syncs the whole
    project tree; an installed package syncs just the package directory.
    """
    package = (package_dir or Path(__file__).resolve().parent.parent).resolve()
    if package.parent.name == "src":
        root = package.parent.parent
        return root, package.relative_to(root)
    return package, Path(".")


@dataclass(frozen=True)
class SyncResult:
    """What happened to the service account's copy of the CLI."""

    action: str
    target: Path
    backup: Path | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "action": self.action,
            "target": str(self.target),
            "backup": str(self.backup) if self.backup else None,
        }


def sync_installation(
    source: Path,
    target: Path,
    *,
    accounts: ServiceAccountManager,
    sample_size: int = 50,
    dry_run: bool = False,
    clock: Callable[[], datetime] = datetime.now,
) -> SyncResult:
    """Copy *source* to *target* when missing or stale, backing up the old copy."""
    if source.resolve() == target.resolve():
        return SyncResult(action="in-place", target=target)
    try:
        newer = is_source_newer(source, target, sample_size=sample_size)
    except (OSError, ValueError) as exc:
        raise PrivilegeSwitchError(f"Cannot compare {source} with {target}: {exc}") from exc
    if not newer:
        LOGGER.debug("Service account copy %s is up to date", target)
        return SyncResult(action="skipped", target=target)

    backup: Path | None = None
    action = "copied"
    if target.exists():
        action = "updated"
        stamp = clock().strftime("%Y%m%d_%H%M%S")
        backup = target.with_name(f"{target.name}.backup.{stamp}")
    if dry_run:
        return SyncResult(action=action, target=target, backup=backup)

    moved = False
    try:
        if backup is not None:
            target.rename(backup)
            moved = True
            LOGGER.info("Backed up previous copy to %s", backup)
        shutil.copytree(
            source,
            target,
            symlinks=True,
            ignore=shutil.ignore_patterns(*SKIPPED_DIRECTORIES),
        )
    except (OSError, shutil.Error) as exc:
        if moved or backup is None:
            try:
                _discard_partial_copy(target, backup if moved else None)
            except OSError as cleanup:
                LOGGER.error("Could not roll back partial copy %s: %s", target, cleanup)
        raise PrivilegeSwitchError(f"Failed to copy {source} to {target}: {exc}") from exc
    try:
        accounts.chown_tree(target)
    except ServiceAccountError as exc:
        raise PrivilegeSwitchError(
            f"Copied CLI to {target} but could not hand it to '{accounts.name}': {exc}"
        ) from exc
    LOGGER.info("CLI %s into %s", action, target)
    return SyncResult(action=action, target=target, backup=backup)


def _discard_partial_copy(target: Path, backup: Path | None) -> None:
    if target.is_symlink() or target.is_file():
        target.unlink()
    elif target.exists():
        shutil.rmtree(target)
    if backup is not None:
        backup.rename(target)
        LOGGER.info("Restored previous copy from %s", backup)


def write_token_file(
    home: Path,
    token: str,
    *,
    uid: int,
    gid: int,
    fchown: Callable[[int, int, int], None] = os.fchown,
) -> Path:
    """Write *token* to ``<home>/.milou/.token`` readable only by the account.

    The token directory must be a real directory. It is opened with
    ``O_NOFOLLOW`` and all later operations go through that descriptor. The
    token is written to a fresh exclusive file and renamed over ``.token``,
    replacing whatever entry was there.
    """
    directory = home / TOKEN_DIR_NAME
    path = directory / TOKEN_FILE_NAME
    try:
        try:
            directory.mkdir(mode=0o700)
        except FileExistsError:
            pass
        if not stat.S_ISDIR(os.lstat(directory).st_mode):
            raise PrivilegeSwitchError(f"Token directory {directory} is not a plain directory.")
        dir_fd = os.open(directory, os.O_RDONLY | os.O_DIRECTORY | os.O_NOFOLLOW)
    except OSError as exc:
        raise PrivilegeSwitchError(f"Cannot prepare token directory {directory}: {exc}") from exc
    try:
        os.fchmod(dir_fd, 0o700)
        fchown(dir_fd, uid, gid)
        tmp_name = f".{TOKEN_FILE_NAME}.{secrets.token_hex(8)}"
        fd = os.open(
            tmp_name,
            os.O_WRONLY | os.O_CREAT | os.O_EXCL | os.O_NOFOLLOW,
            0o600,
            dir_fd=dir_fd,
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                os.fchmod(handle.fileno(), 0o600)
                fchown(handle.fileno(), uid, gid)
                handle.write(token)
            os.replace(tmp_name, TOKEN_FILE_NAME, src_dir_fd=dir_fd, dst_dir_fd=dir_fd)
        except OSError:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp_name, dir_fd=dir_fd)
            raise
    except OSError as exc:
        raise PrivilegeSwitchError(f"Cannot write token file {path}: {exc}") from exc
    finally:
        os.close(dir_fd)
    return path


def current_username() -> str:
    """Return the name of the effective user."""
    try:
        return pwd.getpwuid(os.geteuid()).pw_name
    except KeyError:
        return str(os.geteuid())


# ---------------------------------------------------------------------------
# Switch
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SwitchPlan:
    """Everything needed to replace the process, computed before exec."""

    argv: list[str]
    environment: Mapping[str, str] = field(repr=False)
    preserved_keys: tuple[str, ...]
    cwd: Path
    display: str
    home: HomeRepair
    sync: SyncResult
    token_file: Path | None = None
    warnings: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation without secrets."""
        return {
            "command": self.display,
            "cwd": str(self.cwd),
            "preserved_keys": list(self.preserved_keys),
            "home": str(self.home.path),
            "home_repairs": list(self.home.actions),
            "sync": self.sync.to_dict(),
            "token_file": str(self.token_file) if self.token_file else None,
            "warnings": list(self.warnings),
        }


@dataclass(slots=True)
class PrivilegeSwitch:
    """Prepare and perform the drop from root to the service account."""

    config: AppConfig
    accounts: ServiceAccountManager
    docker: DockerProvider
    options: RuntimeOptions
    environ: MutableMapping[str, str] = field(default_factory=lambda: os.environ)
    euid_provider: Callable[[], int] = os.geteuid
    current_user: Callable[[], str] = current_username
    exec_fn: ExecFunction = os.execvpe
    chdir: Callable[[Path], None] = os.chdir
    package_dir: Path | None = None
    python: str = sys.executable

    def needs_switch(self) -> bool:
        """Return ``True`` when this process should re-execute as the service account.

        Raises :class:`SwitchLoopError` when a previous switch already
        happened but the process is still running as someone else.
        """
        marker = self.environ.get(USER_SWITCH_ENV)
        if marker:
            user = self.current_user()
            if user == self.accounts.name:
                return False
            raise SwitchLoopError(
                f"Already switched users (marker '{marker}') but running as '{user}', "
                f"not '{self.accounts.name}'; refusing to switch again."
            )
        if self.options.skip_user_switch:
            return False
        return self.euid_provider() == 0

    def prepare(self, invocation: PreservedInvocation, *, dry_run: bool = False) -> SwitchPlan:
        """Provision, synchronise and hand over; return the exec plan."""
        warnings: list[str] = []
        try:
            if not self.accounts.account_exists():
                plan = self.accounts.create_account(dry_run=dry_run)
                warnings.extend(plan.warnings)
            if dry_run and not self.accounts.account_exists():
                home = HomeRepair(path=self.accounts.spec.default_home(), actions=("create-home",))
            else:
                home = self.accounts.ensure_home(dry_run=dry_run)
            status = self.accounts.status()
        except ServiceAccountError as exc:
            raise PrivilegeSwitchError(str(exc)) from exc

        source, package_relative = locate_installation(self.package_dir)
        target = home.path / source.name
        sync = sync_installation(
            source,
            target,
            accounts=self.accounts,
            sample_size=self.config.detection.freshness_sample_size,
            dry_run=dry_run,
        )
        installation = ServiceAccountInstallation(
            root=target if sync.action != "in-place" else source,
            owner=self.accounts.name,
            package_relative=package_relative,
        )

        token = self.options.token
        token_file: Path | None = None
        if token:
            for warning in validate_token(token):
                LOGGER.warning(warning)
                warnings.append(warning)
            if dry_run or status.uid is None or status.gid is None:
                token_file = home.path / TOKEN_DIR_NAME / TOKEN_FILE_NAME
            else:
                token_file = write_token_file(
                    home.path,
                    token,
                    uid=status.uid,
                    gid=status.gid,
                )
            warning = self._registry_login(token, dry_run=dry_run)
            if warning:
                warnings.append(warning)

        overlay = self.options.overlay()
        overlay.update(invocation.overlay())
        overlay[USER_SWITCH_ENV] = self.accounts.name
        overlay["MILOUCTL_CONFIG_FILE"] = str(self.config.config_file)
        overlay["PYTHONPATH"] = str(installation.python_path)
        if token_file is not None:
            overlay[TOKEN_FILE_ENV] = str(token_file)

        environment = dict(self.environ)
        environment.update(overlay)
        preserved = tuple(sorted(overlay))
        argv = [
            self.config.sudo_bin,
            "-u",
            self.accounts.name,
            "-g",
            self.config.service_account.docker_group,
            "-H",
            f"--preserve-env={','.join(preserved)}",
            "--",
            self.python,
            "-m",
            "milouctl",
        ]
        hidden = [token] if token else []
        shown_env = " ".join(
            f"{key}={shlex.quote(overlay[key])}" for key in preserved if key != "PYTHONPATH"
        )
        display = mask_text(f"{shlex.join(argv)} [{shown_env}]", hidden)
        return SwitchPlan(
            argv=argv,
            environment=environment,
            preserved_keys=preserved,
            cwd=installation.root,
            display=display,
            home=home,
            sync=sync,
            token_file=token_file,
            warnings=tuple(warnings),
        )

    def switch(self, invocation: PreservedInvocation) -> NoReturn:
        """Replace the current process with the same invocation as the service account."""
        marker = self.environ.get(USER_SWITCH_ENV)
        if marker:
            self.needs_switch()
            raise SwitchLoopError(
                f"Process already switched to '{marker}'; refusing a second process replacement."
            )
        plan = self.prepare(invocation)
        LOGGER.info("Switching to '%s': %s", self.accounts.name, plan.display)
        try:
            self.chdir(plan.cwd)
            self.exec_fn(plan.argv[0], plan.argv, plan.environment)
        except OSError as exc:
            raise PrivilegeSwitchError(f"Failed to execute {plan.argv[0]}: {exc}") from exc
        raise SwitchInvariantError(
            "Process replacement returned unexpectedly; no setup work was performed."
        )

    def _registry_login(self, token: str, *, dry_run: bool) -> str | None:
        registry = self.config.docker.registry
        try:
            self.docker.login(registry, token, as_user=self.accounts.name, dry_run=dry_run)
        except DockerError as exc:
            message = f"Registry login to {registry} failed: {mask_text(str(exc), [token])}"
            LOGGER.warning(message)
            return message
        LOGGER.debug("Logged in to %s as '%s'", registry, self.accounts.name)
        return None


__all__ = [
    "CredentialFormatError",
    "PrivilegeSwitch",
    "PrivilegeSwitchError",
    "ServiceAccountInstallation",
    "SwitchInvariantError",
    "SwitchLoopError",
    "SwitchPlan",
    "SyncResult",
    "locate_installation",
    "sync_installation",
    "validate_token",
    "write_token_file",
]
