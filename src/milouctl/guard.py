"""Backup and rollback guard around configuration mutations.

Every change to the persisted ``.env`` file goes through
:func:`with_safe_mutation`: the current file is snapshotted, the mutation
runs, and the critical credential keys are compared before and after. A key
that held a non-empty value before the mutation and is missing or empty
afterwards is a regression; the snapshot is restored and
:class:`RollbackError` is raised naming the lost keys (never their values).
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .backups import (
    BackupRegistryError,
    SnapshotError,
    SnapshotsRegistry,
    create_snapshot,
    file_digest,
)
from .envfile import EnvFileError, atomic_write_text, read_env_file

LOGGER = logging.getLogger(__name__)

Mutation = Callable[[], object]


class RollbackError(RuntimeError):
    """Raised when a mutation dropped critical keys and the snapshot was restored."""

    def __init__(self, keys: Iterable[str], snapshot: Path | None, *, restored: bool = True) -> None:
        self.keys = tuple(keys)
        self.snapshot = snapshot
        self.restored = restored
        joined = ", ".join(self.keys)
        if restored:
            message = (
                f"Configuration lost critical keys ({joined}); restored from snapshot {snapshot}."
            )
        else:
            message = (
                f"Configuration lost critical keys ({joined}) and snapshot {snapshot} "
                "could not be restored."
            )
        super().__init__(message)


class RestoreError(RuntimeError):
    """Raised when a snapshot cannot be restored."""


@dataclass(frozen=True)
class MutationOutcome:
    """Summary of a guarded mutation that passed its integrity check."""

    config_path: Path
    snapshot_id: str | None
    snapshot_path: Path | None
    keys_before: tuple[str, ...]
    keys_after: tuple[str, ...]
    changed: bool
    result: object = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "config_path": str(self.config_path),
            "snapshot_id": self.snapshot_id,
            "snapshot_path": str(self.snapshot_path) if self.snapshot_path else None,
            "keys_before": list(self.keys_before),
            "keys_after": list(self.keys_after),
            "changed": self.changed,
        }


@dataclass(frozen=True)
class IntegrityReport:
    """Comparison of the live configuration with its latest snapshot."""

    ok: bool
    missing: tuple[str, ...]
    snapshot_id: str | None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"ok": self.ok, "missing": list(self.missing), "snapshot_id": self.snapshot_id}


def critical_values(values: Mapping[str, str], critical_keys: Iterable[str]) -> dict[str, str]:
    """Return the critical keys of *values* that hold a non-empty value."""
    return {key: values[key] for key in critical_keys if values.get(key, "").strip()}


def find_regressions(
    before: Mapping[str, str],
    after: Mapping[str, str],
    critical_keys: Iterable[str],
) -> list[str]:
    """Return keys that were non-empty in *before* and are absent or empty in *after*."""
    return [
        key
        for key in critical_keys
        if before.get(key, "").strip() and not after.get(key, "").strip()
    ]


def _read_for_check(config_path: Path) -> dict[str, str]:
    try:
        return read_env_file(config_path)
    except EnvFileError as exc:
        LOGGER.debug("Configuration unreadable after mutation: %s", exc)
        return {}


def restore_snapshot(
    config_path: Path,
    entry: Mapping[str, object],
    *,
    backups: SnapshotsRegistry | None = None,
) -> Path:
    """Atomically replace *config_path* with the snapshot described by *entry*."""
    snapshot_path = Path(str(entry.get("path", "")))
    if not snapshot_path.is_file():
        raise RestoreError(f"Snapshot file {snapshot_path} is missing.")
    checksum = entry.get("checksum")
    if isinstance(checksum, Mapping):
        expected = str(checksum.get("value", ""))
        if expected and file_digest(snapshot_path) != expected:
            raise RestoreError(f"Snapshot {snapshot_path} failed checksum verification.")
    try:
        text = snapshot_path.read_text(encoding="utf-8")
        atomic_write_text(config_path, text)
    except (OSError, EnvFileError) as exc:
        raise RestoreError(f"Failed to restore {config_path} from {snapshot_path}: {exc}") from exc

    snapshot_id = str(entry.get("id", "")).strip()
    if backups is not None and snapshot_id:

        def _mark_restored(item: dict[str, object]) -> None:
            history = item.get("restored_at")
            restored = list(history) if isinstance(history, list) else []
            restored.append(datetime.now(tz=UTC).isoformat(timespec="seconds"))
            item["restored_at"] = restored

        try:
            backups.update_entry(snapshot_id, _mark_restored)
        except BackupRegistryError as exc:
            LOGGER.warning("Restored %s but could not update snapshot index: %s", config_path, exc)
    LOGGER.info("Restored %s from snapshot %s", config_path, snapshot_path)
    return snapshot_path


def check_integrity(
    config_path: Path,
    critical_keys: Iterable[str],
    *,
    backups: SnapshotsRegistry,
) -> IntegrityReport:
    """Compare the live configuration against the keys recorded in its latest snapshot."""
    latest = backups.latest_for(config_path)
    if latest is None:
        return IntegrityReport(ok=True, missing=(), snapshot_id=None)
    recorded = latest.get("keys_present")
    expected = [str(key) for key in recorded] if isinstance(recorded, list) else []
    keys = list(critical_keys)
    current = read_env_file(config_path)
    missing = tuple(
        key for key in keys if key in expected and not current.get(key, "").strip()
    )
    return IntegrityReport(ok=not missing, missing=missing, snapshot_id=str(latest.get("id")))


def find_recovery_snapshot(
    config_path: Path,
    critical_keys: Iterable[str],
    *,
    backups: SnapshotsRegistry,
) -> dict[str, object] | None:
    """Return the newest snapshot holding every critical key the live file still has.

    Snapshots whose file is gone or fails its checksum are skipped. ``None``
    means no snapshot is a safe restore source.
    """
    keys = list(critical_keys)
    try:
        live = critical_values(read_env_file(config_path), keys)
    except EnvFileError:
        live = {}
    for entry in reversed(backups.entries_for_source(config_path)):
        snapshot_path = Path(str(entry.get("path", "")))
        if not snapshot_path.is_file():
            continue
        checksum = entry.get("checksum")
        if isinstance(checksum, Mapping) and file_digest(snapshot_path) != checksum.get("value"):
            LOGGER.debug("Skipping snapshot %s with mismatched checksum", snapshot_path)
            continue
        try:
            present = critical_values(read_env_file(snapshot_path), keys)
        except EnvFileError:
            continue
        if present and set(live).issubset(present):
            return entry
    return None


def with_safe_mutation(
    config_path: Path,
    mutate: Mutation,
    critical_keys: Iterable[str],
    *,
    backups: SnapshotsRegistry,
    reason: str | None = None,
) -> MutationOutcome:
    """Run *mutate* between a snapshot and a critical-key integrity check.

    Raises :class:`SnapshotError` (without calling *mutate*) when the
    snapshot cannot be taken, and :class:`RollbackError` when a critical key
    regressed, after the snapshot has been restored. When *mutate* raises and
    no key regressed, its exception propagates unchanged.
    """
    config_path = Path(config_path).expanduser()
    keys = list(critical_keys)
    try:
        before = critical_values(read_env_file(config_path), keys)
    except EnvFileError as exc:
        if not config_path.is_file():
            raise SnapshotError(f"Cannot snapshot unreadable configuration: {exc}") from exc
        LOGGER.warning("Snapshotting undecodable configuration %s as is: %s", config_path, exc)
        before = {}

    entry: dict[str, object] | None = None
    digest_before: str | None = None
    if config_path.exists():
        entry = create_snapshot(backups, config_path, keys_present=before.keys(), reason=reason)
        checksum = entry.get("checksum")
        digest_before = str(checksum.get("value")) if isinstance(checksum, Mapping) else None
        LOGGER.debug("Snapshot %s taken before mutation", entry.get("id"))

    try:
        result = mutate()
    except Exception as exc:
        regressions = find_regressions(before, _read_for_check(config_path), keys)
        if regressions:
            _rollback(config_path, entry, regressions, backups, cause=exc)
        raise

    after = critical_values(_read_for_check(config_path), keys)
    regressions = find_regressions(before, after, keys)
    if regressions:
        _rollback(config_path, entry, regressions, backups)

    digest_after = file_digest(config_path) if config_path.exists() else None
    snapshot_path = Path(str(entry["path"])) if entry else None
    return MutationOutcome(
        config_path=config_path,
        snapshot_id=str(entry["id"]) if entry else None,
        snapshot_path=snapshot_path,
        keys_before=tuple(sorted(before)),
        keys_after=tuple(sorted(after)),
        changed=digest_before != digest_after,
        result=result,
    )


def _rollback(
    config_path: Path,
    entry: Mapping[str, object] | None,
    regressions: list[str],
    backups: SnapshotsRegistry,
    *,
    cause: BaseException | None = None,
) -> None:
    if entry is None:
        raise RestoreError(
            f"Critical keys regressed ({', '.join(regressions)}) but no snapshot was taken."
        ) from cause
    snapshot_path = Path(str(entry.get("path", "")))
    LOGGER.warning(
        "Critical keys regressed (%s); restoring %s", ", ".join(regressions), snapshot_path
    )
    try:
        restore_snapshot(config_path, entry, backups=backups)
    except RestoreError as exc:
        raise RollbackError(regressions, snapshot_path, restored=False) from exc
    raise RollbackError(regressions, snapshot_path) from cause


__all__ = [
    "IntegrityReport",
    "MutationOutcome",
    "RestoreError",
    "RollbackError",
    "check_integrity",
    "critical_values",
    "find_recovery_snapshot",
    "find_regressions",
    "restore_snapshot",
    "with_safe_mutation",
]
