"""Helpers for managing configuration snapshots and their index."""
from __future__ import annotations

import hashlib
import json
import os
import secrets
import tempfile
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

SNAPSHOT_INDEX_NAME = "snapshots.json"
SNAPSHOT_MODE = 0o400


class BackupError(RuntimeError):
    """Raised when backup operations fail."""


class BackupRegistryError(BackupError):
    """Raised when snapshot index interactions fail."""


class SnapshotError(BackupError):
    """Raised when a configuration snapshot cannot be taken or verified."""


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _normalise_identifier(value: str, *, label: str) -> str:
    normalised = value.strip()
    if not normalised:
        raise BackupRegistryError(f"{label} must be a non-empty string.")
    return normalised


def file_digest(path: Path) -> str:
    """Return the SHA-256 hex digest of *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


@dataclass(slots=True)
class SnapshotsRegistry:
    """Manage the JSON snapshot index under the backups directory."""

    root: Path
    index: Path | None = None

    def __post_init__(self) -> None:
        """Normalise root/index paths after initialisation."""
        self.root = Path(self.root).expanduser()
        if self.index is None:
            self.index = self.root / SNAPSHOT_INDEX_NAME
        self.index = Path(self.index).expanduser()

    @property
    def index_path(self) -> Path:
        """Return the resolved index location."""
        assert self.index is not None
        return self.index

    # Basic helpers -------------------------------------------------
    def ensure_root(self) -> None:
        """Ensure the backups directory exists with owner-only permissions."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o700)
        except OSError as exc:  # pragma: no cover - permissions env-specific
            raise BackupRegistryError(f"Failed to prepare backup root {self.root}: {exc}") from exc

    def read(self) -> dict[str, object]:
        """Return the parsed snapshot index (empty structure when missing)."""
        if not self.index_path.exists():
            return {"snapshots": []}
        try:
            text = self.index_path.read_text(encoding="utf-8")
            data = json.loads(text)
        except FileNotFoundError:
            return {"snapshots": []}
        except json.JSONDecodeError as exc:
            raise BackupRegistryError(
                f"Snapshot index corrupted ({self.index_path}): {exc}"
            ) from exc
        if not isinstance(data, Mapping):
            raise BackupRegistryError(f"Snapshot index must be a JSON object ({self.index_path}).")
        return dict(data)

    def write(self, payload: Mapping[str, object]) -> None:
        """Atomically persist *payload* to the snapshot index."""
        self.ensure_root()
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(self.index_path.parent),
            prefix=f".{self.index_path.name}.",
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=False)
                handle.write("\n")
            os.replace(tmp_path, self.index_path)
            os.chmod(self.index_path, 0o600)
        except OSError as exc:
            raise BackupRegistryError(f"Failed to write snapshot index: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def append(self, entry: Mapping[str, object]) -> None:
        """Append *entry* to the snapshot index."""
        data = self.read()
        snapshots = data.get("snapshots")
        if isinstance(snapshots, list):
            updated: list[object] = list(snapshots)
        else:
            updated = []
        updated.append(dict(entry))
        self.write({"snapshots": updated})

    def list_entries(self) -> list[dict[str, object]]:
        """Return a list of snapshot entries in creation order."""
        data = self.read()
        snapshots = data.get("snapshots", [])
        entries: list[dict[str, object]] = []
        if isinstance(snapshots, list):
            for item in snapshots:
                if isinstance(item, Mapping):
                    entries.append(dict(item))
        return entries

    def find_by_id(self, snapshot_id: str) -> dict[str, object] | None:
        """Return the entry for *snapshot_id* if present."""
        normalized = _normalise_identifier(snapshot_id, label="Snapshot identifier")
        for entry in self.list_entries():
            if str(entry.get("id", "")).strip() == normalized:
                return entry
        return None

    def entries_for_source(self, source: Path) -> list[dict[str, object]]:
        """Return entries recorded for the configuration file *source*."""
        wanted = str(Path(source).expanduser())
        return [entry for entry in self.list_entries() if str(entry.get("source", "")) == wanted]

    def latest_for(self, source: Path) -> dict[str, object] | None:
        """Return the newest available snapshot for *source*."""
        candidates = [
            entry
            for entry in self.entries_for_source(source)
            if entry.get("status", "available") == "available"
        ]
        return candidates[-1] if candidates else None

    def update_entry(
        self,
        snapshot_id: str,
        mutator: Callable[[dict[str, object]], None],
    ) -> dict[str, object]:
        """Apply *mutator* to the entry for *snapshot_id* and persist changes."""
        normalized = _normalise_identifier(snapshot_id, label="Snapshot identifier")
        entries = self.list_entries()
        updated_entry: dict[str, object] | None = None
        for index, entry in enumerate(entries):
            if str(entry.get("id", "")).strip() == normalized:
                mutable = dict(entry)
                mutator(mutable)
                entries[index] = mutable
                updated_entry = mutable
                break
        if updated_entry is None:
            raise BackupRegistryError(f"Snapshot '{normalized}' not found in index.")
        self.write({"snapshots": entries})
        return updated_entry

    # Utility helpers -----------------------------------------------
    def generate_identifier(self) -> str:
        """Return a unique snapshot identifier."""
        timestamp = datetime.now(tz=UTC).strftime("%Y%m%d-%H%M%S")
        token = secrets.token_hex(3)
        return f"{timestamp}-{token}"

    def snapshot_path(self, source: Path, snapshot_id: str) -> Path:
        """Return the file that stores snapshot *snapshot_id* of *source*."""
        return self.root / f"{Path(source).name}.{snapshot_id}.bak"


@dataclass(slots=True)
class SnapshotEntryBuilder:
    """Helper for constructing snapshot index entries."""

    source: Path
    snapshot_path: Path
    checksum: str
    size_bytes: int
    keys_present: Iterable[str] = ()
    reason: str | None = None
    actor: Mapping[str, object] | None = None

    def build(self, *, snapshot_id: str) -> dict[str, object]:
        """Return the JSON-serialisable entry for the snapshot index."""
        entry: dict[str, object] = {
            "id": snapshot_id,
            "source": str(self.source),
            "created_at": _now_iso(),
            "path": str(self.snapshot_path),
            "size_bytes": self.size_bytes,
            "checksum": {"algorithm": "sha256", "value": self.checksum},
            "status": "available",
            "keys_present": sorted(self.keys_present),
        }
        if self.reason:
            entry["reason"] = self.reason
        if self.actor:
            entry["created_by"] = dict(self.actor)
        return entry


def create_snapshot(
    registry: SnapshotsRegistry,
    source: Path,
    *,
    keys_present: Iterable[str] = (),
    reason: str | None = None,
    actor: Mapping[str, object] | None = None,
) -> dict[str, object]:
    """Copy *source* into a new write-once snapshot and index it.

    The snapshot file is created exclusively, made read-only and re-read to
    confirm its digest matches the source bytes before the index entry is
    written. Any failure raises :class:`SnapshotError`; a partially written
    snapshot file is removed.
    """
    source = Path(source).expanduser()
    try:
        payload = source.read_bytes()
    except OSError as exc:
        raise SnapshotError(f"Cannot read {source} for snapshot: {exc}") from exc

    try:
        registry.ensure_root()
    except BackupRegistryError as exc:
        raise SnapshotError(str(exc)) from exc

    snapshot_id = registry.generate_identifier()
    destination = registry.snapshot_path(source, snapshot_id)
    expected = hashlib.sha256(payload).hexdigest()
    try:
        fd = os.open(destination, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    except FileExistsError as exc:
        raise SnapshotError(f"Snapshot {destination} already exists.") from exc
    except OSError as exc:
        raise SnapshotError(f"Cannot create snapshot {destination}: {exc}") from exc
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(destination, SNAPSHOT_MODE)
        actual = file_digest(destination)
    except OSError as exc:
        _discard(destination)
        raise SnapshotError(f"Failed to write snapshot {destination}: {exc}") from exc
    if actual != expected:
        _discard(destination)
        raise SnapshotError(f"Snapshot {destination} failed verification.")

    entry = SnapshotEntryBuilder(
        source=source,
        snapshot_path=destination,
        checksum=expected,
        size_bytes=len(payload),
        keys_present=keys_present,
        reason=reason,
        actor=actor,
    ).build(snapshot_id=snapshot_id)
    try:
        registry.append(entry)
    except BackupRegistryError as exc:
        _discard(destination)
        raise SnapshotError(str(exc)) from exc
    return entry


def _discard(path: Path) -> None:
    try:
        os.chmod(path, 0o600)
        path.unlink()
    except FileNotFoundError:
        return
    except OSError:  # pragma: no cover - best effort cleanup
        return


__all__ = [
    "BackupError",
    "BackupRegistryError",
    "SNAPSHOT_INDEX_NAME",
    "SnapshotEntryBuilder",
    "SnapshotError",
    "SnapshotsRegistry",
    "create_snapshot",
    "file_digest",
]
