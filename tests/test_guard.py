"""Tests for the snapshot-and-verify mutation guard."""
from __future__ import annotations

import os
from pathlib import Path

import pytest

from milouctl import guard
from milouctl.backups import SnapshotsRegistry, create_snapshot
from milouctl.envfile import read_env_file, update_env_file, write_env_file
from milouctl.guard import (
    RestoreError,
    RollbackError,
    check_integrity,
    find_recovery_snapshot,
    find_regressions,
    restore_snapshot,
    with_safe_mutation,
)

KEYS = ("DB_PASSWORD", "JWT_SECRET")


@pytest.fixture
def env_file(tmp_path: Path) -> Path:
    path = tmp_path / ".env"
    write_env_file(path, {"DB_PASSWORD": "db", "JWT_SECRET": "jwt", "DOMAIN": "a.example"})
    return path


@pytest.fixture
def registry(tmp_path: Path) -> SnapshotsRegistry:
    return SnapshotsRegistry(tmp_path / "backups")


def test_find_regressions_treats_empty_as_missing() -> None:
    """A key that becomes empty or disappears is a regression; a new key is not."""
    before = {"DB_PASSWORD": "db", "JWT_SECRET": "jwt"}
    after = {"DB_PASSWORD": "  ", "REDIS_PASSWORD": "new"}

    assert find_regressions(before, after, [*KEYS, "REDIS_PASSWORD"]) == ["DB_PASSWORD", "JWT_SECRET"]


def test_successful_mutation_keeps_snapshot(env_file: Path, registry: SnapshotsRegistry) -> None:
    """A mutation that keeps every critical key is committed."""
    outcome = with_safe_mutation(
        env_file,
        lambda: update_env_file(env_file, {"DOMAIN": "b.example"}),
        KEYS,
        backups=registry,
        reason="test",
    )

    assert outcome.changed is True
    assert outcome.keys_before == outcome.keys_after == tuple(sorted(KEYS))
    assert outcome.snapshot_path is not None
    assert "DOMAIN=a.example" in outcome.snapshot_path.read_text()
    assert read_env_file(env_file)["DOMAIN"] == "b.example"
    assert registry.latest_for(env_file)["id"] == outcome.snapshot_id


def test_unchanged_mutation_reports_no_change(env_file: Path, registry: SnapshotsRegistry) -> None:
    """Rewriting identical content is not a change."""
    outcome = with_safe_mutation(env_file, lambda: None, KEYS, backups=registry)

    assert outcome.changed is False


def test_regression_is_rolled_back(env_file: Path, registry: SnapshotsRegistry) -> None:
    """Dropping a critical key restores the snapshot byte for byte."""
    original = env_file.read_bytes()

    def drop_secret() -> None:
        write_env_file(env_file, {"DB_PASSWORD": "db", "DOMAIN": "c.example"})

    with pytest.raises(RollbackError) as excinfo:
        with_safe_mutation(env_file, drop_secret, KEYS, backups=registry)

    assert excinfo.value.keys == ("JWT_SECRET",)
    assert excinfo.value.restored is True
    assert env_file.read_bytes() == original
    entry = registry.latest_for(env_file)
    assert entry is not None
    assert len(entry["restored_at"]) == 1


def test_emptied_value_is_a_regression(env_file: Path, registry: SnapshotsRegistry) -> None:
    """Setting a critical key to an empty value is rolled back too."""
    with pytest.raises(RollbackError):
        with_safe_mutation(
            env_file,
            lambda: update_env_file(env_file, {"DB_PASSWORD": ""}),
            KEYS,
            backups=registry,
        )

    assert read_env_file(env_file)["DB_PASSWORD"] == "db"


def test_failed_mutation_with_regression_is_rolled_back(
    env_file: Path,
    registry: SnapshotsRegistry,
) -> None:
    """A mutation that truncates the file and then crashes is still rolled back."""
    original = env_file.read_bytes()

    def crash() -> None:
        env_file.write_text("")
        raise ValueError("interrupted")

    with pytest.raises(RollbackError) as excinfo:
        with_safe_mutation(env_file, crash, KEYS, backups=registry)

    assert isinstance(excinfo.value.__cause__, ValueError)
    assert env_file.read_bytes() == original


def test_failed_mutation_without_regression_propagates(
    env_file: Path,
    registry: SnapshotsRegistry,
) -> None:
    """The mutation's own error surfaces when no key was lost."""

    def crash() -> None:
        raise ValueError("nothing written")

    with pytest.raises(ValueError, match="nothing written"):
        with_safe_mutation(env_file, crash, KEYS, backups=registry)


def test_first_run_needs_no_snapshot(tmp_path: Path, registry: SnapshotsRegistry) -> None:
    """Creating the configuration for the first time takes no snapshot."""
    path = tmp_path / "fresh" / ".env"

    outcome = with_safe_mutation(
        path,
        lambda: write_env_file(path, {"DB_PASSWORD": "x"}),
        KEYS,
        backups=registry,
    )

    assert outcome.snapshot_id is None
    assert outcome.changed is True
    assert outcome.keys_before == ()
    assert outcome.keys_after == ("DB_PASSWORD",)
    assert registry.list_entries() == []


def test_check_integrity_against_latest_snapshot(
    env_file: Path,
    registry: SnapshotsRegistry,
) -> None:
    """Keys recorded in the latest snapshot must still be present."""
    assert check_integrity(env_file, KEYS, backups=registry).snapshot_id is None

    create_snapshot(registry, env_file, keys_present=KEYS)
    assert check_integrity(env_file, KEYS, backups=registry).ok

    write_env_file(env_file, {"DB_PASSWORD": "db"})
    report = check_integrity(env_file, KEYS, backups=registry)

    assert report.ok is False
    assert report.missing == ("JWT_SECRET",)


def test_find_recovery_snapshot_prefers_newest_superset(
    env_file: Path,
    registry: SnapshotsRegistry,
) -> None:
    """The newest intact snapshot holding all live keys is chosen."""
    good = create_snapshot(registry, env_file, keys_present=KEYS)
    write_env_file(env_file, {"DB_PASSWORD": "db"})
    partial = create_snapshot(registry, env_file, keys_present=["DB_PASSWORD"])
    tampered = create_snapshot(registry, env_file, keys_present=["DB_PASSWORD"])
    tampered_path = Path(str(tampered["path"]))
    os.chmod(tampered_path, 0o600)
    tampered_path.write_text("DB_PASSWORD=db\nJWT_SECRET=forged\n")

    chosen = find_recovery_snapshot(env_file, KEYS, backups=registry)

    assert chosen is not None
    assert chosen["id"] == partial["id"]

    write_env_file(env_file, {"DB_PASSWORD": "db", "JWT_SECRET": "jwt"})
    assert find_recovery_snapshot(env_file, KEYS, backups=registry)["id"] == good["id"]


def test_restore_rejects_tampered_snapshot(env_file: Path, registry: SnapshotsRegistry) -> None:
    """A snapshot whose checksum no longer matches is never restored."""
    entry = create_snapshot(registry, env_file, keys_present=KEYS)
    snapshot = Path(str(entry["path"]))
    os.chmod(snapshot, 0o600)
    snapshot.write_text("JWT_SECRET=forged\n")
    write_env_file(env_file, {"DOMAIN": "changed"})

    with pytest.raises(RestoreError, match="checksum"):
        restore_snapshot(env_file, entry, backups=registry)

    assert read_env_file(env_file) == {"DOMAIN": "changed"}


def test_undecodable_result_is_rolled_back(env_file: Path, registry: SnapshotsRegistry) -> None:
    """A mutation that leaves bytes that are not UTF-8 loses every key and is undone."""
    original = env_file.read_bytes()

    with pytest.raises(RollbackError) as excinfo:
        with_safe_mutation(
            env_file,
            lambda: env_file.write_bytes(b"OTHER=\xff\n"),
            KEYS,
            backups=registry,
        )

    assert excinfo.value.keys == KEYS
    assert env_file.read_bytes() == original


def test_undecodable_source_is_snapshotted_as_is(
    tmp_path: Path, registry: SnapshotsRegistry
) -> None:
    """A configuration that cannot be decoded is still copied before it is replaced."""
    path = tmp_path / ".env"
    path.write_bytes(b"DB_PASSWORD=\xff\n")

    outcome = with_safe_mutation(
        path,
        lambda: write_env_file(path, {"DB_PASSWORD": "db", "JWT_SECRET": "jwt"}),
        KEYS,
        backups=registry,
    )

    assert outcome.keys_before == ()
    assert outcome.snapshot_path is not None
    assert outcome.snapshot_path.read_bytes() == b"DB_PASSWORD=\xff\n"
    assert read_env_file(path) == {"DB_PASSWORD": "db", "JWT_SECRET": "jwt"}


def test_rollback_without_snapshot_raises_restore_error(
    tmp_path: Path, registry: SnapshotsRegistry
) -> None:
    """A regression with nothing to restore from is reported, never silently accepted."""
    with pytest.raises(RestoreError, match="no snapshot"):
        guard._rollback(tmp_path / ".env", None, ["DB_PASSWORD"], registry)
