"""Tests for installation state detection."""
from __future__ import annotations

import subprocess
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from milouctl.backups import SnapshotsRegistry, create_snapshot
from milouctl.bootstrap.detection import InstallationState, InstallationStateDetector
from milouctl.bootstrap.service_accounts import ServiceAccountManager, ServiceAccountSpec
from milouctl.config import AppConfig, DetectionConfig
from milouctl.providers.docker import DockerProvider

if TYPE_CHECKING:
    from conftest import FakeRunner

PS = ["docker", "ps"]


def _detector(
    app_config: AppConfig,
    fake_runner: FakeRunner,
    monkeypatch: pytest.MonkeyPatch,
    *,
    root: bool = False,
    account: bool = True,
    docker: bool = True,
    backups: SnapshotsRegistry | None = None,
) -> InstallationStateDetector:
    monkeypatch.setattr(ServiceAccountManager, "account_exists", lambda self: account)
    provider = DockerProvider(
        runner=fake_runner,
        which=lambda binary: f"/usr/bin/{binary}" if docker else None,
    )
    return InstallationStateDetector(
        config=app_config,
        docker=provider,
        accounts=ServiceAccountManager(ServiceAccountSpec(name="milou")),
        backups=backups,
        euid_provider=lambda: 0 if root else 1000,
    )


def _write_config(app_config: AppConfig, text: str = "DB_PASSWORD=secret\n") -> None:
    app_config.env_file.parent.mkdir(parents=True, exist_ok=True)
    app_config.env_file.write_text(text)


def _containers(fake_runner: FakeRunner, *rows: str) -> None:
    fake_runner.respond(PS, stdout="\n".join(rows) + "\n")


def test_untouched_root_host_is_fresh(
    app_config: AppConfig, fake_runner: FakeRunner, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Every indicator set: root, no account, no config, no docker, no containers."""
    detector = _detector(app_config, fake_runner, monkeypatch, root=True, account=False, docker=False)

    report = detector.report()

    assert report.state is InstallationState.FRESH
    assert report.indicators.count == 5
    assert "Docker is not installed" in report.reasons
    assert fake_runner.calls == []


def test_running_installation(
    app_config: AppConfig, fake_runner: FakeRunner, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Config plus healthy containers is a running installation."""
    _write_config(app_config)
    _containers(
        fake_runner,
        "milou-backend\trunning\tUp 3 hours (healthy)",
        "milou-database\trunning\tUp 3 hours",
    )

    report = _detector(app_config, fake_runner, monkeypatch).report()

    assert report.state is InstallationState.RUNNING
    assert [container.name for container in report.containers] == ["milou-backend", "milou-database"]
    assert report.indicators.count == 0


def test_stopped_installation(
    app_config: AppConfig, fake_runner: FakeRunner, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Config plus containers that are all stopped."""
    _write_config(app_config)
    _containers(fake_runner, "milou-backend\texited\tExited (0) 2 days ago")

    assert _detector(app_config, fake_runner, monkeypatch).detect() is InstallationState.STOPPED_INSTALLED


def test_partially_running_stack_is_broken(
    app_config: AppConfig, fake_runner: FakeRunner, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A mix of running and stopped containers is inconsistent."""
    _write_config(app_config)
    _containers(
        fake_runner,
        "milou-backend\trunning\tUp 1 minute",
        "milou-database\texited\tExited (1) 1 minute ago",
    )

    report = _detector(app_config, fake_runner, monkeypatch).report()

    assert report.state is InstallationState.BROKEN
    assert "milou-database" in report.consistency_errors[0]


def test_unhealthy_container_is_broken(
    app_config: AppConfig, fake_runner: FakeRunner, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A running but unhealthy container marks the install broken."""
    _write_config(app_config)
    _containers(fake_runner, "milou-backend\trunning\tUp 5 minutes (unhealthy)")

    assert _detector(app_config, fake_runner, monkeypatch).detect() is InstallationState.BROKEN


def test_configured_only(
    app_config: AppConfig, fake_runner: FakeRunner, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A configuration without containers below the fresh threshold."""
    _write_config(app_config)

    report = _detector(app_config, fake_runner, monkeypatch).report()

    assert report.state is InstallationState.CONFIGURED_ONLY
    assert report.indicators.count == 1


def test_containers_only(
    app_config: AppConfig, fake_runner: FakeRunner, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Containers without a configuration file."""
    _containers(fake_runner, "milou-backend\trunning\tUp 1 hour")

    assert _detector(app_config, fake_runner, monkeypatch).detect() is InstallationState.CONTAINERS_ONLY


def test_prefix_filter_ignores_substring_matches(
    app_config: AppConfig, fake_runner: FakeRunner, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Only names starting with the prefix count as managed containers."""
    _write_config(app_config)
    _containers(fake_runner, "other-milou-web\trunning\tUp 1 hour")

    assert _detector(app_config, fake_runner, monkeypatch).detect() is InstallationState.CONFIGURED_ONLY


def test_threshold_boundary(
    app_config: AppConfig, fake_runner: FakeRunner, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Exactly three indicators is fresh; two is not."""
    _containers(fake_runner, "milou-backend\trunning\tUp 1 hour")
    _write_config(app_config)
    two = _detector(app_config, fake_runner, monkeypatch, root=True, account=False).report()
    assert two.indicators.count == 2
    assert two.state is InstallationState.RUNNING

    app_config.env_file.unlink()
    three = _detector(app_config, fake_runner, monkeypatch, root=True, account=False).report()
    assert three.indicators.count == 3
    assert three.state is InstallationState.FRESH


def test_threshold_is_configurable(
    app_config: AppConfig, fake_runner: FakeRunner, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A threshold of one turns any single indicator into a fresh verdict."""
    _write_config(app_config)
    config = replace(app_config, detection=DetectionConfig(fresh_threshold=1))

    report = _detector(config, fake_runner, monkeypatch).report()

    assert report.state is InstallationState.FRESH
    assert report.threshold == 1


def test_forced_fresh_install(
    app_config: AppConfig, fake_runner: FakeRunner, monkeypatch: pytest.MonkeyPatch
) -> None:
    """--fresh-install overrides a running installation."""
    _write_config(app_config)
    _containers(fake_runner, "milou-backend\trunning\tUp 1 hour")

    report = _detector(app_config, fake_runner, monkeypatch).report(force_fresh=True)

    assert report.state is InstallationState.FRESH
    assert report.forced is True
    assert "Fresh install requested" in report.reasons


def test_failing_probe_counts_as_indicator(
    app_config: AppConfig, fake_runner: FakeRunner, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A probe that raises is treated as a set indicator, never as a crash."""
    _write_config(app_config)
    detector = _detector(app_config, fake_runner, monkeypatch)

    def broken(self: ServiceAccountManager) -> bool:
        raise RuntimeError("nss unavailable")

    monkeypatch.setattr(ServiceAccountManager, "account_exists", broken)

    report = detector.report()

    assert report.indicators.account_missing is True
    assert report.probe_errors == ("account: nss unavailable",)


def test_hanging_docker_counts_as_no_containers(
    app_config: AppConfig, fake_runner: FakeRunner, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A timed-out container listing is treated as no containers."""
    _write_config(app_config)
    fake_runner.respond(PS, raises=subprocess.TimeoutExpired(PS, 5))

    report = _detector(app_config, fake_runner, monkeypatch).report()

    assert report.indicators.no_containers is True
    assert report.state is InstallationState.CONFIGURED_ONLY
    assert report.probe_errors[0].startswith("containers:")


def test_lost_critical_keys_mark_install_broken(
    app_config: AppConfig,
    fake_runner: FakeRunner,
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    """A configuration that dropped keys recorded in its snapshot is broken."""
    _write_config(app_config, "DB_PASSWORD=secret\nJWT_SECRET=jwt\n")
    registry = SnapshotsRegistry(tmp_path / "backups")
    create_snapshot(registry, app_config.env_file, keys_present=["DB_PASSWORD", "JWT_SECRET"])
    _write_config(app_config, "DB_PASSWORD=secret\n")

    report = _detector(app_config, fake_runner, monkeypatch, backups=registry).report()

    assert report.state is InstallationState.BROKEN
    assert "JWT_SECRET" in report.consistency_errors[0]


def test_undecodable_configuration_is_broken(
    app_config: AppConfig, fake_runner: FakeRunner, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A configuration that is not valid UTF-8 is reported, not raised."""
    app_config.env_file.parent.mkdir(parents=True, exist_ok=True)
    app_config.env_file.write_bytes(b"DB_PASSWORD=\xff\xfe\n")

    report = _detector(app_config, fake_runner, monkeypatch).report()

    assert report.state is InstallationState.BROKEN
    assert "unreadable" in report.consistency_errors[0]


def test_detection_is_read_only(
    app_config: AppConfig, fake_runner: FakeRunner, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Detection never runs anything but read-only docker queries."""
    _write_config(app_config)
    detector = _detector(app_config, fake_runner, monkeypatch)

    detector.report()
    detector.report()

    assert all(call[:2] == PS for call in fake_runner.calls)
    assert app_config.env_file.read_text() == "DB_PASSWORD=secret\n"
