"""Tests for doctor probes, the engine and prerequisite assessment."""
from __future__ import annotations

import os
from typing import TYPE_CHECKING

import pytest

from milouctl.config import AppConfig
from milouctl.doctor import (
    DoctorEngine,
    DoctorImpact,
    PrerequisiteStatus,
    ProbeContext,
    ProbeDefinition,
    ProbeResult,
    ProbeStatus,
    aggregate_results,
    assess,
    collect_probes,
    create_probe_context,
)
from milouctl.doctor.utils import serialize_report
from milouctl.providers.docker import DockerProvider

if TYPE_CHECKING:
    from conftest import FakeRunner

TOOLS = {"curl", "tar", "openssl", "jq"}


def _context(
    app_config: AppConfig,
    fake_runner: FakeRunner,
    *,
    docker: bool = True,
    tools: set[str] = TOOLS,
) -> ProbeContext:
    provider = DockerProvider(
        runner=fake_runner,
        which=lambda binary: f"/usr/bin/{binary}" if docker else None,
    )
    return create_probe_context(
        app_config,
        provider,
        which=lambda command: f"/usr/bin/{command}" if command in tools else None,
    )


def _healthy_docker(fake_runner: FakeRunner, version: str = "24.0.7") -> None:
    fake_runner.respond(["docker", "version"], stdout=f"{version}\n")


def test_ready_host_is_good(app_config: AppConfig, fake_runner: FakeRunner) -> None:
    """Docker, compose and every tool present gives a clean verdict."""
    _healthy_docker(fake_runner)

    report = assess(_context(app_config, fake_runner))

    assert report.status is PrerequisiteStatus.GOOD
    assert report.missing == ()
    assert report.warnings == ()


def test_missing_docker_is_blocking(app_config: AppConfig, fake_runner: FakeRunner) -> None:
    """No docker client means docker and compose are both missing."""
    report = assess(_context(app_config, fake_runner, docker=False))

    assert report.status is PrerequisiteStatus.MISSING
    assert report.missing == ("docker", "docker-compose")
    assert fake_runner.calls == []


def test_missing_tools_are_listed(app_config: AppConfig, fake_runner: FakeRunner) -> None:
    """Each absent auxiliary tool is reported by name."""
    _healthy_docker(fake_runner)

    report = assess(_context(app_config, fake_runner, tools={"curl", "tar"}))

    assert report.status is PrerequisiteStatus.MISSING
    assert report.missing == ("openssl", "jq")


def test_unreachable_daemon_is_only_a_warning(
    app_config: AppConfig, fake_runner: FakeRunner
) -> None:
    """A stopped daemon or an old client does not block setup."""
    fake_runner.respond(["docker", "info"], returncode=1, stderr="Cannot connect to the Docker daemon")
    _healthy_docker(fake_runner, version="19.03.8")

    report = assess(_context(app_config, fake_runner))

    assert report.status is PrerequisiteStatus.WARNINGS
    assert report.missing == ()
    assert "Docker daemon not accessible." in report.warnings
    assert any("older than the recommended 20.10.0" in warning for warning in report.warnings)


def test_missing_compose_plugin_is_blocking(app_config: AppConfig, fake_runner: FakeRunner) -> None:
    """Compose is required for every setup mode."""
    _healthy_docker(fake_runner)
    fake_runner.respond(["docker", "compose"], returncode=125, stderr="unknown command")

    report = assess(_context(app_config, fake_runner))

    assert report.missing == ("docker-compose",)


def test_crashing_probe_becomes_red(app_config: AppConfig, fake_runner: FakeRunner) -> None:
    """A probe raising an exception never aborts the run."""

    def boom(_context: ProbeContext) -> ProbeResult:
        raise RuntimeError("kaboom")

    def fine(_context: ProbeContext) -> ProbeResult:
        return ProbeResult(
            id="wrong-id",
            category="env",
            status=ProbeStatus.GREEN,
            impact=DoctorImpact.OK,
            message="ok",
        )

    engine = DoctorEngine(_context(app_config, fake_runner))
    report = engine.run(
        [
            ProbeDefinition(id="env-boom", category="env", run=boom),
            ProbeDefinition(id="env-fine", category="env", run=fine),
        ]
    )

    boom_result, fine_result = report.results
    assert boom_result.status is ProbeStatus.RED
    assert "kaboom" in boom_result.message
    assert fine_result.id == "env-fine"
    assert fine_result.duration_ms is not None
    assert report.summary.exit_code == DoctorImpact.PROVIDER.value
    assert report.metadata is not None
    assert report.metadata["probe_count"] == 2


def test_aggregate_takes_worst_status_and_impact() -> None:
    """The summary reflects the worst result."""
    results = [
        ProbeResult("a", "env", ProbeStatus.GREEN, DoctorImpact.OK, "ok"),
        ProbeResult("b", "docker", ProbeStatus.YELLOW, DoctorImpact.OK, "meh"),
        ProbeResult("c", "tools", ProbeStatus.RED, DoctorImpact.ENVIRONMENT, "bad"),
    ]

    summary = aggregate_results(results)

    assert summary.status is ProbeStatus.RED
    assert summary.exit_code == 3
    assert summary.totals[ProbeStatus.YELLOW] == 1


def test_full_probe_set_covers_every_category(
    app_config: AppConfig, fake_runner: FakeRunner
) -> None:
    """The doctor command runs environment, docker, tool and config probes."""
    context = _context(app_config, fake_runner)

    categories = {probe.category for probe in collect_probes(context)}

    assert categories == {"env", "docker", "tools", "config"}


def test_env_file_permissions_probe(app_config: AppConfig, fake_runner: FakeRunner) -> None:
    """A world-readable configuration is flagged."""
    _healthy_docker(fake_runner)
    app_config.env_file.parent.mkdir(parents=True)
    app_config.env_file.write_text("DB_PASSWORD=x\n")
    os.chmod(app_config.env_file, 0o644)
    context = _context(app_config, fake_runner)

    report = DoctorEngine(context).run(collect_probes(context))
    payload = serialize_report(report)

    env_result = next(item for item in payload["results"] if item["id"] == "config-env-file")  # type: ignore[union-attr]
    assert env_result["status"] == "yellow"
    assert env_result["remediation"] == f"chmod 600 {app_config.env_file}"
    assert payload["summary"]["exit_code"] == 0  # type: ignore[index]


@pytest.mark.parametrize(("detected", "status"), [("20.10.0", "green"), ("bogus", "yellow")])
def test_docker_version_probe(
    app_config: AppConfig, fake_runner: FakeRunner, detected: str, status: str
) -> None:
    """The client version is compared with the configured minimum."""
    fake_runner.respond(["docker", "version"], stdout=f"{detected}\n")
    fake_runner.respond(["docker", "--version"], stdout="no version here\n")
    context = _context(app_config, fake_runner)

    report = DoctorEngine(context).run(
        [probe for probe in collect_probes(context) if probe.id == "docker-version"]
    )

    assert report.results[0].status.value == status
