"""Data models and helpers for doctor probes."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from ..config import AppConfig
    from ..providers.docker import DockerProvider


class ProbeStatus(str, Enum):
    """High-level outcome for a doctor probe."""

    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the status represents a failure."""
        return self is ProbeStatus.RED

    @property
    def is_warning(self) -> bool:
        """Return ``True`` when the status represents a warning."""
        return self is ProbeStatus.YELLOW


class DoctorImpact(Enum):
    """Impact tier used to derive the doctor exit code."""

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4


ProbeCategory = Literal["env", "docker", "tools", "config"]

# Ordered tuple of all recognised probe categories. Keep this in sync with ``ProbeCategory``.
PROBE_CATEGORY_VALUES: tuple[ProbeCategory, ...] = ("env", "docker", "tools", "config")


@dataclass(slots=True, frozen=True)
class ProbeExecutorOptions:
    """Runtime tunables for executing doctor probes."""

    exec_timeout: float = 5.0


@dataclass(slots=True, frozen=True)
class ProbeContext:
    """Execution context provided to doctor probes."""

    config: AppConfig
    docker: DockerProvider
    which: Callable[[str], str | None]
    options: ProbeExecutorOptions


@dataclass(slots=True, frozen=True)
class ProbeResult:
    """Outcome of running a probe."""

    id: str
    category: ProbeCategory
    status: ProbeStatus
    impact: DoctorImpact
    message: str
    remediation: str | None = None
    duration_ms: int | None = None
    data: Mapping[str, Any] | None = None
    warnings: Sequence[str] = field(default_factory=tuple)

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the probe result represents a failure."""
        return self.status.is_failure

    @property
    def is_warning(self) -> bool:
        """Return ``True`` when the probe result represents a warning."""
        return self.status.is_warning


@dataclass(slots=True, frozen=True)
class ProbeDefinition:
    """Metadata + callable for a probe."""

    id: str
    category: ProbeCategory
    run: Callable[[ProbeContext], ProbeResult]


@dataclass(slots=True, frozen=True)
class DoctorSummary:
    """Aggregated summary derived from probe results."""

    status: ProbeStatus
    impact: DoctorImpact
    exit_code: int
    totals: Mapping[ProbeStatus, int]


@dataclass(slots=True, frozen=True)
class DoctorReport:
    """Complete report for a doctor run."""

    results: Sequence[ProbeResult]
    summary: DoctorSummary
    metadata: Mapping[str, Any] | None = None


class PrerequisiteStatus(str, Enum):
    """Readiness verdict consumed by the setup flow."""

    GOOD = "good"
    MISSING = "missing"
    WARNINGS = "warnings"


@dataclass(slots=True, frozen=True)
class PrerequisiteReport:
    """Missing items block setup; warnings do not."""

    status: PrerequisiteStatus
    missing: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    results: tuple[ProbeResult, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "status": self.status.value,
            "missing": list(self.missing),
            "warnings": list(self.warnings),
        }


STATUS_ORDER: Mapping[ProbeStatus, int] = {
    ProbeStatus.GREEN: 0,
    ProbeStatus.YELLOW: 1,
    ProbeStatus.RED: 2,
}


def aggregate_results(results: Iterable[ProbeResult]) -> DoctorSummary:
    """Compute overall status + exit code from the worst status and impact."""
    totals: dict[ProbeStatus, int] = {
        ProbeStatus.GREEN: 0,
        ProbeStatus.YELLOW: 0,
        ProbeStatus.RED: 0,
    }
    worst_impact = DoctorImpact.OK
    worst_status = ProbeStatus.GREEN
    for result in results:
        totals[result.status] += 1
        if result.impact.value > worst_impact.value:
            worst_impact = result.impact
        if STATUS_ORDER[result.status] > STATUS_ORDER[worst_status]:
            worst_status = result.status

    return DoctorSummary(
        status=worst_status,
        impact=worst_impact,
        exit_code=worst_impact.value,
        totals=totals,
    )


def build_report(
    results: Sequence[ProbeResult],
    metadata: Mapping[str, Any] | None = None,
) -> DoctorReport:
    """Create a full DoctorReport from probe results."""
    summary = aggregate_results(results)
    return DoctorReport(results=tuple(results), summary=summary, metadata=metadata)


def prerequisite_report(results: Sequence[ProbeResult]) -> PrerequisiteReport:
    """Fold probe results into the missing/warnings split used by setup."""
    missing: list[str] = []
    warnings: list[str] = []
    for result in results:
        if result.is_failure:
            missing.append(result.data.get("item", result.id) if result.data else result.id)
        elif result.is_warning:
            warnings.append(result.message)
    if missing:
        status = PrerequisiteStatus.MISSING
    elif warnings:
        status = PrerequisiteStatus.WARNINGS
    else:
        status = PrerequisiteStatus.GOOD
    return PrerequisiteReport(
        status=status,
        missing=tuple(missing),
        warnings=tuple(warnings),
        results=tuple(results),
    )
