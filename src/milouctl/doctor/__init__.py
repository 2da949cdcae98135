"""Doctor command infrastructure."""

from __future__ import annotations

from .engine import DoctorEngine, assess, create_probe_context, run_probes
from .models import (
    PROBE_CATEGORY_VALUES,
    DoctorImpact,
    DoctorReport,
    DoctorSummary,
    PrerequisiteReport,
    PrerequisiteStatus,
    ProbeCategory,
    ProbeContext,
    ProbeDefinition,
    ProbeExecutorOptions,
    ProbeResult,
    ProbeStatus,
    aggregate_results,
    build_report,
    prerequisite_report,
)
from .probes import collect_probes, prerequisite_probes

__all__ = [
    "DoctorEngine",
    "DoctorImpact",
    "DoctorReport",
    "DoctorSummary",
    "PrerequisiteReport",
    "PrerequisiteStatus",
    "ProbeCategory",
    "PROBE_CATEGORY_VALUES",
    "ProbeContext",
    "ProbeDefinition",
    "ProbeExecutorOptions",
    "ProbeResult",
    "ProbeStatus",
    "aggregate_results",
    "assess",
    "build_report",
    "create_probe_context",
    "collect_probes",
    "prerequisite_probes",
    "prerequisite_report",
    "run_probes",
]
