"""Probe execution harness for the doctor command."""

from __future__ import annotations

import shutil
import time
import traceback
from collections.abc import Callable, Mapping, Sequence
from dataclasses import replace

from ..config import AppConfig
from ..providers.docker import DockerProvider
from .models import (
    DoctorImpact,
    DoctorReport,
    PrerequisiteReport,
    ProbeContext,
    ProbeDefinition,
    ProbeExecutorOptions,
    ProbeResult,
    ProbeStatus,
    build_report,
    prerequisite_report,
)
from .probes import prerequisite_probes


def _duration_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _coerce_result(
    probe: ProbeDefinition,
    result: ProbeResult,
    duration_ms: int,
) -> ProbeResult:
    coerced = result
    if result.id != probe.id:
        coerced = replace(coerced, id=probe.id)
    if result.category != probe.category:
        coerced = replace(coerced, category=probe.category)
    if result.duration_ms is None:
        coerced = replace(coerced, duration_ms=duration_ms)
    return coerced


def _unexpected_failure(
    probe: ProbeDefinition,
    exc: Exception,
    duration_ms: int,
) -> ProbeResult:
    message = f"Probe '{probe.id}' raised an unexpected error: {exc}"
    data = {
        "exception": repr(exc),
        "traceback": traceback.format_exc(),
        "item": probe.id,
    }
    return ProbeResult(
        id=probe.id,
        category=probe.category,
        status=ProbeStatus.RED,
        impact=DoctorImpact.PROVIDER,
        message=message,
        remediation=None,
        duration_ms=duration_ms,
        data=data,
        warnings=("unhandled-exception",),
    )


def _run_single_probe(
    probe: ProbeDefinition,
    context: ProbeContext,
) -> ProbeResult:
    start = time.perf_counter()
    try:
        result = probe.run(context)
    except Exception as exc:  # noqa: BLE001 - a crashing probe becomes a red result
        return _unexpected_failure(probe, exc, _duration_ms(start))
    duration_ms = _duration_ms(start)
    return _coerce_result(probe, result, duration_ms)


def run_probes(
    context: ProbeContext,
    probes: Sequence[ProbeDefinition],
) -> list[ProbeResult]:
    """Execute every probe in order; a failing probe never stops the others."""
    return [_run_single_probe(probe, context) for probe in probes]


def create_probe_context(
    config: AppConfig,
    docker: DockerProvider,
    options: ProbeExecutorOptions | None = None,
    *,
    which: Callable[[str], str | None] = shutil.which,
) -> ProbeContext:
    """Build a ProbeContext from the loaded configuration and docker provider."""
    effective_options = options or ProbeExecutorOptions(exec_timeout=config.docker.probe_timeout)
    return ProbeContext(
        config=config,
        docker=docker,
        which=which,
        options=effective_options,
    )


def assess(context: ProbeContext) -> PrerequisiteReport:
    """Check every setup prerequisite and report what is missing or degraded."""
    return prerequisite_report(run_probes(context, prerequisite_probes()))


class DoctorEngine:
    """Coordinator that executes probes and aggregates the overall report."""

    def __init__(self, context: ProbeContext) -> None:
        """Store the probe execution context."""
        self._context = context

    @property
    def options(self) -> ProbeExecutorOptions:
        """Return the execution options associated with this engine."""
        return self._context.options

    def run(
        self,
        probes: Sequence[ProbeDefinition],
        *,
        metadata: Mapping[str, object] | None = None,
    ) -> DoctorReport:
        """Run the supplied probes and build a doctor report."""
        start = time.perf_counter()
        results = run_probes(self._context, probes)
        total_ms = _duration_ms(start)
        run_metadata: dict[str, object] = {
            "duration_ms": total_ms,
            "probe_count": len(results),
            "requested_probes": len(probes),
        }
        if metadata:
            run_metadata.update(metadata)
        return build_report(results, metadata=run_metadata)
