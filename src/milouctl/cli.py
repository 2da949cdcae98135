"""Typer-powered command line for ``milouctl``.

Every command loads the layered configuration once, builds the shared
runtime objects and records its outcome in the structured operations log.
``setup`` is the main entry point: it detects the installation state,
selects a setup mode, checks prerequisites and, when started as root,
re-executes itself as the service account before touching anything.
"""
from __future__ import annotations

import json
import os
import re
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .backups import BackupError, SnapshotsRegistry
from .bootstrap.detection import DetectionReport, InstallationStateDetector
from .bootstrap.modes import select_mode
from .bootstrap.orchestrator import (
    PrerequisiteError,
    SetupOrchestrator,
    SetupRequest,
    SetupResult,
    flags_from_options,
)
from .bootstrap.privileges import (
    CredentialFormatError,
    PrivilegeSwitch,
    PrivilegeSwitchError,
    SwitchInvariantError,
    SwitchLoopError,
)
from .bootstrap.service_accounts import (
    ServiceAccountError,
    ServiceAccountManager,
    ServiceAccountSpec,
)
from .config import AppConfig, ConfigError, load_config
from .doctor import (
    PROBE_CATEGORY_VALUES,
    DoctorEngine,
    DoctorImpact,
    DoctorReport,
    ProbeResult,
    ProbeStatus,
    collect_probes,
    create_probe_context,
)
from .doctor.utils import serialize_report
from .envfile import EnvFileError, read_env_file, update_env_file
from .exit_codes import ExitCode
from .guard import (
    RestoreError,
    RollbackError,
    check_integrity,
    restore_snapshot,
    with_safe_mutation,
)
from .invocation import (
    InvocationError,
    PreservedInvocation,
    RuntimeOptions,
    consume_token_file,
)
from .logging import (
    OperationScope,
    StructuredLogger,
    configure_console_logging,
    mask_mapping,
)
from .providers.docker import DockerError, DockerProvider

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to milouctl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of tables.",
)

_PROBE_CATEGORY_SET = set(PROBE_CATEGORY_VALUES)
_ENV_KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_PROBE_STATUS_STYLE = {
    ProbeStatus.GREEN: "[green]PASS[/green]",
    ProbeStatus.YELLOW: "[yellow]WARN[/yellow]",
    ProbeStatus.RED: "[red]FAIL[/red]",
}
_SUMMARY_STATUS_STYLE = {
    ProbeStatus.GREEN: "[green]GREEN[/green]",
    ProbeStatus.YELLOW: "[yellow]WARN[/yellow]",
    ProbeStatus.RED: "[red]RED[/red]",
}
_DOCTOR_IMPACT_MESSAGES = {
    DoctorImpact.OK: "Doctor run completed successfully.",
    DoctorImpact.VALIDATION: "Doctor detected configuration validation errors.",
    DoctorImpact.ENVIRONMENT: "Doctor detected missing prerequisites.",
    DoctorImpact.PROVIDER: "Doctor detected provider/service failures.",
}

# Most specific first: subclasses must precede their bases.
_ERROR_EXIT_CODES: tuple[tuple[type[Exception], ExitCode], ...] = (
    (RollbackError, ExitCode.INTEGRITY),
    (RestoreError, ExitCode.INTEGRITY),
    (BackupError, ExitCode.INTEGRITY),
    (SwitchLoopError, ExitCode.INVARIANT),
    (SwitchInvariantError, ExitCode.INVARIANT),
    (CredentialFormatError, ExitCode.VALIDATION),
    (PrerequisiteError, ExitCode.ENVIRONMENT),
    (PrivilegeSwitchError, ExitCode.ENVIRONMENT),
    (ConfigError, ExitCode.VALIDATION),
    (EnvFileError, ExitCode.VALIDATION),
    (InvocationError, ExitCode.VALIDATION),
    (DockerError, ExitCode.PROVIDER),
    (ServiceAccountError, ExitCode.PROVIDER),
)
_HANDLED_ERRORS = tuple(kind for kind, _ in _ERROR_EXIT_CODES)


def _exit_code_for(exc: BaseException) -> int:
    for kind, code in _ERROR_EXIT_CODES:
        if isinstance(exc, kind):
            return int(code)
    return 1


app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Milou setup and configuration CLI.

        Detects the state of a Milou installation, picks the right setup
        strategy and runs it as the dedicated service account, guarding the
        persisted configuration against losing credentials along the way.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect and safely modify the persisted configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    options: RuntimeOptions
    invocation: PreservedInvocation
    logger: StructuredLogger
    docker: DockerProvider
    accounts: ServiceAccountManager
    backups: SnapshotsRegistry
    detector: InstallationStateDetector


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    *,
    verbose: bool = False,
    dry_run: bool = False,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    invocation = runtime if isinstance(runtime, PreservedInvocation) else PreservedInvocation.capture()

    configure_console_logging(verbose)
    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc

    options = RuntimeOptions.from_environment(verbose=verbose, dry_run=dry_run)
    account = config.service_account
    accounts = ServiceAccountManager(
        ServiceAccountSpec(
            name=account.user,
            group=account.group,
            home=account.home,
            shell=account.shell,
            supplementary_groups=(account.docker_group,),
        )
    )
    docker = DockerProvider(
        docker_bin=config.docker.docker_bin,
        timeout=config.docker.probe_timeout,
        sudo_bin=config.sudo_bin,
    )
    backups = SnapshotsRegistry(config.guard.backups_dir)
    detector = InstallationStateDetector(
        config=config,
        docker=docker,
        accounts=accounts,
        backups=backups,
        euid_provider=os.geteuid,
    )
    runtime = RuntimeContext(
        config=config,
        options=options,
        invocation=invocation,
        logger=StructuredLogger(config.logs_dir),
        docker=docker,
        accounts=accounts,
        backups=backups,
        detector=detector,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the milouctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Print debug diagnostics.",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Show what would change without changing anything.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, verbose=verbose, dry_run=dry_run)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"milouctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, verbose=verbose, dry_run=dry_run)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _dry_run_complete(
    op: OperationScope,
    summary: str,
    *,
    context: Mapping[str, object] | None = None,
) -> None:
    """Standardise dry-run completion messaging."""
    console.print(f"[yellow]Dry run[/yellow]: {summary}")
    op.success("Dry run complete.", changed=0, context=dict(context or {}))


def _failure(op: OperationScope, exc: Exception) -> NoReturn:
    """Report a domain exception with its mapped exit code."""
    message = str(exc)
    if isinstance(exc, PrerequisiteError):
        _command_error(op, message, rc=_exit_code_for(exc), errors=exc.report.missing)
    if isinstance(exc, RollbackError) and not exc.restored:
        message = f"{message} Manual recovery from {exc.snapshot} is required."
    _command_error(op, message, rc=_exit_code_for(exc))


# ---------------------------------------------------------------------------
# setup
# ---------------------------------------------------------------------------


def _render_setup_result(result: SetupResult) -> None:
    console.print(f"Installation state: [bold]{result.detection.state.value}[/bold]")
    mode_line = f"Setup mode: [bold]{result.mode.value}[/bold]"
    if result.executed_mode is not result.mode:
        mode_line += f" (running {result.executed_mode.value})"
    console.print(mode_line)
    for reason in result.detection.reasons:
        console.print(f"  - {reason}")
    for warning in result.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")
    if result.switch_plan is not None:
        console.print(f"Would re-run as service account: {result.switch_plan.display}")
        for repair in result.switch_plan.home.actions:
            console.print(f"  home: {repair}")
        console.print(f"  sync: {result.switch_plan.sync.action} -> {result.switch_plan.sync.target}")
    for action in result.actions:
        console.print(f"- {action}")
    if result.mutation is not None and result.mutation.snapshot_id:
        console.print(f"Configuration snapshot: {result.mutation.snapshot_id}")


@app.command()
def setup(
    ctx: typer.Context,
    fresh_install: bool = typer.Option(
        False,
        "--fresh-install",
        help="Treat the host as fresh regardless of what is detected.",
    ),
    non_interactive: bool = typer.Option(
        False,
        "--non-interactive",
        help="Never prompt; use detected values and generated credentials.",
    ),
    token: str | None = typer.Option(
        None,
        "--token",
        help="Registry bearer token (implies --non-interactive).",
    ),
    update_check: bool = typer.Option(
        False,
        "--update-check",
        help="On an installed host, pull newer images instead of resuming.",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        help="Continue even when prerequisites are missing.",
    ),
    skip_user_switch: bool = typer.Option(
        False,
        "--skip-user-switch",
        help="Run as the current user even when started as root.",
    ),
    domain: str | None = typer.Option(None, "--domain", help="Public domain name."),
    admin_email: str | None = typer.Option(None, "--admin-email", help="Administrator e-mail."),
) -> None:
    """Install, resume, reconfigure or repair Milou on this host."""
    runtime = _get_runtime(ctx)
    options = RuntimeOptions.from_environment(
        verbose=runtime.options.verbose,
        dry_run=runtime.options.dry_run,
        force=force,
        non_interactive=non_interactive,
        fresh_install=fresh_install,
        update_check=update_check,
        skip_user_switch=skip_user_switch,
        token=token,
    )
    with runtime.logger.operation(
        "setup",
        args=options.to_dict() | {"domain": domain, "admin_email": admin_email},
        target={"kind": "system", "scope": "setup"},
    ) as op:
        switch = PrivilegeSwitch(
            config=runtime.config,
            accounts=runtime.accounts,
            docker=runtime.docker,
            options=options,
            environ=os.environ,
            euid_provider=os.geteuid,
            exec_fn=os.execvpe,
            chdir=os.chdir,
        )
        orchestrator = SetupOrchestrator(
            config=runtime.config,
            options=options,
            detector=runtime.detector,
            docker=runtime.docker,
            backups=runtime.backups,
            switch=switch,
            probe_context=create_probe_context(runtime.config, runtime.docker),
        )
        invocation = runtime.invocation.without_option("--token")
        try:
            result = orchestrator.run(
                invocation,
                SetupRequest(domain=domain, admin_email=admin_email),
                op=op,
            )
        except _HANDLED_ERRORS as exc:
            _failure(op, exc)

        _render_setup_result(result)
        payload = result.to_dict()
        backups = [result.mutation.snapshot_id] if result.mutation and result.mutation.snapshot_id else None
        if result.dry_run:
            _dry_run_complete(op, f"setup would run in {result.executed_mode.value} mode.", context=payload)
            return
        changed = 1 if result.mutation is not None and result.mutation.changed else 0
        if result.warnings:
            console.print("[yellow]Setup completed with warnings.[/yellow]")
            op.warning(
                "Setup completed with warnings.",
                warnings=result.warnings,
                changed=changed,
                backups=backups,
                context=payload,
            )
            return
        console.print("[green]Setup completed.[/green]")
        op.success("Setup completed.", changed=changed, backups=backups, context=payload)


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------


def _render_detection(report: DetectionReport, mode: str) -> None:
    console.print(f"Installation state: [bold]{report.state.value}[/bold]")
    console.print(f"Setup would run in: [bold]{mode}[/bold] mode")
    console.print(
        f"Fresh indicators: {report.indicators.count}/{len(report.indicators.to_dict())} "
        f"(threshold {report.threshold})"
    )
    for reason in report.reasons:
        console.print(f"  - {reason}")
    for error in report.consistency_errors:
        console.print(f"[red]Inconsistent:[/red] {error}")
    if not report.containers:
        return
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Container", style="bold")
    table.add_column("State")
    table.add_column("Status")
    for container in report.containers:
        style = "green" if container.healthy else "red"
        table.add_row(container.name, f"[{style}]{container.state}[/{style}]", container.status)
    console.print(table)


@app.command()
def status(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show the detected installation state and the mode setup would use."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={"json": json_output},
        target={"kind": "system", "scope": "detection"},
    ) as op:
        report = runtime.detector.report(force_fresh=runtime.options.fresh_install)
        mode = select_mode(report.state, flags_from_options(runtime.options))
        payload = report.to_dict() | {"mode": mode.value}
        op.add_step("detect", detail=report.state.value)
        if json_output:
            console.print_json(data=payload)
        else:
            _render_detection(report, mode.value)
        op.success("Reported installation state.", changed=0, context=payload)


# ---------------------------------------------------------------------------
# doctor
# ---------------------------------------------------------------------------


def _parse_probe_categories(raw: str | None) -> set[str]:
    """Parse comma-separated probe categories into a normalised set."""
    if raw is None:
        return set()
    return {part.strip().lower() for part in raw.split(",") if part.strip()}


def _collect_status_identifiers(
    results: Sequence[ProbeResult],
    status: ProbeStatus,
) -> list[str]:
    """Return identifiers for results matching a particular status."""
    return [
        f"{result.category}:{result.id}"
        for result in results
        if result.status is status
    ]


def _render_doctor_report(report: DoctorReport) -> None:
    """Render a doctor report in a human-friendly format."""
    summary = report.summary
    totals = summary.totals
    totals_line = (
        f"green={totals.get(ProbeStatus.GREEN, 0)} "
        f"warn={totals.get(ProbeStatus.YELLOW, 0)} "
        f"red={totals.get(ProbeStatus.RED, 0)}"
    )
    console.print(
        f"Doctor summary: {_SUMMARY_STATUS_STYLE[summary.status]} "
        f"(impact={summary.impact.name.lower()}, exit={summary.exit_code})"
    )
    console.print(f"Totals: {totals_line}")
    if not report.results:
        console.print("No probes were executed.")
        return

    console.print()
    for result in report.results:
        console.print(
            f"{_PROBE_STATUS_STYLE[result.status]} [{result.category}] {result.id}: {result.message}"
        )
        if result.remediation:
            console.print(f"  remediation: {result.remediation}")
        if result.impact is not DoctorImpact.OK:
            console.print(f"  impact: {result.impact.name.lower()} (exit={result.impact.value})")


@app.command()
def doctor(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
    only: str | None = typer.Option(
        None,
        "--only",
        help="Comma-separated probe categories to run (env, docker, tools, config).",
    ),
    exclude: str | None = typer.Option(
        None,
        "--exclude",
        help="Comma-separated probe categories to skip.",
    ),
) -> None:
    """Check setup prerequisites and the persisted configuration."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "doctor",
        args={"json": json_output, "only": only, "exclude": exclude},
        target={"kind": "system", "scope": "health"},
    ) as op:
        include_categories = _parse_probe_categories(only)
        exclude_categories = _parse_probe_categories(exclude)
        invalid = (include_categories | exclude_categories) - _PROBE_CATEGORY_SET
        if invalid:
            _command_error(op, f"Unknown probe categories: {', '.join(sorted(invalid))}")
        if only is not None and exclude is not None:
            _command_error(op, "Cannot combine --only and --exclude.")

        context = create_probe_context(runtime.config, runtime.docker)
        probes = list(collect_probes(context))
        if include_categories:
            probes = [probe for probe in probes if probe.category in include_categories]
        if exclude_categories:
            probes = [probe for probe in probes if probe.category not in exclude_categories]

        report = DoctorEngine(context).run(
            probes,
            metadata={"options": asdict(context.options)},
        )
        report_payload = serialize_report(report)
        if json_output:
            console.print_json(data=report_payload)
        else:
            _render_doctor_report(report)

        summary = report.summary
        warning_ids = _collect_status_identifiers(report.results, ProbeStatus.YELLOW)
        error_ids = _collect_status_identifiers(report.results, ProbeStatus.RED)
        log_context = {"report": report_payload}
        if summary.exit_code == 0:
            if summary.status is ProbeStatus.YELLOW:
                if not json_output:
                    console.print("[yellow]Doctor completed with warnings.[/yellow]")
                op.warning(
                    "Doctor completed with warnings.",
                    warnings=warning_ids or None,
                    context=log_context,
                )
            else:
                op.success(_DOCTOR_IMPACT_MESSAGES[DoctorImpact.OK], context=log_context)
            return

        message = _DOCTOR_IMPACT_MESSAGES.get(summary.impact, "Doctor detected issues.")
        if not json_output:
            console.print(f"[red]{message}[/red]")
        op.error(
            message,
            rc=summary.exit_code,
            errors=error_ids or None,
            warnings=warning_ids or None,
            context=log_context,
        )
        raise typer.Exit(code=summary.exit_code)


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------


def _parse_assignments(op: OperationScope, assignments: Sequence[str]) -> dict[str, str]:
    updates: dict[str, str] = {}
    for item in assignments:
        key, sep, value = item.partition("=")
        key = key.strip()
        if not sep or not _ENV_KEY_PATTERN.match(key):
            _command_error(
                op,
                f"Invalid assignment '{item}'; expected KEY=VALUE.",
                rc=int(ExitCode.VALIDATION),
            )
        updates[key] = value
    return updates


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
    env: bool = typer.Option(
        False,
        "--env",
        help="Show the persisted application configuration with secrets masked.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config show",
        args={"json": json_output, "env": env},
        target={"kind": "config"},
    ) as op:
        if env:
            try:
                data: dict[str, object] = mask_mapping(read_env_file(runtime.config.env_file))
            except EnvFileError as exc:
                _failure(op, exc)
        else:
            data = runtime.config.to_dict()

        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)
        console.print(table)
        op.success("Rendered configuration table.", changed=0)


@config_app.command("set")
def config_set(
    ctx: typer.Context,
    assignments: list[str] = typer.Argument(..., help="One or more KEY=VALUE pairs."),
) -> None:
    """Update keys in the persisted configuration under snapshot protection."""
    runtime = _get_runtime(ctx)
    env_file = runtime.config.env_file
    with runtime.logger.operation(
        "config set",
        args={"keys": [item.partition("=")[0] for item in assignments]},
        target={"kind": "config", "path": str(env_file)},
    ) as op:
        updates = _parse_assignments(op, assignments)
        if runtime.options.dry_run:
            _dry_run_complete(
                op,
                f"would update {', '.join(sorted(updates))} in {env_file}.",
                context={"keys": sorted(updates)},
            )
            return
        try:
            outcome = with_safe_mutation(
                env_file,
                lambda: update_env_file(env_file, updates),
                runtime.config.guard.critical_keys,
                backups=runtime.backups,
                reason="config set",
            )
        except _HANDLED_ERRORS as exc:
            _failure(op, exc)
        op.add_step("config.write", detail=", ".join(sorted(updates)))
        console.print(f"Updated {len(updates)} key(s) in {env_file}.")
        if outcome.snapshot_id:
            console.print(f"Snapshot: {outcome.snapshot_id}")
        op.success(
            "Configuration updated.",
            changed=1 if outcome.changed else 0,
            backups=[outcome.snapshot_id] if outcome.snapshot_id else None,
            context=outcome.to_dict(),
        )


@config_app.command("check")
def config_check(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Compare the configuration with the keys recorded in its latest snapshot."""
    runtime = _get_runtime(ctx)
    env_file = runtime.config.env_file
    with runtime.logger.operation(
        "config check",
        args={"json": json_output},
        target={"kind": "config", "path": str(env_file)},
    ) as op:
        try:
            report = check_integrity(
                env_file,
                runtime.config.guard.critical_keys,
                backups=runtime.backups,
            )
        except _HANDLED_ERRORS as exc:
            _failure(op, exc)
        payload = report.to_dict()
        if json_output:
            console.print_json(data=payload)
        elif report.snapshot_id is None:
            console.print("No snapshot recorded yet; nothing to compare.")
        elif report.ok:
            console.print(f"[green]Configuration intact[/green] (snapshot {report.snapshot_id}).")
        if report.ok:
            op.success("Configuration integrity verified.", changed=0, context=payload)
            return
        _command_error(
            op,
            f"Critical keys missing since snapshot {report.snapshot_id}: {', '.join(report.missing)}",
            rc=int(ExitCode.INTEGRITY),
            errors=list(report.missing),
        )


@config_app.command("snapshots")
def config_snapshots(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List configuration snapshots, oldest first."""
    runtime = _get_runtime(ctx)
    env_file = runtime.config.env_file
    with runtime.logger.operation(
        "config snapshots",
        args={"json": json_output},
        target={"kind": "config", "path": str(env_file)},
    ) as op:
        try:
            entries = runtime.backups.entries_for_source(env_file)
        except _HANDLED_ERRORS as exc:
            _failure(op, exc)
        if json_output:
            console.print_json(data=entries)
        elif not entries:
            console.print("No snapshots recorded.")
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Id", style="bold")
            table.add_column("Created")
            table.add_column("Status")
            table.add_column("Keys", justify="right")
            table.add_column("Reason")
            for entry in entries:
                keys = entry.get("keys_present")
                table.add_row(
                    str(entry.get("id")),
                    str(entry.get("created_at", "")),
                    str(entry.get("status", "")),
                    str(len(keys)) if isinstance(keys, list) else "-",
                    str(entry.get("reason") or ""),
                )
            console.print(table)
        op.success(f"Listed {len(entries)} snapshot(s).", changed=0)


@config_app.command("restore")
def config_restore(
    ctx: typer.Context,
    snapshot_id: str | None = typer.Argument(
        None,
        help="Snapshot to restore (defaults to the most recent one).",
    ),
) -> None:
    """Restore the configuration from a snapshot."""
    runtime = _get_runtime(ctx)
    env_file = runtime.config.env_file
    with runtime.logger.operation(
        "config restore",
        args={"snapshot_id": snapshot_id},
        target={"kind": "config", "path": str(env_file)},
    ) as op:
        try:
            if snapshot_id is None:
                entry = runtime.backups.latest_for(env_file)
            else:
                entry = runtime.backups.find_by_id(snapshot_id)
        except _HANDLED_ERRORS as exc:
            _failure(op, exc)
        if entry is None:
            label = f"Snapshot '{snapshot_id}'" if snapshot_id else "A snapshot"
            _command_error(op, f"{label} for {env_file} was not found.", rc=int(ExitCode.VALIDATION))
        if Path(str(entry.get("source", ""))) != env_file:
            _command_error(
                op,
                f"Snapshot {entry.get('id')} belongs to {entry.get('source')}, not {env_file}.",
                rc=int(ExitCode.VALIDATION),
            )
        if runtime.options.dry_run:
            _dry_run_complete(op, f"would restore {env_file} from snapshot {entry.get('id')}.")
            return
        try:
            outcome = with_safe_mutation(
                env_file,
                lambda: restore_snapshot(env_file, entry, backups=runtime.backups),
                runtime.config.guard.critical_keys,
                backups=runtime.backups,
                reason=f"restore {entry.get('id')}",
            )
        except _HANDLED_ERRORS as exc:
            _failure(op, exc)
        op.add_step("config.restore", detail=str(entry.get("id")))
        console.print(f"Restored {env_file} from snapshot {entry.get('id')}.")
        op.success(
            "Configuration restored.",
            changed=1 if outcome.changed else 0,
            backups=[outcome.snapshot_id] if outcome.snapshot_id else None,
            context=outcome.to_dict(),
        )


def main(argv: Sequence[str] | None = None) -> None:
    """Console script entry point.

    A process started by the privilege switch replays the arguments handed
    over in the environment instead of its own, and picks up the token file.
    """
    try:
        invocation = PreservedInvocation.resume()
    except InvocationError as exc:
        console.print(f"[red]{exc}[/red]")
        raise SystemExit(int(ExitCode.VALIDATION)) from exc
    if invocation is not None:
        consume_token_file()
    else:
        invocation = PreservedInvocation.capture(argv)
    app(args=list(invocation.arguments), prog_name=invocation.command, obj=invocation)
