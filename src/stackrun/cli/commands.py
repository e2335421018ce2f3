"""
CLI commands for applying, previewing and destroying a stack.
"""

from __future__ import annotations

import asyncio
import json
import signal
from pathlib import Path
from typing import Awaitable, Callable

from pydantic import ValidationError as SettingsValidationError
from rich.markup import escape

from stackrun.cli.ux import (
    ACTION_STYLES,
    STATUS_STYLES,
    confirm,
    console,
    header,
    info,
    print_table,
    styled,
    warning,
)
from stackrun.config.settings import Settings, get_settings
from stackrun.core.errors import ConfigurationError, ExitCode, main_with_error_handling
from stackrun.engine.context import RunContext
from stackrun.engine.preview import preview_graph
from stackrun.engine.results import PreviewReport, RunReport
from stackrun.engine.scheduler import Scheduler
from stackrun.engine.secrets import format_value
from stackrun.logging import configure_logging
from stackrun.stack.loader import load_stack
from stackrun.state.store import LocalStateStore


def _prepare(verbose: bool) -> Settings:
    try:
        settings = get_settings()
    except SettingsValidationError as exc:
        raise ConfigurationError(f"Invalid STACKRUN_* settings: {exc}") from exc
    configure_logging("INFO" if verbose else settings.log_level, settings.log_format)
    return settings


def _build_context(
    settings: Settings,
    *,
    state_path: str | None = None,
    secure_state: bool = False,
    parallel: int | None = None,
    refresh: bool = False,
    timeout: float | None = None,
) -> RunContext:
    state = LocalStateStore.from_settings(
        settings,
        path=Path(state_path) if state_path else None,
        secure=secure_state,
    )
    return RunContext.from_settings(
        settings,
        state=state,
        max_parallel=parallel,
        refresh=refresh or None,
        run_timeout=timeout,
    )


async def _run_with_signals(scheduler: Scheduler, run: Callable[[], Awaitable[RunReport]]) -> RunReport:
    """Run with SIGINT/SIGTERM mapped to a graceful scheduler cancel."""
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, scheduler.cancel)
        except (NotImplementedError, RuntimeError):
            # Platform without loop signal support; Ctrl-C raises KeyboardInterrupt instead
            continue
        installed.append(sig)
    try:
        return await run()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


# === Report rendering ===


def print_run_summary(report: RunReport, verbose: bool = False) -> None:
    """Print the per-resource outcome of an up or destroy run."""
    console.print()
    rows = []
    for resource_id, result in sorted(report.nodes.items()):
        status = styled(str(result.status), STATUS_STYLES)
        if result.cancelled:
            status = f"{status} [muted](cancelled)[/muted]"
        rows.append(
            [
                escape(resource_id),
                styled(str(result.action), ACTION_STYLES) if result.action else "-",
                status,
                escape(result.error or ""),
            ]
        )
    if rows:
        print_table(f"stackrun {report.operation}", ["Resource", "Action", "Status", "Detail"], rows)
    else:
        info("No resources")

    if verbose:
        for resource_id, result in sorted(report.nodes.items()):
            if not result.outputs:
                continue
            console.print(f"[bold]{escape(resource_id)}[/bold]")
            for key, value in sorted(result.outputs.items()):
                console.print(f"  [muted]└[/muted] {escape(str(key))} = {escape(format_value(value))}")

    for message in report.errors:
        warning(escape(message))

    console.print()
    counts = (
        f"{len(report.applied)} applied, {len(report.deleted)} deleted, "
        f"{len(report.failed)} failed, {len(report.blocked)} blocked"
    )
    if report.skipped:
        counts += f", {len(report.skipped)} not started"
    duration = f" in {report.duration_seconds:.1f}s"
    if report.success:
        console.print(f"[bold green]{report.operation} succeeded{duration}[/bold green] ({counts})")
    elif report.cancelled:
        console.print(f"[bold yellow]{report.operation} cancelled{duration}[/bold yellow] ({counts})")
    else:
        console.print(f"[bold yellow]{report.operation} finished with failures{duration}[/bold yellow] ({counts})")
    console.print()


def print_preview_summary(report: PreviewReport) -> None:
    """Print the planned action for every resource."""
    header("Preview")
    if not report.steps:
        info("No resources")
        return
    rows = []
    for step in report.steps:
        fields = ", ".join(step.replace_fields or step.changed_fields)
        rows.append(
            [
                escape(step.resource_id),
                styled(str(step.action), ACTION_STYLES) if step.action else "[error]error[/error]",
                escape(step.error or fields),
            ]
        )
    print_table("Planned actions", ["Resource", "Action", "Fields / Error"], rows)
    counts = ", ".join(f"{count} {action}" for action, count in sorted(report.counts().items()))
    console.print(f"\n[bold]{counts}[/bold]\n")


def _emit(report: RunReport | PreviewReport, output_format: str, verbose: bool = False) -> None:
    if output_format == "json":
        print(json.dumps(report.to_dict(), indent=2, default=str))
    elif isinstance(report, PreviewReport):
        print_preview_summary(report)
    else:
        print_run_summary(report, verbose=verbose)


# === Commands ===


@main_with_error_handling()
def up_command(
    stack_file: str,
    state_path: str | None = None,
    secure_state: bool = False,
    parallel: int | None = None,
    refresh: bool = False,
    timeout: float | None = None,
    output_format: str = "text",
    verbose: bool = False,
) -> int:
    """
    Apply a stack: create, update or replace every declared resource.

    Returns:
        Exit code (0 if every resource applied, 1 on any failure,
        2 for an invalid stack)
    """
    settings = _prepare(verbose)
    graph = load_stack(stack_file)
    context = _build_context(
        settings,
        state_path=state_path,
        secure_state=secure_state,
        parallel=parallel,
        refresh=refresh,
        timeout=timeout,
    )
    scheduler = Scheduler(context)
    report = asyncio.run(_run_with_signals(scheduler, lambda: scheduler.apply(graph)))
    _emit(report, output_format, verbose)
    return report.exit_code


@main_with_error_handling()
def preview_command(
    stack_file: str,
    state_path: str | None = None,
    secure_state: bool = False,
    output_format: str = "text",
    verbose: bool = False,
) -> int:
    """Show the action each resource would take; no provider is called."""
    settings = _prepare(verbose)
    graph = load_stack(stack_file)
    context = _build_context(settings, state_path=state_path, secure_state=secure_state)
    report = preview_graph(graph, context)
    _emit(report, output_format)
    return report.exit_code


@main_with_error_handling()
def destroy_command(
    state_path: str | None = None,
    secure_state: bool = False,
    parallel: int | None = None,
    timeout: float | None = None,
    yes: bool = False,
    output_format: str = "text",
    verbose: bool = False,
) -> int:
    """Delete every recorded resource, dependents first."""
    settings = _prepare(verbose)
    context = _build_context(
        settings,
        state_path=state_path,
        secure_state=secure_state,
        parallel=parallel,
        timeout=timeout,
    )
    recorded = context.state.load()
    if not recorded:
        info("No recorded resources; nothing to destroy")
        return ExitCode.SUCCESS

    if not yes and not confirm(f"Destroy {len(recorded)} recorded resources?"):
        warning("Destroy aborted (pass --yes to skip confirmation)")
        return ExitCode.FAILED

    scheduler = Scheduler(context)
    report = asyncio.run(_run_with_signals(scheduler, scheduler.destroy))
    _emit(report, output_format, verbose)
    return report.exit_code
