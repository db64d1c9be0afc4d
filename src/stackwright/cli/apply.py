"""
CLI command for applying a plan.

Exit codes: 0 applied, 20 partial, 21 failed, 5 cancelled, 3 lock busy,
4 stale plan or state.
"""

from __future__ import annotations

import asyncio
import signal
from contextlib import suppress
from typing import Optional

from stackwright.cli.common import build_orchestrator, print_json, run_async
from stackwright.cli.plan import action_symbol, load_plan
from stackwright.cli.ux import action_line, console, header, success, warning
from stackwright.core.errors import main_with_error_handling
from stackwright.execution.cancellation import CancellationToken
from stackwright.execution.report import ApplyReport, ApplyStatus
from stackwright.logging import bind_run, clear_run
from stackwright.orchestrator import Orchestrator
from stackwright.planning.models import ActionKind, Plan


def print_report(report: ApplyReport) -> None:
    header(f"Apply: {report.key} ({report.status.value})")
    for action in report.applied:
        action_line(action.kind.value, action_symbol(action), action.address, marker="[success]✓[/success]")
    if report.failed is not None:
        failed = report.failed
        action_line(failed.kind.value, action_symbol(failed), failed.address, "(failed)", marker="[error]✗[/error]")
    for action in report.not_attempted:
        if action.kind is not ActionKind.NOOP:
            action_line(action.kind.value, action_symbol(action), action.address, "(not attempted)", marker="·")
    console.print()

    if report.status is ApplyStatus.SUCCEEDED:
        success(f"Applied {len(report.applied)} changes (state serial {report.serial})")
    elif report.status is ApplyStatus.CANCELLED:
        warning("Apply cancelled between actions; run plan again to continue")
    else:
        warning("Apply stopped; recorded state reflects the completed actions. Run plan again to resume")


async def _apply(
    orchestrator: Orchestrator,
    key: str,
    profile: str,
    plan: Plan | None,
    holder: str | None,
    lock_timeout: float | None,
    lease_seconds: float | None,
) -> ApplyReport:
    cancel = CancellationToken()
    loop = asyncio.get_running_loop()
    handled = False
    try:
        loop.add_signal_handler(signal.SIGINT, cancel.cancel, "interrupted")
        handled = True
    except (NotImplementedError, RuntimeError):
        pass  # no signal handlers off the main thread or on Windows

    try:
        return await orchestrator.apply(
            key,
            profile,
            plan=plan,
            holder=holder,
            cancel=cancel,
            lock_timeout=lock_timeout,
            lease_seconds=lease_seconds,
        )
    finally:
        if handled:
            with suppress(NotImplementedError, RuntimeError):
                loop.remove_signal_handler(signal.SIGINT)


@main_with_error_handling()
def apply_command(
    key: str,
    profile: str,
    declarations_file: Optional[str] = None,
    plan_file: Optional[str] = None,
    holder: Optional[str] = None,
    lock_timeout: Optional[float] = None,
    lease_seconds: Optional[float] = None,
    output_format: str = "text",
    config_path: Optional[str] = None,
) -> int:
    """
    Apply a saved plan, or plan and apply in one locked run.

    Returns:
        Exit code; non-success statuses are raised and mapped by the
        error handler
    """
    orchestrator = build_orchestrator(declarations_file, config_path)
    plan = load_plan(plan_file) if plan_file else None
    if plan is not None and plan.profile != profile:
        warning(f"Plan file was computed for profile '{plan.profile}', applying it as computed")

    holder = holder or orchestrator.settings.holder_identity()
    bind_run(state_key=key, holder=holder, profile=profile)
    try:
        report = run_async(
            _apply(orchestrator, key, profile, plan, holder, lock_timeout, lease_seconds)
        )
    finally:
        clear_run()

    if output_format == "json":
        print_json(report.to_dict())
    else:
        print_report(report)

    report.raise_for_status()
    return 0
