"""
CLI command for computing a plan.
"""

import json
from pathlib import Path
from typing import Optional

from stackwright.cli.common import build_orchestrator, mask, print_json, run_async
from stackwright.cli.ux import action_line, console, detail_line, header, info, success
from stackwright.core.errors import LoadError, main_with_error_handling
from stackwright.planning.models import ActionKind, Plan, PlanAction

SYMBOLS = {
    ActionKind.CREATE: "+",
    ActionKind.UPDATE: "~",
    ActionKind.DELETE: "-",
    ActionKind.NOOP: " ",
}


def action_symbol(action: PlanAction) -> str:
    if action.kind is ActionKind.REPLACE:
        return "+/-" if action.create_before_destroy else "-/+"
    return SYMBOLS[action.kind]


def summary_line(plan: Plan) -> str:
    counts = plan.summary()
    return (
        f"{counts['create']} to create, {counts['update']} to update, "
        f"{counts['replace']} to replace, {counts['delete']} to delete, "
        f"{counts['noop']} unchanged"
    )


def print_plan(plan: Plan) -> None:
    """Print a human-readable plan."""
    header(f"Plan: {plan.key} (profile {plan.profile}, serial {plan.serial})")
    console.print()

    if not plan.has_changes:
        success(f"No changes. {len(plan.actions)} resources up to date.")
        return

    for action in plan.changes:
        kind = "delete deposed" if action.deposed else action.kind.value
        note = f"({action.resource_kind}, {kind})"
        action_line(action.kind.value, action_symbol(action), action.address, note)
        for change in action.changes:
            before = mask(change.before, change.sensitive) if change.before is not None else "(none)"
            after = mask(change.after, change.sensitive) if change.after is not None else "(none)"
            if action.kind is ActionKind.CREATE:
                detail_line(f"{change.name} = {after}")
            elif action.kind is ActionKind.DELETE:
                detail_line(f"{change.name} = {before}", muted=True)
            else:
                detail_line(f"{change.name}: {before} -> {after}")
        console.print()

    console.print(f"[bold]Plan:[/bold] {summary_line(plan)}")


def save_plan(plan: Plan, path: str) -> None:
    Path(path).write_text(json.dumps(plan.to_dict(), indent=2, sort_keys=True, default=str) + "\n")


def load_plan(path: str) -> Plan:
    """
    Read a saved plan file.

    Raises:
        LoadError: If the file is missing or not a plan
    """
    plan_path = Path(path)
    if not plan_path.exists():
        raise LoadError(f"Plan file not found: {plan_path}")
    try:
        return Plan.from_dict(json.loads(plan_path.read_text()))
    except (ValueError, KeyError, TypeError) as e:
        raise LoadError(f"Invalid plan file {plan_path}: {e}") from e


@main_with_error_handling()
def plan_command(
    key: str,
    profile: str,
    declarations_file: Optional[str] = None,
    output_format: str = "text",
    out: Optional[str] = None,
    config_path: Optional[str] = None,
) -> int:
    """
    Compute and print the plan for a state key and profile.

    Returns:
        Exit code (0 when a plan was computed)
    """
    orchestrator = build_orchestrator(declarations_file, config_path)
    plan = run_async(orchestrator.plan(key, profile))

    if output_format == "json":
        print_json(plan.to_dict())
    else:
        print_plan(plan)

    if out:
        save_plan(plan, out)
        if output_format != "json":
            info(f"Plan saved to {out}; apply it with: stackwright apply {key} {profile} --plan {out}")
    return 0
