"""
Read-only CLI commands: validate, graph, output and state inspection.
"""

from __future__ import annotations

from typing import Optional

from stackwright.cli.common import build_orchestrator, mask, print_json, run_async
from stackwright.cli.ux import console, error, header, print_table, success
from stackwright.core.errors import ExitCode, main_with_error_handling
from stackwright.declarations.references import InstanceAddress


@main_with_error_handling()
def validate_command(
    profile: str,
    declarations_file: Optional[str] = None,
    config_path: Optional[str] = None,
) -> int:
    """Load, resolve, expand and build the graph without touching state."""
    orchestrator = build_orchestrator(declarations_file, config_path)
    expansion = orchestrator.load(profile)
    graph = orchestrator.graph(expansion)
    success(
        f"{orchestrator.declarations_file}: {len(expansion.module_order)} modules, "
        f"{len(graph)} resource instances, {len(graph.edges)} dependencies (profile {profile})"
    )
    return 0


@main_with_error_handling()
def graph_command(
    profile: str,
    declarations_file: Optional[str] = None,
    output_format: str = "text",
    config_path: Optional[str] = None,
) -> int:
    """Print the execution order and dependency edges."""
    orchestrator = build_orchestrator(declarations_file, config_path)
    expansion = orchestrator.load(profile)
    graph = orchestrator.graph(expansion)

    if output_format == "json":
        print_json(
            {
                "modules": expansion.module_order,
                "order": [str(a) for a in graph.order],
                "edges": [
                    {"from": str(e.source), "to": str(e.target), "reason": e.reason} for e in graph.edges
                ],
            }
        )
        return 0

    header(f"Execution order ({profile})")
    rows = []
    for position, address in enumerate(graph.order, start=1):
        depends = ", ".join(str(d) for d in graph.dependencies_of(address)) or "-"
        rows.append([str(position), str(address), graph.instances[address].kind, depends])
    print_table("Resources", ["#", "Address", "Kind", "Depends on"], rows)
    return 0


@main_with_error_handling()
def output_command(
    key: str,
    profile: str,
    declarations_file: Optional[str] = None,
    output_format: str = "text",
    config_path: Optional[str] = None,
) -> int:
    """Print module outputs resolved against recorded state."""
    orchestrator = build_orchestrator(declarations_file, config_path)
    outputs = run_async(orchestrator.outputs(key, profile))

    if output_format == "json":
        print_json(outputs)
        return 0

    for module, values in outputs.items():
        if not values:
            continue
        console.print(f"[bold]{module}[/bold]")
        for name, value in values.items():
            console.print(f"  {name} = {mask(value, value == '(sensitive)')}")
    return 0


@main_with_error_handling()
def state_list_command(
    key: str,
    config_path: Optional[str] = None,
) -> int:
    orchestrator = build_orchestrator(config_path=config_path)
    resources = run_async(orchestrator.state_resources(key))
    for address, state in resources.items():
        console.print(f"{address}  [muted]{state.kind}[/muted]")
    for state in run_async(orchestrator.deposed_resources(key)):
        console.print(f"{state.address}  [muted]{state.kind}, deposed[/muted]")
    return 0


@main_with_error_handling()
def state_show_command(
    key: str,
    address: str,
    output_format: str = "text",
    config_path: Optional[str] = None,
) -> int:
    orchestrator = build_orchestrator(config_path=config_path)
    try:
        target = InstanceAddress.parse(address)
    except ValueError as e:
        error(str(e))
        return int(ExitCode.BLOCKED)

    resources = run_async(orchestrator.state_resources(key))
    state = resources.get(target)
    if state is None:
        error(f"{address} is not recorded in state '{key}'")
        return 1

    if output_format == "json":
        print_json({"address": str(target), **state.to_dict()})
        return 0

    header(f"{target} ({state.kind})")
    for name, value in sorted(state.attributes.items()):
        console.print(f"  {name} = {mask(value, False)}")
    if state.observed:
        console.print("[bold]observed[/bold]")
        for name, value in sorted(state.observed.items()):
            console.print(f"  {name} = {mask(value, False)}")
    if state.dependencies:
        console.print(f"[muted]depends on: {', '.join(str(d) for d in state.dependencies)}[/muted]")
    return 0
