"""
stackwright command line.

Usage:
    stackwright <command> [args]
"""

from __future__ import annotations

import argparse
import sys
from typing import Sequence

from stackwright import __version__
from stackwright.logging import configure_logging


def _add_file(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-f", "--file", dest="declarations_file", help="Declaration file (default: stack.yaml)"
    )


def _add_output(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--output", choices=["text", "json"], default="text", help="Output format")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="stackwright", description="Declarative stack orchestration")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--log-level", default=None, help="Log level (default from settings)")
    parser.add_argument("--config", dest="config_path", help="Path to config YAML")
    subparsers = parser.add_subparsers(dest="command")

    plan_parser = subparsers.add_parser("plan", help="Compute the changes needed to reach the declarations")
    plan_parser.add_argument("key", help="State key")
    plan_parser.add_argument("profile", help="Profile name")
    _add_file(plan_parser)
    _add_output(plan_parser)
    plan_parser.add_argument("--out", help="Save the plan to this file")

    apply_parser = subparsers.add_parser("apply", help="Apply a plan under the state lock")
    apply_parser.add_argument("key", help="State key")
    apply_parser.add_argument("profile", help="Profile name")
    _add_file(apply_parser)
    apply_parser.add_argument("--plan", dest="plan_file", help="Saved plan file to apply")
    apply_parser.add_argument("--holder", help="Lock holder identity (default: user@host)")
    apply_parser.add_argument("--lock-timeout", type=float, help="Seconds to wait for a busy lock")
    apply_parser.add_argument("--lease", dest="lease_seconds", type=float, help="Lock lease in seconds")
    _add_output(apply_parser)

    unlock_parser = subparsers.add_parser("unlock", help="Force-release a state lock")
    unlock_parser.add_argument("key", help="State key")
    unlock_parser.add_argument("holder", help="Holder the lock is expected to belong to")
    unlock_parser.add_argument("--confirm", help="State key, to confirm without prompting")

    validate_parser = subparsers.add_parser("validate", help="Validate declarations for a profile")
    validate_parser.add_argument("profile", help="Profile name")
    _add_file(validate_parser)

    graph_parser = subparsers.add_parser("graph", help="Show execution order and dependencies")
    graph_parser.add_argument("profile", help="Profile name")
    _add_file(graph_parser)
    _add_output(graph_parser)

    output_parser = subparsers.add_parser("output", help="Show module outputs resolved against state")
    output_parser.add_argument("key", help="State key")
    output_parser.add_argument("profile", help="Profile name")
    _add_file(output_parser)
    _add_output(output_parser)

    state_parser = subparsers.add_parser("state", help="Inspect recorded state")
    state_sub = state_parser.add_subparsers(dest="state_command")
    state_list = state_sub.add_parser("list", help="List recorded resources")
    state_list.add_argument("key", help="State key")
    state_show = state_sub.add_parser("show", help="Show one recorded resource")
    state_show.add_argument("key", help="State key")
    state_show.add_argument("address", help="Instance address, e.g. networking.vpc[0]")
    _add_output(state_show)

    return parser


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.log_level:
        configure_logging(args.log_level)
    else:
        from stackwright.config.settings import get_settings

        configure_logging(get_settings().log_level)

    if args.command == "plan":
        from stackwright.cli.plan import plan_command

        sys.exit(plan_command(
            key=args.key,
            profile=args.profile,
            declarations_file=args.declarations_file,
            output_format=args.output,
            out=args.out,
            config_path=args.config_path,
        ))

    if args.command == "apply":
        from stackwright.cli.apply import apply_command

        sys.exit(apply_command(
            key=args.key,
            profile=args.profile,
            declarations_file=args.declarations_file,
            plan_file=args.plan_file,
            holder=args.holder,
            lock_timeout=args.lock_timeout,
            lease_seconds=args.lease_seconds,
            output_format=args.output,
            config_path=args.config_path,
        ))

    if args.command == "unlock":
        from stackwright.cli.unlock import unlock_command

        sys.exit(unlock_command(
            key=args.key,
            holder=args.holder,
            confirm=args.confirm,
            config_path=args.config_path,
        ))

    if args.command == "validate":
        from stackwright.cli.inspect import validate_command

        sys.exit(validate_command(
            profile=args.profile,
            declarations_file=args.declarations_file,
            config_path=args.config_path,
        ))

    if args.command == "graph":
        from stackwright.cli.inspect import graph_command

        sys.exit(graph_command(
            profile=args.profile,
            declarations_file=args.declarations_file,
            output_format=args.output,
            config_path=args.config_path,
        ))

    if args.command == "output":
        from stackwright.cli.inspect import output_command

        sys.exit(output_command(
            key=args.key,
            profile=args.profile,
            declarations_file=args.declarations_file,
            output_format=args.output,
            config_path=args.config_path,
        ))

    if args.command == "state":
        from stackwright.cli.inspect import state_list_command, state_show_command

        if args.state_command == "list":
            sys.exit(state_list_command(key=args.key, config_path=args.config_path))
        if args.state_command == "show":
            sys.exit(state_show_command(
                key=args.key,
                address=args.address,
                output_format=args.output,
                config_path=args.config_path,
            ))
        parser.parse_args(["state", "--help"])

    parser.print_help()
    sys.exit(1)


if __name__ == "__main__":
    main()
