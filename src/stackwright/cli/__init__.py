"""
CLI commands for stackwright.
"""

from stackwright.cli.apply import apply_command
from stackwright.cli.inspect import (
    graph_command,
    output_command,
    state_list_command,
    state_show_command,
    validate_command,
)
from stackwright.cli.plan import plan_command
from stackwright.cli.unlock import unlock_command

__all__ = [
    "plan_command",
    "apply_command",
    "unlock_command",
    "validate_command",
    "graph_command",
    "output_command",
    "state_list_command",
    "state_show_command",
]
