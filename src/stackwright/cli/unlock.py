"""
CLI command for force-releasing a state lock.

The operator must confirm by typing the state key, either interactively
or with ``--confirm KEY``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from stackwright.cli.common import build_orchestrator, run_async
from stackwright.cli.ux import error, is_interactive, print_key_value, success, text_input, warning
from stackwright.core.errors import ExitCode, main_with_error_handling


def _timestamp(value: float) -> str:
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat(timespec="seconds")


@main_with_error_handling()
def unlock_command(
    key: str,
    holder: str,
    confirm: Optional[str] = None,
    declarations_file: Optional[str] = None,
    config_path: Optional[str] = None,
) -> int:
    """
    Force-release the lock on ``key`` held by ``holder``.

    Returns:
        0 when released, 2 when the confirmation does not match
    """
    orchestrator = build_orchestrator(declarations_file, config_path)
    current = run_async(orchestrator.lock_status(key))
    if current is not None:
        print_key_value(
            {
                "holder": current.holder,
                "acquired": _timestamp(current.acquired_at),
                "expires": _timestamp(current.expires_at),
                "info": current.info or "-",
            },
            title=f"Lock on {key}",
        )

    if confirm is None:
        if not is_interactive():
            error("Refusing to unlock without confirmation; pass --confirm <state key>")
            return int(ExitCode.BLOCKED)
        warning("Releasing a lock held by a running apply can corrupt state.")
        confirm = text_input(f"Type the state key '{key}' to confirm:")

    if confirm != key:
        error("Confirmation does not match the state key; lock left in place")
        return int(ExitCode.BLOCKED)

    # only the lease shown above; one taken meanwhile stays locked
    lock_id = current.lock_id if current is not None else None
    released = run_async(orchestrator.unlock(key, holder, lock_id=lock_id))
    success(f"Released lock on '{key}' held by {released.holder}")
    return 0
