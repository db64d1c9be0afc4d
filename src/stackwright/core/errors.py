"""
Unified error handling for stackwright.

Every error raised by the orchestration core derives from
``StackwrightError`` and carries the CLI exit code it maps to.

Exit Codes:
- 0: Success
- 2: Blocked (destroy of a protected resource, unconfirmed unlock)
- 3: Lock busy / not held / lease expired
- 4: Stale plan or stale state write
- 5: Apply cancelled between actions
- 10: Load error (malformed declarations)
- 11: Configuration error
- 12: Validation error (parameter failed its validator)
- 13: Dependency cycle
- 20: Partial apply (some actions applied, then a failure)
- 21: Apply failed (no action applied)
- 127: Unknown/internal error
"""

from __future__ import annotations

import functools
import sys
import traceback
from enum import IntEnum
from typing import Any, Callable, Sequence, TypeVar

import structlog

logger = structlog.get_logger()


class ExitCode(IntEnum):
    """Standardized exit codes for CLI commands."""

    SUCCESS = 0
    BLOCKED = 2
    LOCKED = 3
    STALE = 4
    CANCELLED = 5
    LOAD_ERROR = 10
    CONFIG_ERROR = 11
    VALIDATION_ERROR = 12
    CYCLE_ERROR = 13
    PARTIAL_APPLY = 20
    APPLY_FAILED = 21
    UNKNOWN_ERROR = 127


class StackwrightError(Exception):
    """Base exception for stackwright errors with exit code support."""

    exit_code: ExitCode = ExitCode.UNKNOWN_ERROR
    show_traceback: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(StackwrightError):
    """Raised for invalid settings or project configuration."""

    exit_code = ExitCode.CONFIG_ERROR


class LoadError(StackwrightError):
    """Raised when declarations cannot be loaded. Never a partial load."""

    exit_code = ExitCode.LOAD_ERROR


class ExpressionError(LoadError):
    """Raised when an expression cannot be parsed or evaluated."""


class ValidationError(StackwrightError):
    """Raised when a parameter value fails its type check or validator."""

    exit_code = ExitCode.VALIDATION_ERROR


class CycleError(LoadError):
    """Raised when the module or resource graph contains a cycle."""

    exit_code = ExitCode.CYCLE_ERROR

    def __init__(self, cycle: Sequence[str], scope: str = "resource"):
        self.cycle = list(cycle)
        path = " -> ".join(self.cycle)
        super().__init__(f"Dependency cycle between {scope}s: {path}", {"cycle": path})


class DestroyBlockedError(StackwrightError):
    """Raised when a plan would destroy a resource marked prevent_destroy."""

    exit_code = ExitCode.BLOCKED

    def __init__(self, addresses: Sequence[str], reason: str = "delete"):
        self.addresses = list(addresses)
        joined = ", ".join(self.addresses)
        super().__init__(
            f"Plan would {reason} resources protected by prevent_destroy: {joined}",
            {"addresses": joined},
        )


class LockError(StackwrightError):
    """Base for lock manager failures."""

    exit_code = ExitCode.LOCKED


class LockBusyError(LockError):
    """Raised when a lock is held by another unexpired holder."""

    def __init__(self, key: str, holder: str | None = None, details: dict[str, Any] | None = None):
        self.key = key
        self.holder = holder
        message = f"State '{key}' is locked"
        if holder:
            message += f" by {holder}"
        super().__init__(message, {"key": key, "holder": holder or "", **(details or {})})


class LockBusyTimeout(LockBusyError):
    """Raised when a lock was not acquired before the caller's deadline."""


class LockNotHeldError(LockError):
    """Raised when releasing a lock that the caller does not hold."""


class LeaseExpiredError(LockError):
    """Raised when renewing a lease that expired or was taken over."""


class StaleStateError(StackwrightError):
    """Base for optimistic concurrency failures. Callers must replan."""

    exit_code = ExitCode.STALE


class StaleWriteError(StaleStateError):
    """Raised when a snapshot write's expected digest no longer matches."""


class StalePlanError(StaleStateError):
    """Raised when a plan's digest differs from the current snapshot."""


class ApplyCancelled(StackwrightError):
    """Raised when an apply stopped at a cancellation request."""

    exit_code = ExitCode.CANCELLED


class ProviderEffectError(StackwrightError):
    """Raised when an external provider action fails."""

    exit_code = ExitCode.APPLY_FAILED

    def __init__(self, message: str, address: str | None = None, details: dict[str, Any] | None = None):
        self.address = address
        merged = dict(details or {})
        if address:
            merged.setdefault("address", address)
        super().__init__(message, merged)


class PartialApplyError(StackwrightError):
    """Raised when some but not all plan actions were applied."""

    exit_code = ExitCode.PARTIAL_APPLY

    def __init__(self, message: str, completed: Sequence[str], remaining: Sequence[str]):
        self.completed = list(completed)
        self.remaining = list(remaining)
        super().__init__(
            message,
            {"completed": ", ".join(self.completed), "remaining": ", ".join(self.remaining)},
        )


# Type variable for decorated functions
F = TypeVar("F", bound=Callable[..., int])


def main_with_error_handling(
    *,
    show_traceback: bool = False,
    log_errors: bool = True,
) -> Callable[[F], F]:
    """
    Decorator for CLI command functions that provides unified error handling.

    Catches exceptions and converts them to exit codes with consistent
    error reporting.

    Args:
        show_traceback: If True, show full traceback for unexpected errors
        log_errors: If True, log errors to structlog

    Exit codes:
        - StackwrightError subclasses: Uses the error's exit_code
        - KeyboardInterrupt: Returns 130 (standard for SIGINT)
        - Other exceptions: Returns 127 (unknown error)
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> int:
            try:
                return func(*args, **kwargs)
            except StackwrightError as e:
                if log_errors:
                    logger.error(
                        "command_error",
                        error_type=type(e).__name__,
                        message=e.message,
                        exit_code=int(e.exit_code),
                        **e.details,
                    )
                from stackwright.cli.ux import error as print_error

                print_error(format_error_message(e))
                if e.show_traceback or show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return int(e.exit_code)
            except KeyboardInterrupt:
                if log_errors:
                    logger.info("command_interrupted")
                return 130  # Standard exit code for SIGINT
            except Exception as e:
                if log_errors:
                    logger.exception("unexpected_error", error_type=type(e).__name__)
                from stackwright.cli.ux import error as print_error

                print_error(f"Unexpected {type(e).__name__}: {e}")
                if show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return int(ExitCode.UNKNOWN_ERROR)

        return wrapper  # type: ignore[return-value]

    return decorator


def format_error_message(error: StackwrightError) -> str:
    """Format an error message for display to users."""
    msg = error.message
    if error.details:
        detail_str = ", ".join(f"{k}={v}" for k, v in error.details.items() if v != "")
        if detail_str:
            msg = f"{msg} ({detail_str})"
    return msg
