"""Core modules for stackwright - error taxonomy and exit codes."""

from stackwright.core.errors import (
    ApplyCancelled,
    ConfigurationError,
    CycleError,
    DestroyBlockedError,
    ExitCode,
    ExpressionError,
    LeaseExpiredError,
    LoadError,
    LockBusyError,
    LockBusyTimeout,
    LockError,
    LockNotHeldError,
    PartialApplyError,
    ProviderEffectError,
    StackwrightError,
    StalePlanError,
    StaleStateError,
    StaleWriteError,
    ValidationError,
    format_error_message,
    main_with_error_handling,
)

__all__ = [
    "ExitCode",
    "StackwrightError",
    "ConfigurationError",
    "LoadError",
    "ExpressionError",
    "ValidationError",
    "CycleError",
    "DestroyBlockedError",
    "LockError",
    "LockBusyError",
    "LockBusyTimeout",
    "LockNotHeldError",
    "LeaseExpiredError",
    "StaleStateError",
    "StaleWriteError",
    "StalePlanError",
    "ApplyCancelled",
    "ProviderEffectError",
    "PartialApplyError",
    "main_with_error_handling",
    "format_error_message",
]
