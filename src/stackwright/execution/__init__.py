from stackwright.execution.cancellation import CancellationToken
from stackwright.execution.executor import ApplyExecutor
from stackwright.execution.report import ApplyReport, ApplyStatus

__all__ = ["ApplyExecutor", "ApplyReport", "ApplyStatus", "CancellationToken"]
