from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List

from stackwright.core.errors import (
    ApplyCancelled,
    PartialApplyError,
    ProviderEffectError,
    StackwrightError,
    StaleWriteError,
)
from stackwright.declarations.references import InstanceAddress
from stackwright.planning.models import ActionKind, PlanAction


class ApplyStatus(str, Enum):
    SUCCEEDED = "succeeded"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"
    STALE = "stale"


@dataclass
class ApplyReport:
    """Outcome of one apply run."""

    key: str
    status: ApplyStatus = ApplyStatus.SUCCEEDED
    completed: List[PlanAction] = field(default_factory=list)
    failed: PlanAction | None = None
    not_attempted: List[PlanAction] = field(default_factory=list)
    error: StackwrightError | None = None
    serial: int = 0
    # the failed action had already applied and recorded its first step
    failed_recorded: bool = False
    # replaced objects still recorded because their delete has not succeeded
    deposed: List[InstanceAddress] = field(default_factory=list)

    @property
    def applied(self) -> List[PlanAction]:
        """Completed actions that changed something."""
        return [a for a in self.completed if a.kind is not ActionKind.NOOP]

    @property
    def remaining(self) -> List[PlanAction]:
        """Failed plus not-attempted actions."""
        head = [self.failed] if self.failed is not None else []
        return head + self.not_attempted

    @property
    def success(self) -> bool:
        return self.status is ApplyStatus.SUCCEEDED

    def raise_for_status(self) -> None:
        if self.status is ApplyStatus.SUCCEEDED:
            return
        if self.status is ApplyStatus.CANCELLED:
            raise ApplyCancelled(
                f"Apply of '{self.key}' cancelled with {len(self.remaining)} actions not attempted",
                {"key": self.key},
            )
        if self.status is ApplyStatus.STALE:
            raise StaleWriteError(
                self.error.message if self.error else f"State '{self.key}' went stale during apply",
                {"key": self.key},
            )
        if self.status is ApplyStatus.PARTIAL:
            raise PartialApplyError(
                f"Apply of '{self.key}' stopped after {len(self.applied)} completed actions"
                f"{' and a partly applied replace' if self.failed_recorded else ''}: "
                f"{self.error.message if self.error else 'unknown error'}",
                completed=[str(a.address) for a in self.applied],
                remaining=[str(a.address) for a in self.remaining],
            )
        address = str(self.failed.address) if self.failed is not None else None
        raise ProviderEffectError(
            self.error.message if self.error else f"Apply of '{self.key}' failed",
            address=address,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "status": self.status.value,
            "serial": self.serial,
            "completed": [_summary(a) for a in self.completed],
            "failed": _summary(self.failed) if self.failed is not None else None,
            "not_attempted": [_summary(a) for a in self.not_attempted],
            "error": self.error.message if self.error else None,
            "failed_recorded": self.failed_recorded,
            "deposed": [str(a) for a in self.deposed],
        }


def _summary(action: PlanAction) -> dict[str, Any]:
    summary: dict[str, Any] = {"address": str(action.address), "action": action.kind.value}
    if action.deposed:
        summary["deposed"] = True
    return summary
