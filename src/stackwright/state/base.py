from __future__ import annotations

from typing import Protocol

from stackwright.core.errors import StaleWriteError
from stackwright.state.models import StateSnapshot


class StateStore(Protocol):
    """Versioned snapshot storage with digest-checked writes."""

    async def read(self, key: str) -> StateSnapshot:
        """Current snapshot; the empty snapshot (serial 0) if none exists."""
        ...

    async def write(self, key: str, snapshot: StateSnapshot, expected_digest: str) -> StateSnapshot:
        """
        Store ``snapshot`` as the next version if the current digest matches.

        Returns the stored snapshot (serial + 1, new digest).

        Raises:
            StaleWriteError: If the current digest differs from ``expected_digest``
        """
        ...

    async def list_keys(self) -> list[str]:
        ...


def check_digest(key: str, current: StateSnapshot, expected_digest: str) -> None:
    if current.digest != expected_digest:
        raise StaleWriteError(
            f"State '{key}' changed since it was read (serial {current.serial})",
            {"key": key, "serial": current.serial},
        )
