from __future__ import annotations

import asyncio

import structlog

from stackwright.state.base import check_digest
from stackwright.state.models import StateSnapshot

logger = structlog.get_logger()


class InMemoryStateStore:
    """Process-local state store, used for tests and dry runs."""

    def __init__(self) -> None:
        self._snapshots: dict[str, StateSnapshot] = {}
        self._lock = asyncio.Lock()

    async def read(self, key: str) -> StateSnapshot:
        return self._snapshots.get(key) or StateSnapshot.empty(key)

    async def write(self, key: str, snapshot: StateSnapshot, expected_digest: str) -> StateSnapshot:
        async with self._lock:
            current = self._snapshots.get(key) or StateSnapshot.empty(key)
            check_digest(key, current, expected_digest)
            stored = snapshot.successor(current)
            self._snapshots[key] = stored
        logger.debug("state_written", key=key, serial=stored.serial, backend="memory")
        return stored

    async def list_keys(self) -> list[str]:
        return sorted(self._snapshots)
