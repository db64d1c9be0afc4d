"""
File-backed state store.

One JSON document per state key under ``<state_dir>/state/``. Writes are
compare-and-swap under an exclusive ``fcntl`` lock on a sidecar file and
land atomically via ``os.replace``.
"""

from __future__ import annotations

import asyncio
import fcntl
import json
import os
from pathlib import Path
from urllib.parse import quote, unquote

import structlog

from stackwright.core.errors import ConfigurationError
from stackwright.state.base import check_digest
from stackwright.state.models import StateSnapshot

logger = structlog.get_logger()


class LocalStateStore:
    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def path_for(self, key: str) -> Path:
        return self.directory / f"{quote(key, safe='')}.json"

    async def read(self, key: str) -> StateSnapshot:
        return await asyncio.to_thread(self._read, key)

    async def write(self, key: str, snapshot: StateSnapshot, expected_digest: str) -> StateSnapshot:
        stored = await asyncio.to_thread(self._write, key, snapshot, expected_digest)
        logger.debug("state_written", key=key, serial=stored.serial, backend="local")
        return stored

    async def list_keys(self) -> list[str]:
        if not self.directory.is_dir():
            return []
        return sorted(unquote(p.stem) for p in self.directory.glob("*.json"))

    def _read(self, key: str) -> StateSnapshot:
        path = self.path_for(key)
        if not path.exists():
            return StateSnapshot.empty(key)
        try:
            data = json.loads(path.read_text())
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"State file {path} is corrupt: {e}") from e
        return StateSnapshot.from_dict(data)

    def _write(self, key: str, snapshot: StateSnapshot, expected_digest: str) -> StateSnapshot:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(key)
        with open(path.with_suffix(".json.lock"), "a+") as guard:
            fcntl.flock(guard.fileno(), fcntl.LOCK_EX)
            try:
                current = self._read(key)
                check_digest(key, current, expected_digest)
                stored = snapshot.successor(current)
                tmp = path.with_suffix(f".json.{os.getpid()}.tmp")
                tmp.write_text(json.dumps(stored.to_dict(), indent=2, sort_keys=True) + "\n")
                os.replace(tmp, path)
            finally:
                fcntl.flock(guard.fileno(), fcntl.LOCK_UN)
        return stored
