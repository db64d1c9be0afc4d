"""In-process and local-file lock backends."""

from __future__ import annotations

import asyncio
import fcntl
import json
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator
from urllib.parse import quote

from stackwright.locking.models import LockRecord


class InMemoryLockBackend:
    def __init__(self) -> None:
        self._records: dict[str, LockRecord] = {}
        self._guard = asyncio.Lock()

    async def get(self, key: str) -> LockRecord | None:
        return self._records.get(key)

    async def put_if_available(self, record: LockRecord, now: float) -> bool:
        async with self._guard:
            current = self._records.get(record.key)
            if current is not None and not current.is_expired(now):
                return False
            self._records[record.key] = record
            return True

    async def renew(
        self, key: str, holder: str, lock_id: str, now: float, lease_seconds: float
    ) -> LockRecord | None:
        async with self._guard:
            current = self._records.get(key)
            if not _renewable(current, holder, lock_id, now):
                return None
            renewed = current.renewed(now, lease_seconds)  # type: ignore[union-attr]
            self._records[key] = renewed
            return renewed

    async def delete(self, key: str, holder: str | None = None, lock_id: str | None = None) -> bool:
        async with self._guard:
            current = self._records.get(key)
            if not _matches(current, holder, lock_id):
                return False
            del self._records[key]
            return True


class LocalLockBackend:
    """
    Lock records as JSON files, one per key.

    Each read-modify-write happens under an exclusive ``fcntl`` lock so
    processes on one machine sharing a state directory are serialized.
    """

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def path_for(self, key: str) -> Path:
        return self.directory / f"{quote(key, safe='')}.lock.json"

    async def get(self, key: str) -> LockRecord | None:
        return await asyncio.to_thread(self._load, key)

    async def put_if_available(self, record: LockRecord, now: float) -> bool:
        return await asyncio.to_thread(self._put_if_available, record, now)

    async def renew(
        self, key: str, holder: str, lock_id: str, now: float, lease_seconds: float
    ) -> LockRecord | None:
        return await asyncio.to_thread(self._renew, key, holder, lock_id, now, lease_seconds)

    async def delete(self, key: str, holder: str | None = None, lock_id: str | None = None) -> bool:
        return await asyncio.to_thread(self._delete, key, holder, lock_id)

    @contextmanager
    def _exclusive(self, key: str) -> Iterator[None]:
        self.directory.mkdir(parents=True, exist_ok=True)
        with open(self.directory / f"{quote(key, safe='')}.guard", "a+") as guard:
            fcntl.flock(guard.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(guard.fileno(), fcntl.LOCK_UN)

    def _load(self, key: str) -> LockRecord | None:
        path = self.path_for(key)
        if not path.exists():
            return None
        return LockRecord.from_dict(json.loads(path.read_text()))

    def _store(self, record: LockRecord) -> None:
        path = self.path_for(record.key)
        tmp = path.with_name(f"{path.name}.{os.getpid()}.tmp")
        tmp.write_text(json.dumps(record.to_dict(), indent=2, sort_keys=True) + "\n")
        os.replace(tmp, path)

    def _put_if_available(self, record: LockRecord, now: float) -> bool:
        with self._exclusive(record.key):
            current = self._load(record.key)
            if current is not None and not current.is_expired(now):
                return False
            self._store(record)
            return True

    def _renew(
        self, key: str, holder: str, lock_id: str, now: float, lease_seconds: float
    ) -> LockRecord | None:
        with self._exclusive(key):
            current = self._load(key)
            if not _renewable(current, holder, lock_id, now):
                return None
            renewed = current.renewed(now, lease_seconds)  # type: ignore[union-attr]
            self._store(renewed)
            return renewed

    def _delete(self, key: str, holder: str | None, lock_id: str | None) -> bool:
        with self._exclusive(key):
            current = self._load(key)
            if not _matches(current, holder, lock_id):
                return False
            self.path_for(key).unlink()
            return True


def _renewable(current: LockRecord | None, holder: str, lock_id: str, now: float) -> bool:
    return (
        current is not None
        and current.holder == holder
        and current.lock_id == lock_id
        and not current.is_expired(now)
    )


def _matches(current: LockRecord | None, holder: str | None, lock_id: str | None) -> bool:
    return (
        current is not None
        and (holder is None or current.holder == holder)
        and (lock_id is None or current.lock_id == lock_id)
    )
