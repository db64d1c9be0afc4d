from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from typing import Any, Protocol


@dataclass(frozen=True)
class LockRecord:
    """A leased lock on one state key."""

    key: str
    holder: str
    lock_id: str
    acquired_at: float
    renewed_at: float
    lease_seconds: float
    info: str = ""

    @classmethod
    def new(cls, key: str, holder: str, now: float, lease_seconds: float, info: str = "") -> "LockRecord":
        return cls(
            key=key,
            holder=holder,
            lock_id=uuid.uuid4().hex,
            acquired_at=now,
            renewed_at=now,
            lease_seconds=lease_seconds,
            info=info,
        )

    @property
    def expires_at(self) -> float:
        return self.renewed_at + self.lease_seconds

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def renewed(self, now: float, lease_seconds: float | None = None) -> "LockRecord":
        return replace(
            self,
            renewed_at=now,
            lease_seconds=self.lease_seconds if lease_seconds is None else lease_seconds,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "holder": self.holder,
            "lock_id": self.lock_id,
            "acquired_at": self.acquired_at,
            "renewed_at": self.renewed_at,
            "lease_seconds": self.lease_seconds,
            "expires_at": self.expires_at,
            "info": self.info,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LockRecord":
        return cls(
            key=data["key"],
            holder=data["holder"],
            lock_id=data["lock_id"],
            acquired_at=float(data["acquired_at"]),
            renewed_at=float(data["renewed_at"]),
            lease_seconds=float(data["lease_seconds"]),
            info=data.get("info") or "",
        )


class LockBackend(Protocol):
    """Conditional-write primitive the lock manager is built on."""

    async def get(self, key: str) -> LockRecord | None:
        ...

    async def put_if_available(self, record: LockRecord, now: float) -> bool:
        """Store ``record`` if no lock exists or the existing one expired before ``now``."""
        ...

    async def renew(
        self, key: str, holder: str, lock_id: str, now: float, lease_seconds: float
    ) -> LockRecord | None:
        """Extend the lease if (holder, lock_id) still holds an unexpired lock."""
        ...

    async def delete(self, key: str, holder: str | None = None, lock_id: str | None = None) -> bool:
        """Remove the lock; only if held by ``holder`` and with ``lock_id`` when given."""
        ...
