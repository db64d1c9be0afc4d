from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stackwright.db import models as db_models
from stackwright.locking.models import LockRecord

_Row = db_models.StateLockRow


@dataclass(slots=True)
class SqlLockBackend:
    """Locks in the ``state_locks`` table using conditional statements."""

    sessions: async_sessionmaker[AsyncSession]

    async def get(self, key: str) -> LockRecord | None:
        async with self.sessions() as session:
            result = await session.execute(select(_Row).where(_Row.key == key))
            row = result.scalar_one_or_none()
            return _to_record(row) if row else None

    async def put_if_available(self, record: LockRecord, now: float) -> bool:
        values = dict(
            holder=record.holder,
            lock_id=record.lock_id,
            acquired_at=record.acquired_at,
            renewed_at=record.renewed_at,
            lease_seconds=record.lease_seconds,
            info=record.info,
        )
        try:
            async with self.sessions() as session, session.begin():
                # take over an expired lease in place
                taken = await session.execute(
                    update(_Row)
                    .where(_Row.key == record.key)
                    .where(_Row.renewed_at + _Row.lease_seconds <= now)
                    .values(**values)
                )
                if taken.rowcount:  # type: ignore[attr-defined]
                    return True
                existing = await session.execute(select(_Row.key).where(_Row.key == record.key))
                if existing.scalar_one_or_none() is not None:
                    return False
                await session.execute(insert(_Row).values(key=record.key, **values))
        except IntegrityError:
            return False
        return True

    async def renew(
        self, key: str, holder: str, lock_id: str, now: float, lease_seconds: float
    ) -> LockRecord | None:
        async with self.sessions() as session, session.begin():
            result = await session.execute(
                update(_Row)
                .where(_Row.key == key)
                .where(_Row.holder == holder)
                .where(_Row.lock_id == lock_id)
                .where(_Row.renewed_at + _Row.lease_seconds > now)
                .values(renewed_at=now, lease_seconds=lease_seconds)
            )
            if not result.rowcount:  # type: ignore[attr-defined]
                return None
            row = (await session.execute(select(_Row).where(_Row.key == key))).scalar_one()
            return _to_record(row)

    async def delete(self, key: str, holder: str | None = None, lock_id: str | None = None) -> bool:
        stmt = delete(_Row).where(_Row.key == key)
        if holder is not None:
            stmt = stmt.where(_Row.holder == holder)
        if lock_id is not None:
            stmt = stmt.where(_Row.lock_id == lock_id)
        async with self.sessions() as session, session.begin():
            result = await session.execute(stmt)
            return bool(result.rowcount)  # type: ignore[attr-defined]


def _to_record(row: db_models.StateLockRow) -> LockRecord:
    return LockRecord(
        key=row.key,
        holder=row.holder,
        lock_id=row.lock_id,
        acquired_at=row.acquired_at,
        renewed_at=row.renewed_at,
        lease_seconds=row.lease_seconds,
        info=row.info or "",
    )
