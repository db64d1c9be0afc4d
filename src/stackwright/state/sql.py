from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stackwright.core.errors import StaleWriteError
from stackwright.db import models as db_models
from stackwright.state.base import check_digest
from stackwright.state.models import StateSnapshot

logger = structlog.get_logger()


@dataclass(slots=True)
class SqlStateStore:
    """State snapshots in the ``state_snapshots`` table."""

    sessions: async_sessionmaker[AsyncSession]

    async def read(self, key: str) -> StateSnapshot:
        async with self.sessions() as session:
            row = await self._get(session, key)
            if row is None:
                return StateSnapshot.empty(key)
            return StateSnapshot.from_dict(row.body)

    async def write(self, key: str, snapshot: StateSnapshot, expected_digest: str) -> StateSnapshot:
        try:
            async with self.sessions() as session, session.begin():
                row = await self._get(session, key)
                current = StateSnapshot.from_dict(row.body) if row else StateSnapshot.empty(key)
                check_digest(key, current, expected_digest)
                stored = snapshot.successor(current)

                if row is None:
                    session.add(
                        db_models.StateSnapshotRow(
                            key=key,
                            lineage=stored.lineage,
                            serial=stored.serial,
                            digest=stored.digest,
                            body=stored.to_dict(),
                        )
                    )
                else:
                    stmt = (
                        update(db_models.StateSnapshotRow)
                        .where(db_models.StateSnapshotRow.key == key)
                        .where(db_models.StateSnapshotRow.digest == expected_digest)
                        .values(
                            lineage=stored.lineage,
                            serial=stored.serial,
                            digest=stored.digest,
                            body=stored.to_dict(),
                            updated_at=datetime.now(timezone.utc),
                        )
                    )
                    result = await session.execute(stmt)
                    if result.rowcount == 0:  # type: ignore[attr-defined]
                        raise StaleWriteError(
                            f"State '{key}' changed since it was read", {"key": key}
                        )
        except IntegrityError as e:
            raise StaleWriteError(
                f"State '{key}' was created concurrently", {"key": key}
            ) from e

        logger.debug("state_written", key=key, serial=stored.serial, backend="sql")
        return stored

    async def list_keys(self) -> list[str]:
        async with self.sessions() as session:
            result = await session.execute(
                select(db_models.StateSnapshotRow.key).order_by(db_models.StateSnapshotRow.key)
            )
            return list(result.scalars())

    @staticmethod
    async def _get(session: AsyncSession, key: str) -> db_models.StateSnapshotRow | None:
        stmt = select(db_models.StateSnapshotRow).where(db_models.StateSnapshotRow.key == key)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()
