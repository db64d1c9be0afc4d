from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class StateSnapshotRow(Base):
    """Current snapshot for one state key."""

    __tablename__ = "state_snapshots"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    lineage: Mapped[str] = mapped_column(String(64), nullable=False)
    serial: Mapped[int] = mapped_column(Integer, nullable=False)
    digest: Mapped[str] = mapped_column(String(64), nullable=False)
    body: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class StateLockRow(Base):
    """Lease-based lock for one state key."""

    __tablename__ = "state_locks"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    holder: Mapped[str] = mapped_column(String(255), nullable=False)
    lock_id: Mapped[str] = mapped_column(String(64), nullable=False)
    acquired_at: Mapped[float] = mapped_column(Float, nullable=False)
    renewed_at: Mapped[float] = mapped_column(Float, nullable=False)
    lease_seconds: Mapped[float] = mapped_column(Float, nullable=False)
    info: Mapped[str | None] = mapped_column(Text)
