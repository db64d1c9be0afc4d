"""Builds the configured state store and lock manager."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import structlog

from stackwright.config.settings import Settings
from stackwright.db.session import create_tables, init_engine, session_factory
from stackwright.locking import (
    DynamoDBLockBackend,
    InMemoryLockBackend,
    LocalLockBackend,
    LockBackend,
    LockManager,
    SqlLockBackend,
)
from stackwright.state import InMemoryStateStore, LocalStateStore, SqlStateStore, StateStore

logger = structlog.get_logger()


@dataclass
class Backends:
    store: StateStore
    locks: LockManager
    uses_sql: bool = False
    settings: Settings | None = None

    async def prepare(self) -> None:
        """Create SQL tables when a SQL backend is configured."""
        if self.uses_sql and self.settings is not None:
            await create_tables(init_engine(self.settings))


def build_state_store(settings: Settings) -> StateStore:
    if settings.state_backend == "memory":
        return InMemoryStateStore()
    if settings.state_backend == "sql":
        return SqlStateStore(session_factory(init_engine(settings)))
    return LocalStateStore(Path(settings.state_dir) / "state")


def build_lock_backend(settings: Settings) -> LockBackend:
    if settings.lock_backend == "memory":
        return InMemoryLockBackend()
    if settings.lock_backend == "sql":
        return SqlLockBackend(session_factory(init_engine(settings)))
    if settings.lock_backend == "dynamodb":
        return DynamoDBLockBackend(settings.dynamodb_table, region=settings.aws_region)
    return LocalLockBackend(Path(settings.state_dir) / "locks")


def build_lock_manager(settings: Settings) -> LockManager:
    return LockManager(
        build_lock_backend(settings),
        backoff_initial=settings.lock_backoff_initial,
        backoff_max=settings.lock_backoff_max,
    )


def build_backends(settings: Settings) -> Backends:
    logger.debug(
        "backends_configured",
        state=settings.state_backend,
        lock=settings.lock_backend,
    )
    return Backends(
        store=build_state_store(settings),
        locks=build_lock_manager(settings),
        uses_sql="sql" in (settings.state_backend, settings.lock_backend),
        settings=settings,
    )
