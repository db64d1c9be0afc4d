"""
Lease-based lock manager.

Only lock acquisition is retried internally: with a timeout the manager
backs off exponentially with jitter (tenacity) until the deadline. Every other
failure is reported to the caller.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import suppress
from typing import Any, Awaitable, Callable

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, wait_random_exponential

from stackwright.core.errors import (
    LeaseExpiredError,
    LockBusyError,
    LockBusyTimeout,
    LockNotHeldError,
)
from stackwright.locking.models import LockBackend, LockRecord

logger = structlog.get_logger()

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[Any]]


class LockManager:
    """Acquire, renew and release leased locks on state keys."""

    def __init__(
        self,
        backend: LockBackend,
        *,
        clock: Clock = time.time,
        sleep: Sleep = asyncio.sleep,
        backoff_initial: float = 0.5,
        backoff_max: float = 8.0,
    ) -> None:
        self.backend = backend
        self.clock = clock
        self.sleep = sleep
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max

    async def acquire(
        self,
        key: str,
        holder: str,
        lease_seconds: float,
        *,
        timeout: float = 0.0,
        info: str = "",
    ) -> LockRecord:
        """
        Acquire the lock on ``key`` for ``holder``.

        An expired lease held by anyone is taken over.

        Raises:
            LockBusyError: If held by another unexpired holder and timeout is 0
            LockBusyTimeout: If still held when the timeout elapses
        """
        if timeout <= 0:
            return await self._try_acquire(key, holder, lease_seconds, info, 1)

        deadline = self.clock() + timeout
        backoff = wait_random_exponential(multiplier=self.backoff_initial, max=self.backoff_max)

        def wait(retry_state: RetryCallState) -> float:
            return max(0.0, min(backoff(retry_state), deadline - self.clock()))

        def log_retry(retry_state: RetryCallState) -> None:
            logger.debug(
                "lock_busy_retrying",
                key=key,
                attempt=retry_state.attempt_number,
                wait=round(retry_state.next_action.sleep, 3) if retry_state.next_action else 0.0,
            )

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(LockBusyError),
            stop=lambda _: self.clock() >= deadline,
            wait=wait,
            sleep=self.sleep,
            before_sleep=log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await self._try_acquire(
                        key, holder, lease_seconds, info, attempt.retry_state.attempt_number
                    )
        except LockBusyError as e:
            raise LockBusyTimeout(key, e.holder, e.details) from e
        raise AssertionError("unreachable")  # pragma: no cover

    async def _try_acquire(
        self, key: str, holder: str, lease_seconds: float, info: str, attempt: int
    ) -> LockRecord:
        now = self.clock()
        record = LockRecord.new(key, holder, now, lease_seconds, info)
        if await self.backend.put_if_available(record, now):
            logger.info("lock_acquired", key=key, holder=holder, lease=lease_seconds, attempts=attempt)
            return record

        current = await self.backend.get(key)
        details: dict[str, Any] = {"attempts": attempt}
        if current is not None:
            details["expires_at"] = current.expires_at
        raise LockBusyError(key, current.holder if current else None, details)

    async def release(self, key: str, holder: str, *, lock_id: str | None = None) -> None:
        """
        Release ``holder``'s lock on ``key``.

        With ``lock_id`` only that exact lease is released, never a later
        one taken by a process using the same holder name.

        Raises:
            LockNotHeldError: If the lock is absent or held by someone else
        """
        if await self.backend.delete(key, holder, lock_id=lock_id):
            logger.info("lock_released", key=key, holder=holder)
            return
        current = await self.backend.get(key)
        if current is None:
            raise LockNotHeldError(f"State '{key}' is not locked", {"key": key, "holder": holder})
        if current.holder == holder:
            raise LockNotHeldError(
                f"State '{key}' is locked by another lease of {holder}",
                {"key": key, "holder": holder},
            )
        raise LockNotHeldError(
            f"State '{key}' is locked by {current.holder}, not {holder}",
            {"key": key, "holder": current.holder},
        )

    async def renew(
        self,
        key: str,
        holder: str,
        lease_seconds: float | None = None,
        *,
        lock_id: str | None = None,
    ) -> LockRecord:
        """
        Extend ``holder``'s lease.

        Raises:
            LeaseExpiredError: If the lease expired or another holder took over
        """
        now = self.clock()
        current = await self.backend.get(key)
        if current is None or current.holder != holder or (lock_id and current.lock_id != lock_id):
            raise LeaseExpiredError(
                f"Lease on '{key}' is no longer held by {holder}",
                {"key": key, "holder": current.holder if current else ""},
            )
        lease = current.lease_seconds if lease_seconds is None else lease_seconds
        renewed = await self.backend.renew(key, holder, current.lock_id, now, lease)
        if renewed is None:
            raise LeaseExpiredError(
                f"Lease on '{key}' expired before it was renewed",
                {"key": key, "holder": holder},
            )
        logger.debug("lock_renewed", key=key, holder=holder, expires_at=renewed.expires_at)
        return renewed

    async def force_release(
        self, key: str, holder: str | None = None, *, lock_id: str | None = None
    ) -> LockRecord | None:
        """
        Remove the lock whatever its lease state; returns the removed record.

        The delete is conditioned on the record just read (and on ``holder``
        and ``lock_id`` when given), so a lock that changes hands meanwhile
        is left alone and None is returned.
        """
        current = await self.backend.get(key)
        if current is None:
            return None
        if (holder is not None and current.holder != holder) or (lock_id is not None and current.lock_id != lock_id):
            return None
        if not await self.backend.delete(key, current.holder, lock_id=current.lock_id):
            return None
        logger.warning("lock_force_released", key=key, previous_holder=current.holder)
        return current

    async def status(self, key: str) -> LockRecord | None:
        return await self.backend.get(key)

    async def holds(self, key: str, holder: str, *, lock_id: str | None = None) -> LockRecord | None:
        """Current record if ``holder`` (and that ``lock_id``) holds an unexpired lease on ``key``."""
        current = await self.backend.get(key)
        if current is None or current.holder != holder or current.is_expired(self.clock()):
            return None
        if lock_id is not None and current.lock_id != lock_id:
            return None
        return current


class LeaseKeeper:
    """
    Keeps a lease alive while a long operation runs.

        async with LeaseKeeper(manager, record) as keeper:
            ...
            await keeper.renew_now()   # before each state write
            keeper.ensure_held()
    """

    def __init__(
        self,
        manager: LockManager,
        record: LockRecord,
        *,
        interval: float | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.manager = manager
        self.record = record
        self.interval = interval if interval is not None else record.lease_seconds / 3
        self._sleep = sleep
        self._lost: LeaseExpiredError | None = None
        self._task: asyncio.Task[None] | None = None

    async def __aenter__(self) -> "LeaseKeeper":
        self._task = asyncio.create_task(self._run())
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        if self._task is not None:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _run(self) -> None:
        while True:
            await self._sleep(self.interval)
            try:
                await self.renew_now()
            except LeaseExpiredError:
                logger.warning("lease_lost", key=self.record.key, holder=self.record.holder)
                return

    async def renew_now(self) -> LockRecord:
        try:
            self.record = await self.manager.renew(
                self.record.key,
                self.record.holder,
                self.record.lease_seconds,
                lock_id=self.record.lock_id,
            )
        except LeaseExpiredError as e:
            self._lost = e
            raise
        return self.record

    def ensure_held(self) -> None:
        """Raise LeaseExpiredError if the lease was lost or has run out."""
        if self._lost is not None:
            raise self._lost
        if self.record.is_expired(self.manager.clock()):
            raise LeaseExpiredError(
                f"Lease on '{self.record.key}' expired",
                {"key": self.record.key, "holder": self.record.holder},
            )
