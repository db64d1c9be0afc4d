"""
Apply executor.

Runs a plan's actions one at a time under the state lock. After every
external effect the merged snapshot is written with a digest check, so a
crash or failure leaves state describing exactly what was done. There is
no rollback: a failed run is resumed by planning again.
"""

from __future__ import annotations

from typing import Any

import structlog

from stackwright.core.errors import (
    LeaseExpiredError,
    LockNotHeldError,
    ProviderEffectError,
    StalePlanError,
    StaleWriteError,
)
from stackwright.declarations.references import (
    InstanceAddress,
    make_reference,
    resolve_references,
)
from stackwright.execution.cancellation import CancellationToken
from stackwright.execution.report import ApplyReport, ApplyStatus
from stackwright.graph.models import ResourceInstance
from stackwright.locking.manager import LeaseKeeper, LockManager
from stackwright.locking.models import LockRecord
from stackwright.planning.models import ActionKind, Plan, PlanAction
from stackwright.providers.base import ProviderRequest, ResourceProvider
from stackwright.providers.registry import ProviderRegistry
from stackwright.state.base import StateStore
from stackwright.state.models import ResourceState, StateSnapshot

logger = structlog.get_logger()


class IncompleteReplaceError(ProviderEffectError):
    """The first step of a replace was applied and recorded; the second failed."""

    def __init__(self, cause: ProviderEffectError, stored: StateSnapshot) -> None:
        super().__init__(cause.message, address=cause.address, details=cause.details)
        self.stored = stored


class ApplyExecutor:
    def __init__(self, store: StateStore, locks: LockManager, providers: ProviderRegistry) -> None:
        self.store = store
        self.locks = locks
        self.providers = providers

    async def apply(
        self,
        plan: Plan,
        holder: str,
        *,
        lock: LockRecord | None = None,
        cancel: CancellationToken | None = None,
        lease_seconds: float = 60.0,
        lock_timeout: float = 0.0,
    ) -> ApplyReport:
        """
        Apply ``plan`` as ``holder``.

        ``lock`` is a record the caller already acquired; it is reused only
        while that exact lease (same lock id) is still live. Otherwise the
        lock is acquired here. It is always released at the end.

        Provider failures, cancellation and lost leases are reported in the
        returned ApplyReport.

        Raises:
            LockBusyError: If the lock is held by someone else
            StalePlanError: If state changed since the plan was computed
        """
        log = logger.bind(key=plan.key, holder=holder)
        record = None
        if lock is not None and lock.key == plan.key:
            record = await self.locks.holds(lock.key, lock.holder, lock_id=lock.lock_id)
        if record is None:
            record = await self.locks.acquire(
                plan.key,
                holder,
                lease_seconds,
                timeout=lock_timeout,
                info=f"apply profile={plan.profile}",
            )

        try:
            async with LeaseKeeper(self.locks, record) as keeper:
                snapshot = await self.store.read(plan.key)
                if snapshot.digest != plan.digest:
                    raise StalePlanError(
                        f"State '{plan.key}' changed since the plan was computed "
                        f"(plan serial {plan.serial}, current serial {snapshot.serial}); plan again",
                        {"key": plan.key, "serial": snapshot.serial},
                    )
                log.info("apply_started", actions=len(plan.actions), changes=len(plan.changes))
                report = await self._run(plan, snapshot, keeper, cancel)
        finally:
            await self._release(plan.key, record)

        log.info(
            "apply_finished",
            status=report.status.value,
            applied=len(report.applied),
            remaining=len(report.remaining),
        )
        return report

    async def _run(
        self,
        plan: Plan,
        snapshot: StateSnapshot,
        keeper: LeaseKeeper,
        cancel: CancellationToken | None,
    ) -> ApplyReport:
        report = ApplyReport(key=plan.key, serial=snapshot.serial)
        stored = snapshot
        actions = list(plan.actions)

        for position, action in enumerate(actions):
            if cancel is not None and cancel.cancelled:
                logger.warning("apply_cancelled", key=plan.key, before=str(action.address))
                report.status = ApplyStatus.CANCELLED
                report.not_attempted = actions[position:]
                break
            try:
                stored = await self._execute(plan.key, action, stored, keeper)
            except ProviderEffectError as e:
                logger.error("action_failed", key=plan.key, address=str(action.address), error=e.message)
                if isinstance(e, IncompleteReplaceError):
                    stored = e.stored
                    report.failed_recorded = True
                report.status = ApplyStatus.PARTIAL if report.applied or report.failed_recorded else ApplyStatus.FAILED
                report.failed = action
                report.error = e
                report.not_attempted = actions[position + 1 :]
                break
            except (StaleWriteError, LeaseExpiredError) as e:
                logger.error("apply_stale", key=plan.key, address=str(action.address), error=e.message)
                report.status = ApplyStatus.STALE
                report.failed = action
                report.error = e
                report.not_attempted = actions[position + 1 :]
                break
            report.completed.append(action)

        report.serial = stored.serial
        report.deposed = [state.address for states in stored.deposed.values() for state in states]
        return report

    async def _execute(
        self, key: str, action: PlanAction, stored: StateSnapshot, keeper: LeaseKeeper
    ) -> StateSnapshot:
        logger.info("action_started", key=key, address=str(action.address), action=action.kind.value)

        if action.kind is ActionKind.NOOP:
            return await self._refresh_metadata(key, action, stored, keeper)

        if action.kind is ActionKind.DELETE:
            prior = self._prior(action)
            await self._call(action, self._provider(action, prior.kind).delete(prior))
            remaining = stored.without_deposed(prior) if action.deposed else stored.without(action.address)
            return await self._write(key, remaining, stored, keeper)

        desired = self._desired(action)
        provider = self._provider(action, desired.kind)

        if action.kind is ActionKind.CREATE:
            request = self._request(desired, stored)
            observed = await self._call(action, provider.create(request))
            created = self._state(action, desired, observed, request.attributes)
            return await self._write(key, stored.with_resource(created), stored, keeper)

        if action.kind is ActionKind.UPDATE:
            prior = self._prior(action)
            request = self._request(desired, stored)
            observed = await self._call(action, provider.update(request, prior))
            updated = self._state(action, desired, observed, request.attributes)
            return await self._write(key, stored.with_resource(updated), stored, keeper)

        return await self._replace(key, action, desired, provider, stored, keeper)

    async def _replace(
        self,
        key: str,
        action: PlanAction,
        desired: ResourceInstance,
        provider: ResourceProvider,
        stored: StateSnapshot,
        keeper: LeaseKeeper,
    ) -> StateSnapshot:
        prior = stored.get(action.address) or self._prior(action)
        old_provider = self._provider(action, prior.kind)

        if action.create_before_destroy:
            request = self._request(desired, stored)
            observed = await self._call(action, provider.create(request))
            # the old object stays recorded as deposed until its delete succeeds
            created = self._state(action, desired, observed, request.attributes)
            stored = await self._write(key, stored.with_resource(created).with_deposed(prior), stored, keeper)
            try:
                await self._call(action, old_provider.delete(prior))
            except ProviderEffectError as e:
                raise IncompleteReplaceError(e, stored) from e
            return await self._write(key, stored.without_deposed(prior), stored, keeper)

        await self._call(action, old_provider.delete(prior))
        stored = await self._write(key, stored.without(action.address), stored, keeper)
        try:
            request = self._request(desired, stored)
            observed = await self._call(action, provider.create(request))
        except ProviderEffectError as e:
            raise IncompleteReplaceError(e, stored) from e
        created = self._state(action, desired, observed, request.attributes)
        return await self._write(key, stored.with_resource(created), stored, keeper)

    async def _refresh_metadata(
        self, key: str, action: PlanAction, stored: StateSnapshot, keeper: LeaseKeeper
    ) -> StateSnapshot:
        prior = stored.get(action.address) or self._prior(action)
        refreshed = self._state(action, self._desired(action), prior.observed, prior.resolved)
        if refreshed == prior:
            return stored
        return await self._write(key, stored.with_resource(refreshed), stored, keeper)

    async def _write(
        self, key: str, snapshot: StateSnapshot, expected: StateSnapshot, keeper: LeaseKeeper
    ) -> StateSnapshot:
        # a process whose lease lapsed must not write
        keeper.ensure_held()
        await keeper.renew_now()
        written = await self.store.write(key, snapshot, expected.digest)
        logger.debug("state_checkpoint", key=key, serial=written.serial)
        return written

    async def _call(self, action: PlanAction, effect: Any) -> Any:
        try:
            return await effect
        except ProviderEffectError:
            raise
        except Exception as e:
            raise ProviderEffectError(
                f"{action.kind.value} of {action.address} failed: {e}",
                address=str(action.address),
            ) from e

    def _provider(self, action: PlanAction, kind: str) -> ResourceProvider:
        try:
            return self.providers.provider_for(kind)
        except KeyError as e:
            raise ProviderEffectError(
                f"No provider for kind '{kind}' ({action.address})", address=str(action.address)
            ) from e

    def _request(self, desired: ResourceInstance, stored: StateSnapshot) -> ProviderRequest:
        attributes = {
            name: resolve_references(value, self._lookup(desired, name, stored))
            for name, value in desired.attributes.items()
        }
        return ProviderRequest(address=desired.address, kind=desired.kind, attributes=attributes)

    def _lookup(self, desired: ResourceInstance, attribute: str, stored: StateSnapshot) -> Any:
        def lookup(address: InstanceAddress, path: str) -> Any:
            state = stored.get(address)
            if state is None:
                if attribute in desired.self_referential and address.template_key == desired.address.template_key:
                    return make_reference(address, path)
                raise ProviderEffectError(
                    f"{desired.address}.{attribute} needs {address}, which has not been applied",
                    address=str(desired.address),
                )
            try:
                return state.value_at(path)
            except KeyError:
                raise ProviderEffectError(
                    f"{desired.address}.{attribute} needs {address}.{path}, which the provider did not report",
                    address=str(desired.address),
                ) from None

        return lookup

    @staticmethod
    def _state(
        action: PlanAction,
        desired: ResourceInstance,
        observed: dict[str, Any],
        resolved: dict[str, Any],
    ) -> ResourceState:
        return ResourceState(
            address=action.address,
            kind=desired.kind,
            attributes=dict(desired.attributes),
            observed=dict(observed or {}),
            resolved=dict(resolved),
            dependencies=tuple(action.dependencies),
            prevent_destroy=desired.lifecycle.prevent_destroy,
            create_before_destroy=desired.lifecycle.create_before_destroy,
        )

    @staticmethod
    def _desired(action: PlanAction) -> ResourceInstance:
        if action.desired is None:
            raise ProviderEffectError(f"{action.kind.value} of {action.address} has no desired state")
        return action.desired

    @staticmethod
    def _prior(action: PlanAction) -> ResourceState:
        if action.prior is None:
            raise ProviderEffectError(f"{action.kind.value} of {action.address} has no recorded state")
        return action.prior

    async def _release(self, key: str, record: LockRecord) -> None:
        try:
            await self.locks.release(key, record.holder, lock_id=record.lock_id)
        except LockNotHeldError:
            # taken over after our lease lapsed; nothing of ours to release
            logger.warning("lock_release_skipped", key=key, holder=record.holder, lock_id=record.lock_id)
