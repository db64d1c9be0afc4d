"""
Orchestrator facade.

Wires the loader, resolver/expander, graph builder, plan engine and apply
executor together for one declaration file:

    orchestrator = Orchestrator(settings)
    plan = await orchestrator.plan("prod", "prod")
    report = await orchestrator.apply("prod", "prod", plan=plan)
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict

import structlog

from stackwright.config.backends import Backends, build_backends
from stackwright.config.settings import Settings, get_settings
from stackwright.core.errors import ConfigurationError, LockNotHeldError
from stackwright.declarations.loader import load_declarations
from stackwright.declarations.models import Declarations
from stackwright.declarations.profiles import load_profile
from stackwright.declarations.references import InstanceAddress, lookup_path, resolve_references
from stackwright.execution.cancellation import CancellationToken
from stackwright.execution.executor import ApplyExecutor
from stackwright.execution.report import ApplyReport
from stackwright.graph.builder import DependencyGraph, build_graph
from stackwright.graph.expander import CardinalityExpander
from stackwright.graph.models import Expansion
from stackwright.locking.models import LockRecord
from stackwright.planning.engine import PlanEngine
from stackwright.planning.models import Plan
from stackwright.providers.null import NullProvider
from stackwright.providers.registry import ProviderRegistry
from stackwright.state.models import ResourceState

logger = structlog.get_logger()


class Orchestrator:
    """Plan and apply declarations against one configured backend pair."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        backends: Backends | None = None,
        providers: ProviderRegistry | None = None,
        declarations_file: str | Path | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.backends = backends or build_backends(self.settings)
        self.providers = providers or ProviderRegistry(default=NullProvider)
        self.declarations_file = Path(declarations_file or self.settings.declarations_file)
        self._declarations: Declarations | None = None
        self._prepared = False

    @property
    def declarations(self) -> Declarations:
        if self._declarations is None:
            self._declarations = load_declarations(self.declarations_file)
        return self._declarations

    def load(self, profile: str) -> Expansion:
        """Load, resolve and expand the declarations for ``profile``."""
        return CardinalityExpander(self.declarations).expand(
            load_profile(self.declarations_file, profile)
        )

    def graph(self, expansion: Expansion) -> DependencyGraph:
        return build_graph(expansion)

    async def _prepare(self) -> None:
        if not self._prepared:
            await self.backends.prepare()
            self._prepared = True

    async def plan(self, key: str, profile: str) -> Plan:
        expansion = self.load(profile)
        graph = self.graph(expansion)
        await self._prepare()
        snapshot = await self.backends.store.read(key)
        return PlanEngine(self.declarations.kinds).plan(expansion, graph, snapshot, key, profile=expansion.profile.name)

    async def apply(
        self,
        key: str,
        profile: str,
        *,
        plan: Plan | None = None,
        holder: str | None = None,
        cancel: CancellationToken | None = None,
        lock_timeout: float | None = None,
        lease_seconds: float | None = None,
    ) -> ApplyReport:
        """
        Apply a saved plan, or plan and apply in one locked run.

        Raises:
            LockBusyError: If another holder has the lock
            StalePlanError: If a saved plan no longer matches state
        """
        holder = holder or self.settings.holder_identity()
        lease = lease_seconds or self.settings.lock_lease_seconds
        timeout = self.settings.lock_timeout_seconds if lock_timeout is None else lock_timeout
        locks = self.backends.locks
        await self._prepare()

        lock: LockRecord | None = None
        if plan is not None:
            if plan.key != key:
                raise ConfigurationError(
                    f"Plan was computed for state '{plan.key}', not '{key}'",
                    {"key": key},
                )
        else:
            # plan under the lock so nobody moves state in between
            lock = await locks.acquire(key, holder, lease, timeout=timeout, info=f"plan+apply profile={profile}")
            try:
                plan = await self.plan(key, profile)
            except BaseException:
                await locks.release(key, holder, lock_id=lock.lock_id)
                raise

        executor = ApplyExecutor(self.backends.store, locks, self.providers)
        return await executor.apply(
            plan,
            holder,
            lock=lock,
            cancel=cancel,
            lease_seconds=lease,
            lock_timeout=timeout,
        )

    async def unlock(self, key: str, holder: str, *, lock_id: str | None = None) -> LockRecord:
        """
        Force-release ``key`` if it is currently held by ``holder``.

        Only the lease that was checked is removed (``lock_id`` pins the one
        the operator was shown); a lock that changed hands stays in place.

        Raises:
            LockNotHeldError: If unlocked or held by someone else
        """
        await self._prepare()
        current = await self.backends.locks.status(key)
        if current is None:
            raise LockNotHeldError(f"State '{key}' is not locked", {"key": key})
        if current.holder != holder:
            raise LockNotHeldError(
                f"State '{key}' is locked by {current.holder}, not {holder}",
                {"key": key, "holder": current.holder},
            )
        released = await self.backends.locks.force_release(key, holder, lock_id=lock_id or current.lock_id)
        if released is None:
            raise LockNotHeldError(
                f"Lock on '{key}' changed hands before it could be released; check it again",
                {"key": key, "holder": holder},
            )
        return released

    async def lock_status(self, key: str) -> LockRecord | None:
        await self._prepare()
        return await self.backends.locks.status(key)

    async def outputs(self, key: str, profile: str) -> Dict[str, Dict[str, Any]]:
        """Module outputs with references resolved against recorded state."""
        expansion = self.load(profile)
        await self._prepare()
        snapshot = await self.backends.store.read(key)

        def lookup(address: InstanceAddress, path: str) -> Any:
            state = snapshot.get(address)
            if state is None:
                return None
            for source in (state.observed, state.attributes):
                try:
                    return lookup_path(source, path)
                except KeyError:
                    continue
            return None

        reported = expansion.reported_outputs(mask_sensitive=True)
        return {
            module: {name: resolve_references(value, lookup) for name, value in values.items()}
            for module, values in reported.items()
        }

    async def state_keys(self) -> list[str]:
        await self._prepare()
        return await self.backends.store.list_keys()

    async def state_resources(self, key: str) -> Dict[InstanceAddress, ResourceState]:
        await self._prepare()
        snapshot = await self.backends.store.read(key)
        return dict(sorted(snapshot.resources.items()))

    async def deposed_resources(self, key: str) -> list[ResourceState]:
        """Replaced objects whose delete has not succeeded yet."""
        await self._prepare()
        snapshot = await self.backends.store.read(key)
        return [state for address in sorted(snapshot.deposed) for state in snapshot.deposed[address]]
