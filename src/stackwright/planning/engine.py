"""
Diff/plan engine.

Compares the desired instances of an expansion with a state snapshot:

    not in state                         -> create
    equal (after ignore_on_update)       -> noop
    kind changed or immutable attr diff  -> replace
    other attribute diff                 -> update
    in state but not desired             -> delete
    deposed object                       -> delete

Attributes holding reference tokens are also compared by value: each is
resolved against the snapshot and checked against what was last sent to
the provider. A reference into an instance this plan creates or replaces
is known only after apply and always counts as a change.

Creates, updates and replaces follow the graph's topological order.
Deletes come last, dependents before their dependencies.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, FrozenSet, Optional

import structlog

from stackwright.core.errors import DestroyBlockedError
from stackwright.declarations.models import ResourceKindSchema
from stackwright.declarations.references import InstanceAddress, iter_references, resolve_references
from stackwright.graph.builder import DependencyGraph
from stackwright.graph.models import Expansion, ResourceInstance
from stackwright.graph.toposort import topological_order
from stackwright.planning.models import KNOWN_AFTER_APPLY, ActionKind, AttributeChange, Plan, PlanAction
from stackwright.state.models import ResourceState, StateSnapshot

logger = structlog.get_logger()

# address -> attribute names this plan changes there; None means all of them
Pending = Dict[InstanceAddress, Optional[FrozenSet[str]]]


class PlanEngine:
    def __init__(self, schemas: dict[str, ResourceKindSchema] | None = None) -> None:
        self.schemas = schemas or {}

    def plan(
        self,
        expansion: Expansion,
        graph: DependencyGraph,
        snapshot: StateSnapshot,
        key: str,
        profile: str | None = None,
    ) -> Plan:
        """
        Compute the plan that takes ``snapshot`` to the desired state.

        Raises:
            DestroyBlockedError: If a delete or replace would destroy a
                resource marked prevent_destroy
        """
        actions: list[PlanAction] = []
        pending: Pending = {}
        for address in graph.order:
            instance = graph.instances[address]
            dependencies = tuple(graph.dependencies_of(address))
            action = self.diff(instance, snapshot.get(address), dependencies, snapshot=snapshot, pending=pending)
            if action.kind in (ActionKind.CREATE, ActionKind.REPLACE):
                pending[address] = None
            elif action.kind is ActionKind.UPDATE:
                pending[address] = frozenset(change.name for change in action.changes)
            actions.append(action)

        blocked = [
            str(a.address)
            for a in actions
            if a.kind is ActionKind.REPLACE and a.prior is not None and a.prior.prevent_destroy
        ]
        if blocked:
            raise DestroyBlockedError(blocked, reason="replace")

        orphans = {a: r for a, r in snapshot.resources.items() if a not in graph.instances}
        deposed = [(a, r) for a in sorted(snapshot.deposed) for r in snapshot.deposed[a]]
        protected = sorted(
            {str(a) for a, r in orphans.items() if r.prevent_destroy}
            | {str(a) for a, r in deposed if r.prevent_destroy}
        )
        if protected:
            raise DestroyBlockedError(protected)

        for _, prior in deposed:
            actions.append(_delete(prior, deposed=True))
        for address in delete_order(orphans):
            actions.append(_delete(orphans[address]))

        plan = Plan(
            key=key,
            profile=profile or expansion.profile.name,
            digest=snapshot.digest,
            serial=snapshot.serial,
            actions=tuple(actions),
            outputs=expansion.reported_outputs(mask_sensitive=True),
        )
        logger.info("plan_computed", key=key, serial=snapshot.serial, **plan.summary())
        return plan

    def diff(
        self,
        instance: ResourceInstance,
        prior: ResourceState | None,
        dependencies: tuple[InstanceAddress, ...] = (),
        *,
        snapshot: StateSnapshot | None = None,
        pending: Pending | None = None,
    ) -> PlanAction:
        """Classify one desired instance against its recorded state."""
        sensitive = instance.sensitive_attributes
        if prior is None:
            return PlanAction(
                address=instance.address,
                kind=ActionKind.CREATE,
                changes=tuple(
                    AttributeChange(name, None, value, name in sensitive)
                    for name, value in sorted(instance.attributes.items())
                ),
                desired=instance,
                create_before_destroy=instance.lifecycle.create_before_destroy,
                dependencies=dependencies,
            )

        effective = effective_attributes(instance, prior)
        desired = replace(instance, attributes=effective)
        changed = {
            name: AttributeChange(name, prior.attributes.get(name), effective.get(name), name in sensitive)
            for name in set(effective) | set(prior.attributes)
            if name not in effective
            or name not in prior.attributes
            or effective[name] != prior.attributes[name]
        }
        if snapshot is not None:
            for change in self._reference_changes(instance, prior, snapshot, pending or {}):
                changed.setdefault(change.name, change)
        changes = tuple(changed[name] for name in sorted(changed))

        if instance.kind != prior.kind:
            kind = ActionKind.REPLACE
        elif not changes:
            kind = ActionKind.NOOP
        elif self._touches_immutable(instance.kind, changes):
            kind = ActionKind.REPLACE
        else:
            kind = ActionKind.UPDATE

        return PlanAction(
            address=instance.address,
            kind=kind,
            changes=changes,
            desired=desired,
            prior=prior,
            create_before_destroy=instance.lifecycle.create_before_destroy,
            dependencies=dependencies,
        )

    def _reference_changes(
        self,
        instance: ResourceInstance,
        prior: ResourceState,
        snapshot: StateSnapshot,
        pending: Pending,
    ) -> list[AttributeChange]:
        """Referencing attributes whose value differs from what the provider last received."""
        changes = []
        for name, value in sorted(instance.attributes.items()):
            if name in instance.lifecycle.ignore_on_update or name not in prior.resolved:
                continue
            # resolved against siblings as they get applied, so never comparable
            if name in instance.self_referential:
                continue
            references = list(iter_references(value))
            if not references:
                continue
            sensitive = name in instance.sensitive_attributes
            before = prior.resolved[name]
            if any(_is_pending(pending, address, path) for address, path in references):
                changes.append(AttributeChange(name, before, KNOWN_AFTER_APPLY, sensitive))
                continue
            try:
                current = resolve_references(value, snapshot.lookup)
            except KeyError:
                changes.append(AttributeChange(name, before, KNOWN_AFTER_APPLY, sensitive))
                continue
            if current != before:
                changes.append(AttributeChange(name, before, current, sensitive))
        return changes

    def _touches_immutable(self, kind: str, changes: tuple[AttributeChange, ...]) -> bool:
        schema = self.schemas.get(kind)
        if schema is None:
            return False
        return any(change.name in schema.immutable for change in changes)


def _is_pending(pending: Pending, address: InstanceAddress, path: str) -> bool:
    if address not in pending:
        return False
    names = pending[address]
    return names is None or path.split(".", 1)[0] in names


def _delete(prior: ResourceState, deposed: bool = False) -> PlanAction:
    return PlanAction(
        address=prior.address,
        kind=ActionKind.DELETE,
        changes=tuple(AttributeChange(name, before, None) for name, before in sorted(prior.attributes.items())),
        prior=prior,
        dependencies=prior.dependencies,
        deposed=deposed,
    )


def effective_attributes(instance: ResourceInstance, prior: ResourceState) -> dict[str, Any]:
    """Desired attributes with ignore_on_update names pinned to their recorded values."""
    effective = dict(instance.attributes)
    for name in instance.lifecycle.ignore_on_update:
        if name in prior.attributes:
            effective[name] = prior.attributes[name]
        else:
            effective.pop(name, None)
    return effective


def delete_order(resources: dict[InstanceAddress, ResourceState]) -> list[InstanceAddress]:
    """Reverse topological order over recorded dependencies: dependents first."""
    successors: dict[InstanceAddress, list[InstanceAddress]] = {a: [] for a in resources}
    for address, state in resources.items():
        for dependency in state.dependencies:
            if dependency in resources:
                successors[dependency].append(address)
    order = topological_order(sorted(resources), successors, key=lambda a: a)
    return list(reversed(order))
