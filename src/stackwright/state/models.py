"""
State snapshot models.

A snapshot is the versioned record of everything applied for one state
key. Its digest covers lineage, serial and resources, so any change made
by another writer is detected by the digest check on write.

Objects replaced with create_before_destroy stay recorded as *deposed*
until their delete succeeds, so a failed delete never loses track of an
object that still exists.
"""

from __future__ import annotations

import hashlib
import json
import uuid
from dataclasses import dataclass, field, replace
from typing import Any

from stackwright.declarations.references import InstanceAddress, lookup_path


@dataclass(frozen=True)
class ResourceState:
    """Recorded state of one applied resource instance.

    ``attributes`` keep reference tokens as declared; ``resolved`` holds
    the attribute values last sent to the provider.
    """

    address: InstanceAddress
    kind: str
    attributes: dict[str, Any] = field(default_factory=dict)
    observed: dict[str, Any] = field(default_factory=dict)
    dependencies: tuple[InstanceAddress, ...] = ()
    prevent_destroy: bool = False
    create_before_destroy: bool = False
    resolved: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "attributes": self.attributes,
            "observed": self.observed,
            "resolved": self.resolved,
            "dependencies": [str(d) for d in self.dependencies],
            "prevent_destroy": self.prevent_destroy,
            "create_before_destroy": self.create_before_destroy,
        }

    @classmethod
    def from_dict(cls, address: str | InstanceAddress, data: dict[str, Any]) -> "ResourceState":
        if isinstance(address, str):
            address = InstanceAddress.parse(address)
        return cls(
            address=address,
            kind=data["kind"],
            attributes=dict(data.get("attributes") or {}),
            observed=dict(data.get("observed") or {}),
            resolved=dict(data.get("resolved") or {}),
            dependencies=tuple(InstanceAddress.parse(d) for d in data.get("dependencies") or ()),
            prevent_destroy=bool(data.get("prevent_destroy", False)),
            create_before_destroy=bool(data.get("create_before_destroy", False)),
        )

    def value_at(self, path: str) -> Any:
        """Observed value at ``path``, falling back to the declared one. Raises KeyError."""
        try:
            return lookup_path(self.observed, path)
        except KeyError:
            return lookup_path(self.attributes, path)


@dataclass(frozen=True)
class StateSnapshot:
    """Versioned set of resource states for one state key."""

    key: str
    lineage: str = ""
    serial: int = 0
    resources: dict[InstanceAddress, ResourceState] = field(default_factory=dict)
    deposed: dict[InstanceAddress, tuple[ResourceState, ...]] = field(default_factory=dict)

    @classmethod
    def empty(cls, key: str) -> "StateSnapshot":
        return cls(key=key)

    @property
    def is_empty(self) -> bool:
        return self.serial == 0 and not self.resources and not self.deposed

    @property
    def digest(self) -> str:
        payload: dict[str, Any] = {
            "lineage": self.lineage,
            "serial": self.serial,
            "resources": {str(a): r.to_dict() for a, r in self.resources.items()},
        }
        # absent when empty so snapshots without deposed objects keep their digest
        if self.deposed:
            payload["deposed"] = self._deposed_dict()
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def get(self, address: InstanceAddress) -> ResourceState | None:
        return self.resources.get(address)

    def lookup(self, address: InstanceAddress, path: str) -> Any:
        """Recorded value of ``address``'s attribute ``path``. Raises KeyError."""
        state = self.resources.get(address)
        if state is None:
            raise KeyError(str(address))
        return state.value_at(path)

    def with_resource(self, resource: ResourceState) -> "StateSnapshot":
        resources = dict(self.resources)
        resources[resource.address] = resource
        return replace(self, resources=resources)

    def without(self, address: InstanceAddress) -> "StateSnapshot":
        resources = dict(self.resources)
        resources.pop(address, None)
        return replace(self, resources=resources)

    def with_deposed(self, resource: ResourceState) -> "StateSnapshot":
        deposed = dict(self.deposed)
        deposed[resource.address] = deposed.get(resource.address, ()) + (resource,)
        return replace(self, deposed=deposed)

    def without_deposed(self, resource: ResourceState) -> "StateSnapshot":
        deposed = dict(self.deposed)
        remaining = list(deposed.get(resource.address, ()))
        matches = [i for i, r in enumerate(remaining) if _canonical(r) == _canonical(resource)]
        if matches:
            del remaining[matches[0]]
        if remaining:
            deposed[resource.address] = tuple(remaining)
        else:
            deposed.pop(resource.address, None)
        return replace(self, deposed=deposed)

    def successor(self, stored: "StateSnapshot") -> "StateSnapshot":
        """``self`` as the next version after ``stored`` (serial + 1)."""
        lineage = stored.lineage or self.lineage or uuid.uuid4().hex
        return replace(self, key=stored.key, lineage=lineage, serial=stored.serial + 1)

    def _deposed_dict(self) -> dict[str, list[dict[str, Any]]]:
        return {str(a): [r.to_dict() for r in self.deposed[a]] for a in sorted(self.deposed)}

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "lineage": self.lineage,
            "serial": self.serial,
            "digest": self.digest,
            "resources": {
                str(a): self.resources[a].to_dict() for a in sorted(self.resources)
            },
            "deposed": self._deposed_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StateSnapshot":
        resources = {}
        for address, body in (data.get("resources") or {}).items():
            state = ResourceState.from_dict(address, body)
            resources[state.address] = state
        deposed = {}
        for address, bodies in (data.get("deposed") or {}).items():
            states = tuple(ResourceState.from_dict(address, body) for body in bodies)
            if states:
                deposed[states[0].address] = states
        return cls(
            key=data["key"],
            lineage=data.get("lineage", ""),
            serial=int(data.get("serial", 0)),
            resources=resources,
            deposed=deposed,
        )


def _canonical(resource: ResourceState) -> str:
    return json.dumps(resource.to_dict(), sort_keys=True, separators=(",", ":"), default=str)
