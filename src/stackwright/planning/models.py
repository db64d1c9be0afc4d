"""Plan models and their JSON form for saved plan files."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List

from stackwright.declarations.models import LifecyclePolicy
from stackwright.declarations.references import InstanceAddress
from stackwright.graph.models import ResourceInstance
from stackwright.state.models import ResourceState

PLAN_FORMAT_VERSION = 1
MASK = "(sensitive)"
KNOWN_AFTER_APPLY = "(known after apply)"


class ActionKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NOOP = "noop"


@dataclass(frozen=True)
class AttributeChange:
    name: str
    before: Any = None
    after: Any = None
    sensitive: bool = False

    def to_dict(self) -> dict[str, Any]:
        if self.sensitive:
            return {"name": self.name, "before": MASK, "after": MASK, "sensitive": True}
        return {"name": self.name, "before": self.before, "after": self.after, "sensitive": False}


@dataclass(frozen=True)
class PlanAction:
    """One step of a plan for one instance address."""

    address: InstanceAddress
    kind: ActionKind
    changes: tuple[AttributeChange, ...] = ()
    desired: ResourceInstance | None = None
    prior: ResourceState | None = None
    create_before_destroy: bool = False
    dependencies: tuple[InstanceAddress, ...] = ()
    # deletes a deposed object rather than the one recorded at ``address``
    deposed: bool = False

    @property
    def resource_kind(self) -> str:
        if self.desired is not None:
            return self.desired.kind
        return self.prior.kind if self.prior is not None else ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": str(self.address),
            "action": self.kind.value,
            "changes": [c.to_dict() for c in self.changes],
            "desired": _instance_to_dict(self.desired) if self.desired else None,
            "prior": self.prior.to_dict() if self.prior else None,
            "create_before_destroy": self.create_before_destroy,
            "dependencies": [str(d) for d in self.dependencies],
            "deposed": self.deposed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlanAction":
        address = InstanceAddress.parse(data["address"])
        return cls(
            address=address,
            kind=ActionKind(data["action"]),
            changes=tuple(AttributeChange(**c) for c in data.get("changes") or ()),
            desired=_instance_from_dict(address, data["desired"]) if data.get("desired") else None,
            prior=ResourceState.from_dict(address, data["prior"]) if data.get("prior") else None,
            create_before_destroy=bool(data.get("create_before_destroy", False)),
            dependencies=tuple(InstanceAddress.parse(d) for d in data.get("dependencies") or ()),
            deposed=bool(data.get("deposed", False)),
        )


@dataclass(frozen=True)
class Plan:
    """Ordered actions computed against one snapshot version."""

    key: str
    profile: str
    digest: str
    serial: int
    actions: tuple[PlanAction, ...] = ()
    outputs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @property
    def changes(self) -> List[PlanAction]:
        return [a for a in self.actions if a.kind is not ActionKind.NOOP]

    @property
    def has_changes(self) -> bool:
        return bool(self.changes)

    def summary(self) -> Dict[str, int]:
        counts = {kind.value: 0 for kind in ActionKind}
        for action in self.actions:
            counts[action.kind.value] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "format_version": PLAN_FORMAT_VERSION,
            "key": self.key,
            "profile": self.profile,
            "digest": self.digest,
            "serial": self.serial,
            "summary": self.summary(),
            "actions": [a.to_dict() for a in self.actions],
            "outputs": self.outputs,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Plan":
        version = data.get("format_version")
        if version != PLAN_FORMAT_VERSION:
            raise ValueError(f"Unsupported plan format version: {version!r}")
        return cls(
            key=data["key"],
            profile=data["profile"],
            digest=data["digest"],
            serial=int(data["serial"]),
            actions=tuple(PlanAction.from_dict(a) for a in data.get("actions") or ()),
            outputs=dict(data.get("outputs") or {}),
        )


def _instance_to_dict(instance: ResourceInstance) -> dict[str, Any]:
    return {
        "kind": instance.kind,
        "attributes": instance.attributes,
        "lifecycle": {
            "create_before_destroy": instance.lifecycle.create_before_destroy,
            "prevent_destroy": instance.lifecycle.prevent_destroy,
            "ignore_on_update": sorted(instance.lifecycle.ignore_on_update),
        },
        "self_referential": sorted(instance.self_referential),
        "order_key": list(instance.order_key),
        "sensitive_attributes": sorted(instance.sensitive_attributes),
    }


def _instance_from_dict(address: InstanceAddress, data: dict[str, Any]) -> ResourceInstance:
    lifecycle = data.get("lifecycle") or {}
    return ResourceInstance(
        address=address,
        kind=data["kind"],
        attributes=dict(data.get("attributes") or {}),
        lifecycle=LifecyclePolicy(
            create_before_destroy=bool(lifecycle.get("create_before_destroy", False)),
            prevent_destroy=bool(lifecycle.get("prevent_destroy", False)),
            ignore_on_update=frozenset(lifecycle.get("ignore_on_update") or ()),
        ),
        self_referential=frozenset(data.get("self_referential") or ()),
        order_key=tuple(data.get("order_key") or (0, 0, 0)),  # type: ignore[arg-type]
        sensitive_attributes=frozenset(data.get("sensitive_attributes") or ()),
    )
