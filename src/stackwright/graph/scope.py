"""Evaluation scopes used while resolving and expanding declarations."""

from __future__ import annotations

from typing import Any

from stackwright.core.errors import ExpressionError
from stackwright.declarations.expressions import Namespace, Splat
from stackwright.declarations.references import ABSENT, InstanceAddress, make_reference


class SensitivityTracker:
    """Records whether an evaluation read a sensitive value."""

    def __init__(self) -> None:
        self.hit = False

    def reset(self) -> None:
        self.hit = False


class ExpansionScope:
    """Maps root identifiers (var, param, module, resource, count) to values."""

    def __init__(self, roots: dict[str, Any], context: str) -> None:
        self._roots = roots
        self.context = context

    def root(self, name: str) -> Any:
        if name not in self._roots:
            raise ExpressionError(f"'{name}' is not available in {self.context}")
        return self._roots[name]


class InputNamespace(Namespace):
    """``var.*`` or ``param.*``."""

    def __init__(
        self,
        label: str,
        values: dict[str, Any],
        sensitive: set[str] | None = None,
        tracker: SensitivityTracker | None = None,
    ) -> None:
        self.label = label
        self._values = values
        self._sensitive = sensitive or set()
        self._tracker = tracker

    def attr(self, name: str) -> Any:
        if name not in self._values:
            raise ExpressionError(f"Unknown {self.label} '{name}'")
        if name in self._sensitive and self._tracker is not None:
            self._tracker.hit = True
        return self._values[name]


class ModulesNamespace(Namespace):
    """``module.<name>.<output>``."""

    label = "module"

    def __init__(
        self,
        outputs: dict[str, dict[str, Any]],
        sensitive: set[tuple[str, str]] | None = None,
        tracker: SensitivityTracker | None = None,
    ) -> None:
        self._outputs = outputs
        self._sensitive = sensitive or set()
        self._tracker = tracker

    def attr(self, name: str) -> Any:
        if name not in self._outputs:
            raise ExpressionError(f"Module '{name}' is not resolved yet or does not exist")
        return _ModuleOutputs(name, self._outputs[name], self._sensitive, self._tracker)


class _ModuleOutputs(Namespace):
    def __init__(
        self,
        module: str,
        values: dict[str, Any],
        sensitive: set[tuple[str, str]],
        tracker: SensitivityTracker | None,
    ) -> None:
        self.label = f"module.{module}"
        self._module = module
        self._values = values
        self._sensitive = sensitive
        self._tracker = tracker

    def attr(self, name: str) -> Any:
        if name not in self._values:
            raise ExpressionError(f"Module '{self._module}' has no output '{name}'")
        if (self._module, name) in self._sensitive and self._tracker is not None:
            self._tracker.hit = True
        return self._values[name]


class ResourceNamespace(Namespace):
    """``resource.<template>`` within one module."""

    label = "resource"

    def __init__(self, module: str, cardinality: dict[str, int]) -> None:
        self._module = module
        self._cardinality = cardinality

    def attr(self, name: str) -> Any:
        if name not in self._cardinality:
            raise ExpressionError(f"Module '{self._module}' has no resource '{name}'")
        return TemplateRef(self._module, name, self._cardinality[name])


class TemplateRef(Namespace):
    def __init__(self, module: str, template: str, count: int) -> None:
        self.label = f"resource.{template}"
        self.module = module
        self.template = template
        self.count = count

    def index(self, key: Any) -> Any:
        if not isinstance(key, int) or isinstance(key, bool):
            raise ExpressionError(f"Index into {self.label} must be an integer")
        if key < 0 or key >= self.count:
            return ABSENT
        return InstanceRef(InstanceAddress(self.module, self.template, key))

    def attr(self, name: str) -> Any:
        # resource.vpc.id is shorthand for resource.vpc[0].id
        instance = self.index(0)
        if instance is ABSENT:
            return ABSENT
        return instance.attr(name)

    def splat(self) -> Splat:
        return Splat(
            [InstanceRef(InstanceAddress(self.module, self.template, i)) for i in range(self.count)]
        )


class InstanceRef(Namespace):
    def __init__(self, address: InstanceAddress) -> None:
        self.label = f"resource.{address.template}[{address.index}]"
        self.address = address

    def attr(self, name: str) -> Any:
        return AttributeRef(self.address, name)


class AttributeRef(Namespace):
    """Attribute of an instance; known only after apply."""

    def __init__(self, address: InstanceAddress, path: str) -> None:
        self.label = f"{address}.{path}"
        self.address = address
        self.path = path

    def attr(self, name: str) -> Any:
        return AttributeRef(self.address, f"{self.path}.{name}")

    def index(self, key: Any) -> Any:
        if not isinstance(key, int) or isinstance(key, bool):
            raise ExpressionError(f"Index into {self.label} must be an integer")
        return AttributeRef(self.address, f"{self.path}.{key}")

    def resolve(self) -> Any:
        return make_reference(self.address, self.path)


class CountNamespace(Namespace):
    label = "count"

    def __init__(self, index: int) -> None:
        self._index = index

    def attr(self, name: str) -> Any:
        if name != "index":
            raise ExpressionError(f"Unknown attribute 'count.{name}' (only count.index exists)")
        return self._index
