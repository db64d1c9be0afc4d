"""
Cardinality expander.

Second pass: visits modules in dependency order, evaluates each
template's cardinality once and renders one ResourceInstance per index.

    count: true          -> 1 instance
    count: false         -> 0 instances
    count: 3             -> instances [0], [1], [2]
    count: ${var.n * 2}  -> evaluated against var, param and module

References into a template with zero instances (or past its last index)
evaluate to ABSENT. ABSENT may flow into module outputs and wired
inputs, but an existing instance may never consume it.
"""

from __future__ import annotations

from typing import Any

import structlog

from stackwright.core.errors import ExpressionError, LoadError
from stackwright.declarations.expressions import parse_bare, render
from stackwright.declarations.models import Declarations, ModuleDeclaration, Profile, ResourceTemplate
from stackwright.declarations.references import ABSENT, InstanceAddress, contains_absent, contains_reference
from stackwright.graph.models import Expansion, ResourceInstance
from stackwright.graph.resolver import ReferenceResolver, locate
from stackwright.graph.scope import (
    CountNamespace,
    ExpansionScope,
    InputNamespace,
    ModulesNamespace,
    ResourceNamespace,
    SensitivityTracker,
)

logger = structlog.get_logger()


class CardinalityExpander:
    """Expands declarations into concrete, addressed resource instances."""

    def __init__(self, declarations: Declarations):
        self.declarations = declarations
        self.resolver = ReferenceResolver(declarations)

    def expand(self, profile: Profile) -> Expansion:
        """
        Resolve and expand all modules for one profile.

        Raises:
            LoadError: Dangling references, invalid cardinality, absent values
                consumed by an existing instance
            CycleError: Module-level cycle
            ValidationError: Parameter or input type/validator failures
        """
        self.resolver.check_references()
        module_order = self.resolver.module_order()
        parameters = self.resolver.resolve_parameters(profile)
        sensitive_params = self.resolver.sensitive_parameters

        outputs: dict[str, dict[str, Any]] = {}
        sensitive_outputs: set[tuple[str, str]] = set()
        module_inputs: dict[str, dict[str, Any]] = {}
        cardinality: dict[tuple[str, str], int] = {}
        instances: dict[InstanceAddress, ResourceInstance] = {}
        module_ordinals = {m.name: i for i, m in enumerate(self.declarations.modules)}

        for name in module_order:
            module = self.declarations.module(name)
            assert module is not None
            inputs, sensitive_inputs = self.resolver.resolve_inputs(
                module, parameters, outputs, sensitive_outputs
            )
            module_inputs[name] = inputs

            tracker = SensitivityTracker()
            roots = {
                "var": InputNamespace("var", inputs, sensitive_inputs, tracker),
                "param": InputNamespace("param", parameters, sensitive_params, tracker),
                "module": ModulesNamespace(outputs, sensitive_outputs, tracker),
            }

            counts: dict[str, int] = {}
            for template in module.resources:
                counts[template.id] = self._cardinality(template, ExpansionScope(roots, "count"))
                cardinality[(name, template.id)] = counts[template.id]

            resource_root = ResourceNamespace(name, counts)
            for template_ordinal, template in enumerate(module.resources):
                for index in range(counts[template.id]):
                    instance = self._render_instance(
                        template,
                        index,
                        dict(roots, resource=resource_root, count=CountNamespace(index)),
                        tracker,
                        (module_ordinals[name], template_ordinal, index),
                    )
                    instances[instance.address] = instance

            outputs[name] = self._render_outputs(
                module,
                dict(roots, resource=resource_root),
                tracker,
                sensitive_outputs,
            )

        logger.debug(
            "declarations_expanded",
            profile=profile.name,
            modules=len(module_order),
            instances=len(instances),
        )
        return Expansion(
            declarations=self.declarations,
            profile=profile,
            parameters=parameters,
            module_order=module_order,
            module_edges=self.resolver.module_edges(),
            module_inputs=module_inputs,
            outputs=outputs,
            cardinality=cardinality,
            instances=instances,
            sensitive_outputs=sensitive_outputs,
        )

    def _cardinality(self, template: ResourceTemplate, scope: ExpansionScope) -> int:
        where = f"{template.qualified_id}.count"
        expression = parse_bare(template.count)
        if expression is None:
            return 1
        try:
            value = expression.evaluate(scope)
        except ExpressionError as e:
            raise locate(e, where) from e
        return cardinality_of(value, where)

    def _render_instance(
        self,
        template: ResourceTemplate,
        index: int,
        roots: dict[str, Any],
        tracker: SensitivityTracker,
        order_key: tuple[int, int, int],
    ) -> ResourceInstance:
        address = InstanceAddress(template.module, template.id, index)
        scope = ExpansionScope(roots, context=f"attributes of {address}")

        attributes: dict[str, Any] = {}
        sensitive: set[str] = set()
        for key, value in template.attributes.items():
            tracker.reset()
            try:
                rendered = render(value, scope)
            except ExpressionError as e:
                raise locate(e, f"{address}.{key}") from e
            if contains_absent(rendered):
                raise LoadError(
                    f"{address}.{key} uses a value that does not exist in this profile "
                    f"(a resource with zero instances or an index past the last one)",
                    {"address": str(address), "attribute": key},
                )
            attributes[key] = rendered
            if tracker.hit:
                sensitive.add(key)

        return ResourceInstance(
            address=address,
            kind=template.kind,
            attributes=attributes,
            lifecycle=template.lifecycle,
            self_referential=template.self_referential,
            order_key=order_key,
            sensitive_attributes=frozenset(sensitive),
        )

    def _render_outputs(
        self,
        module: ModuleDeclaration,
        roots: dict[str, Any],
        tracker: SensitivityTracker,
        sensitive_outputs: set[tuple[str, str]],
    ) -> dict[str, Any]:
        scope = ExpansionScope(roots, context=f"outputs of module '{module.name}'")
        rendered: dict[str, Any] = {}
        for key, value in module.outputs.items():
            tracker.reset()
            try:
                rendered[key] = render(value, scope)
            except ExpressionError as e:
                raise locate(e, f"module.{module.name}.outputs.{key}") from e
            if tracker.hit:
                sensitive_outputs.add((module.name, key))
        return rendered


def cardinality_of(value: Any, where: str) -> int:
    """
    Convert an evaluated cardinality to an instance count.

    Raises:
        LoadError: For negative, non-integral, absent or unknown values
    """
    if value is ABSENT:
        raise LoadError(f"{where} evaluated to an absent value")
    if contains_reference(value):
        raise LoadError(f"{where} depends on a value that is not known until apply")
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int):
        raise LoadError(f"{where} must evaluate to a boolean or a whole number, got {value!r}")
    if value < 0:
        raise LoadError(f"{where} must not be negative, got {value}")
    return value


def expand(declarations: Declarations, profile: Profile) -> Expansion:
    return CardinalityExpander(declarations).expand(profile)
