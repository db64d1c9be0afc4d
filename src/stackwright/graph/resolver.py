"""
Reference resolver.

First pass over loaded declarations:

1. Static reference checks: every ``var``, ``param``, ``module`` and
   ``resource`` reference names something that exists and is allowed in
   the field it appears in.
2. Module-level edges from ``module.X`` references and ``depends_on``;
   modules are ordered topologically, ties broken by declaration order.
3. Top-level parameters are resolved from the profile, type checked and
   validated.
4. Module inputs are resolved (wiring, same-named parameter, default) as
   each module is visited in order.
"""

from __future__ import annotations

from typing import Any, Iterable

import structlog

from stackwright.core.errors import CycleError, ExpressionError, LoadError, ValidationError
from stackwright.declarations.expressions import (
    AbsentValueError,
    Expression,
    ReferencePath,
    UnknownValueError,
    compile_value,
    parse_bare,
    render,
)
from stackwright.declarations.models import Declarations, ModuleDeclaration, ParameterSpec, Profile
from stackwright.declarations.references import contains_absent, contains_reference
from stackwright.graph.scope import (
    ExpansionScope,
    InputNamespace,
    ModulesNamespace,
    SensitivityTracker,
)
from stackwright.graph.toposort import topological_order

logger = structlog.get_logger()

# Roots allowed in each kind of field
_ROOTS = {
    "wiring": {"param", "module"},
    "count": {"var", "param", "module"},
    "attribute": {"var", "param", "module", "resource", "count"},
    "output": {"var", "param", "module", "resource"},
}


def locate(error: ExpressionError, where: str) -> ExpressionError:
    """Copy of an expression error prefixed with its location."""
    return type(error)(f"{where}: {error.message}", error.details)


class ReferenceResolver:
    """Resolves parameters, module order and module inputs."""

    def __init__(self, declarations: Declarations):
        self.declarations = declarations
        self._ordinals = {m.name: i for i, m in enumerate(declarations.modules)}

    # -- static checks ------------------------------------------------------

    def check_references(self) -> None:
        """
        Verify every reference statically.

        Raises:
            LoadError: For dangling or misplaced references
            CycleError: When a module reads its own outputs
        """
        for module in self.declarations.modules:
            for spec in module.inputs:
                if spec.is_wired:
                    self._check_value(module, spec.value, "wiring", f"module.{module.name}.inputs.{spec.name}")
            for template in module.resources:
                where = f"{template.qualified_id}"
                self._check_expression(module, parse_bare(template.count), "count", f"{where}.count")
                self._check_value(module, template.attributes, "attribute", f"{where}.attributes")
            for name, value in module.outputs.items():
                self._check_value(module, value, "output", f"module.{module.name}.outputs.{name}")

    def _check_value(self, module: ModuleDeclaration, value: Any, context: str, where: str) -> None:
        for expression in compile_value(value):
            self._check_expression(module, expression, context, where)

    def _check_expression(
        self,
        module: ModuleDeclaration,
        expression: Expression | None,
        context: str,
        where: str,
    ) -> None:
        if expression is None:
            return
        for ref in expression.references():
            self._check_reference(module, ref, context, where)

    def _check_reference(
        self, module: ModuleDeclaration, ref: ReferencePath, context: str, where: str
    ) -> None:
        allowed = _ROOTS[context]
        if ref.root not in allowed:
            raise LoadError(
                f"{where}: '{ref}' is not allowed here (allowed: {', '.join(sorted(allowed))})"
            )
        first = ref.parts[0] if ref.parts else None
        if not isinstance(first, str) or first == "*":
            raise LoadError(f"{where}: '{ref}' must name a {ref.root} entry")

        if ref.root == "var" and module.input(first) is None:
            raise LoadError(f"{where}: module '{module.name}' has no input '{first}'")
        if ref.root == "param" and self.declarations.parameter(first) is None:
            raise LoadError(f"{where}: unknown parameter '{first}'")
        if ref.root == "count" and first != "index":
            raise LoadError(f"{where}: only count.index is available")
        if ref.root == "resource" and module.template(first) is None:
            raise LoadError(f"{where}: module '{module.name}' has no resource '{first}'")
        if ref.root == "module":
            if first == module.name:
                raise CycleError([module.name, module.name], scope="module")
            target = self.declarations.module(first)
            if target is None:
                raise LoadError(f"{where}: unknown module '{first}'")
            output = ref.parts[1] if len(ref.parts) > 1 else None
            if not isinstance(output, str) or output == "*":
                raise LoadError(f"{where}: '{ref}' must name an output of module '{first}'")
            if output not in target.outputs:
                raise LoadError(f"{where}: module '{first}' has no output '{output}'")

    # -- module ordering ----------------------------------------------------

    def module_edges(self) -> list[tuple[str, str]]:
        """(upstream, downstream) pairs in first-seen order."""
        edges: list[tuple[str, str]] = []
        for module in self.declarations.modules:
            upstream: list[str] = list(module.depends_on)
            upstream.extend(_referenced_modules(module))
            for name in upstream:
                edge = (name, module.name)
                if name != module.name and edge not in edges:
                    edges.append(edge)
        return edges

    def module_order(self) -> list[str]:
        """
        Topological module order, ties broken by declaration order.

        Raises:
            CycleError: naming the full module cycle
        """
        successors: dict[str, list[str]] = {name: [] for name in self._ordinals}
        for upstream, downstream in self.module_edges():
            successors[upstream].append(downstream)
        return topological_order(
            self.declarations.module_names,
            successors,
            key=self._ordinals.__getitem__,
            scope="module",
        )

    # -- parameters ---------------------------------------------------------

    @property
    def sensitive_parameters(self) -> set[str]:
        return {p.name for p in self.declarations.parameters if p.sensitive}

    def resolve_parameters(self, profile: Profile) -> dict[str, Any]:
        """
        Resolve top-level parameters from a profile.

        Raises:
            ValidationError: For unknown profile keys, missing values,
                type mismatches and failed validators
        """
        declared = {p.name for p in self.declarations.parameters}
        unknown = sorted(set(profile.parameters) - declared)
        if unknown:
            raise ValidationError(
                f"Profile '{profile.name}' sets undeclared parameters: {', '.join(unknown)}",
                {"profile": profile.name},
            )

        values: dict[str, Any] = {}
        for spec in self.declarations.parameters:
            if spec.name in profile.parameters:
                value = profile.parameters[spec.name]
            elif spec.has_default:
                value = spec.default
            else:
                raise ValidationError(
                    f"Parameter '{spec.name}' has no value in profile '{profile.name}' and no default",
                    {"profile": profile.name},
                )
            check_type(spec, value, f"param.{spec.name}")
            values[spec.name] = value

        for spec in self.declarations.parameters:
            run_validator(spec, values[spec.name], f"param.{spec.name}", {"param": values})

        logger.debug("parameters_resolved", profile=profile.name, count=len(values))
        return values

    # -- module inputs ------------------------------------------------------

    def resolve_inputs(
        self,
        module: ModuleDeclaration,
        parameters: dict[str, Any],
        outputs: dict[str, dict[str, Any]],
        sensitive_outputs: set[tuple[str, str]],
    ) -> tuple[dict[str, Any], set[str]]:
        """
        Resolve one module's inputs.

        Precedence: wiring expression, same-named top-level parameter,
        default. Wiring is always evaluated, even when the input only feeds
        zero-cardinality templates.

        Returns:
            (input values, names of inputs carrying sensitive data)
        """
        tracker = SensitivityTracker()
        sensitive_params = self.sensitive_parameters
        scope = ExpansionScope(
            {
                "param": InputNamespace("param", parameters, sensitive_params, tracker),
                "module": ModulesNamespace(outputs, sensitive_outputs, tracker),
            },
            context=f"inputs of module '{module.name}'",
        )

        values: dict[str, Any] = {}
        sensitive: set[str] = set()
        for spec in module.inputs:
            where = f"module.{module.name}.inputs.{spec.name}"
            tracker.reset()
            if spec.is_wired:
                try:
                    value = render(spec.value, scope)
                except ExpressionError as e:
                    raise locate(e, where) from e
                from_sensitive = tracker.hit
            elif spec.name in parameters:
                value = parameters[spec.name]
                from_sensitive = spec.name in sensitive_params
            elif spec.has_default:
                value = spec.default
                from_sensitive = False
            else:
                raise ValidationError(
                    f"Input '{spec.name}' of module '{module.name}' has no wiring, "
                    f"parameter or default",
                    {"module": module.name},
                )

            check_type(spec, value, where)
            values[spec.name] = value
            if spec.sensitive or from_sensitive:
                sensitive.add(spec.name)

        for spec in module.inputs:
            run_validator(
                spec,
                values[spec.name],
                f"module.{module.name}.inputs.{spec.name}",
                {"var": values, "param": parameters},
            )
        return values, sensitive


_TYPE_CHECKS = {
    "string": lambda v: isinstance(v, str),
    "number": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "bool": lambda v: isinstance(v, bool),
    "list": lambda v: isinstance(v, list),
    "map": lambda v: isinstance(v, dict),
}


def check_type(spec: ParameterSpec, value: Any, where: str) -> None:
    """
    Raise ValidationError if ``value`` does not match the declared type.

    ``null`` and absent values pass; values only known after apply pass for
    ``string`` and ``any``.
    """
    if spec.type == "any" or value is None or contains_absent(value):
        return
    check = _TYPE_CHECKS[spec.type]
    if check(value):
        return
    if isinstance(value, str) and contains_reference(value):
        raise ValidationError(
            f"{where} is declared '{spec.type}' but its value is only known after apply",
        )
    raise ValidationError(
        f"{where} must be of type '{spec.type}', got {type(value).__name__} {value!r}",
    )


def run_validator(spec: ParameterSpec, value: Any, where: str, namespaces: dict[str, dict[str, Any]]) -> None:
    """
    Evaluate a parameter's validation condition.

    The condition sees the parameter under its own name and as ``value``,
    plus the given namespaces (``param`` and, for module inputs, ``var``).
    Values only known after apply, or absent, are not validated.
    """
    if spec.validation is None:
        return
    if contains_reference(value) or contains_absent(value):
        logger.debug("validation_deferred", parameter=where)
        return

    roots: dict[str, Any] = {
        label: InputNamespace(label, values) for label, values in namespaces.items()
    }
    roots["value"] = value
    roots[spec.name] = value
    scope = ExpansionScope(roots, context=f"validation of {where}")

    expression = parse_bare(spec.validation)
    try:
        result = expression.evaluate(scope) if expression is not None else True
    except (UnknownValueError, AbsentValueError):
        logger.debug("validation_deferred", parameter=where)
        return
    except ExpressionError as e:
        raise ValidationError(f"{where}: validator '{spec.validation}' failed to evaluate: {e.message}") from e

    if not result:
        shown = "(sensitive)" if spec.sensitive else repr(value)
        raise ValidationError(
            f"{where} = {shown} does not satisfy '{spec.validation}'",
            {"parameter": where},
        )


def _referenced_modules(module: ModuleDeclaration) -> Iterable[str]:
    expressions: list[Expression] = []
    for spec in module.inputs:
        if spec.is_wired:
            expressions.extend(compile_value(spec.value))
    for template in module.resources:
        count = parse_bare(template.count)
        if count is not None:
            expressions.append(count)
        expressions.extend(compile_value(template.attributes))
    expressions.extend(compile_value(module.outputs))

    for expression in expressions:
        for ref in expression.references():
            if ref.root == "module" and ref.parts and isinstance(ref.parts[0], str):
                yield ref.parts[0]
