"""
Declaration file loader.

Parses a declaration YAML file into the frozen in-memory model. Any problem
raises LoadError naming the file and location; a declaration set is loaded
completely or not at all.

Expected structure:
    parameters:
      - name: environment
        type: string
        validation: "environment == 'dev' OR environment == 'prod'"

    kinds:
      network:
        immutable: [cidr_block]

    modules:
      - name: networking
        inputs:
          - name: cidr_block
            type: string
            default: 10.0.0.0/16
        resources:
          - id: vpc
            kind: network
            count: true
            attributes:
              cidr_block: ${var.cidr_block}
        outputs:
          vpc_id: ${resource.vpc.id}
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import structlog
import yaml

from stackwright.core.errors import ExpressionError, LoadError
from stackwright.declarations.expressions import compile_value, parse_bare
from stackwright.declarations.models import (
    PARAMETER_TYPES,
    Declarations,
    LifecyclePolicy,
    ModuleDeclaration,
    ParameterSpec,
    ResourceKindSchema,
    ResourceTemplate,
)
from stackwright.declarations.references import NAME_PATTERN

logger = structlog.get_logger()

_PARAMETER_KEYS = {"name", "type", "default", "validation", "value", "sensitive", "description"}
_RESOURCE_KEYS = {"id", "kind", "count", "attributes", "lifecycle", "self_referential", "depends_on"}
_LIFECYCLE_KEYS = {"create_before_destroy", "prevent_destroy", "ignore_on_update"}
_MODULE_KEYS = {"name", "inputs", "resources", "outputs", "depends_on", "description"}


def load_declarations(file_path: str | Path) -> Declarations:
    """
    Load and validate a declaration file.

    Raises:
        LoadError: If the file is missing, is not valid YAML or is malformed
    """
    path = Path(file_path)
    if not path.exists():
        raise LoadError(f"Declaration file not found: {path}")

    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise LoadError(f"Invalid YAML in {path}: {e}") from e

    declarations = parse_declarations(data, source=path)
    logger.debug(
        "declarations_loaded",
        path=str(path),
        modules=len(declarations.modules),
        templates=sum(len(m.resources) for m in declarations.modules),
    )
    return declarations


def parse_declarations(data: Any, source: Path | None = None) -> Declarations:
    """Build Declarations from already-parsed YAML data."""
    where = str(source) if source else "<declarations>"
    if not isinstance(data, dict):
        raise LoadError(f"Declaration file must be a YAML dictionary: {where}")

    unknown = set(data) - {"parameters", "kinds", "modules"}
    if unknown:
        raise LoadError(f"Unknown top-level keys in {where}: {', '.join(sorted(unknown))}")

    parameters = tuple(
        _parse_parameter(item, f"parameters[{i}]", allow_value=False)
        for i, item in enumerate(_as_list(data.get("parameters"), "parameters"))
    )
    _check_unique([p.name for p in parameters], "parameter")

    kinds = _parse_kinds(data.get("kinds") or {})

    raw_modules = _as_list(data.get("modules"), "modules")
    modules = tuple(_parse_module(item, f"modules[{i}]") for i, item in enumerate(raw_modules))
    _check_unique([m.name for m in modules], "module")

    names = {m.name for m in modules}
    for module in modules:
        for dep in module.depends_on:
            if dep not in names:
                raise LoadError(f"Module '{module.name}' depends on unknown module '{dep}'")
            if dep == module.name:
                raise LoadError(f"Module '{module.name}' depends on itself")
        for template in module.resources:
            for dep in template.depends_on:
                _check_template_dependency(modules, module, template, dep)

    return Declarations(modules=modules, parameters=parameters, kinds=kinds, source=source)


def _parse_module(data: Any, where: str) -> ModuleDeclaration:
    if not isinstance(data, dict):
        raise LoadError(f"{where} must be a dictionary")
    _check_keys(data, _MODULE_KEYS, where)
    name = _name(data.get("name"), f"{where}.name")

    inputs = tuple(
        _parse_parameter(item, f"{where}.inputs[{i}]", allow_value=True)
        for i, item in enumerate(_as_list(data.get("inputs"), f"{where}.inputs"))
    )
    _check_unique([p.name for p in inputs], f"input of module '{name}'")

    resources = tuple(
        _parse_resource(item, name, f"{where}.resources[{i}]")
        for i, item in enumerate(_as_list(data.get("resources"), f"{where}.resources"))
    )
    _check_unique([t.id for t in resources], f"resource of module '{name}'")

    outputs = data.get("outputs") or {}
    if not isinstance(outputs, dict):
        raise LoadError(f"{where}.outputs must be a dictionary")
    for output_name, expression in outputs.items():
        _name(output_name, f"{where}.outputs")
        _compile(expression, f"{where}.outputs.{output_name}")

    depends_on = tuple(_as_list(data.get("depends_on"), f"{where}.depends_on"))
    return ModuleDeclaration(
        name=name,
        inputs=inputs,
        resources=resources,
        outputs=dict(outputs),
        depends_on=depends_on,
    )


def _parse_parameter(data: Any, where: str, *, allow_value: bool) -> ParameterSpec:
    if not isinstance(data, dict):
        raise LoadError(f"{where} must be a dictionary")
    _check_keys(data, _PARAMETER_KEYS if allow_value else _PARAMETER_KEYS - {"value"}, where)
    name = _name(data.get("name"), f"{where}.name")

    type_name = data.get("type", "any")
    if type_name not in PARAMETER_TYPES:
        raise LoadError(
            f"{where}.type '{type_name}' is invalid (expected one of {', '.join(PARAMETER_TYPES)})"
        )

    validation = data.get("validation")
    if validation is not None:
        if not isinstance(validation, str):
            raise LoadError(f"{where}.validation must be a condition string")
        _compile_bare(validation, f"{where}.validation")

    value = data.get("value")
    if value is not None:
        _compile(value, f"{where}.value")

    return ParameterSpec(
        name=name,
        type=type_name,
        default=data.get("default"),
        has_default="default" in data,
        validation=validation,
        value=value,
        sensitive=bool(data.get("sensitive", False)),
        description=data.get("description"),
    )


def _parse_resource(data: Any, module: str, where: str) -> ResourceTemplate:
    if not isinstance(data, dict):
        raise LoadError(f"{where} must be a dictionary")
    _check_keys(data, _RESOURCE_KEYS, where)
    template_id = _name(data.get("id"), f"{where}.id")

    kind = data.get("kind")
    if not isinstance(kind, str) or not kind:
        raise LoadError(f"{where}.kind is required")

    count = data.get("count", 1)
    if isinstance(count, (int, bool)):
        if not isinstance(count, bool) and count < 0:
            raise LoadError(f"{where}.count must not be negative")
    elif isinstance(count, str):
        _compile_bare(count, f"{where}.count")
    else:
        raise LoadError(f"{where}.count must be an integer, boolean or expression")

    attributes = data.get("attributes") or {}
    if not isinstance(attributes, dict):
        raise LoadError(f"{where}.attributes must be a dictionary")
    _compile(attributes, f"{where}.attributes")

    lifecycle = _parse_lifecycle(data.get("lifecycle") or {}, f"{where}.lifecycle")

    self_referential = frozenset(_as_list(data.get("self_referential"), f"{where}.self_referential"))
    missing = self_referential - set(attributes)
    if missing:
        raise LoadError(
            f"{where}.self_referential names unknown attributes: {', '.join(sorted(missing))}"
        )

    depends_on = tuple(_as_list(data.get("depends_on"), f"{where}.depends_on"))
    return ResourceTemplate(
        id=template_id,
        module=module,
        kind=kind,
        count=count,
        attributes=dict(attributes),
        lifecycle=lifecycle,
        self_referential=self_referential,
        depends_on=depends_on,
    )


def _parse_lifecycle(data: Any, where: str) -> LifecyclePolicy:
    if not isinstance(data, dict):
        raise LoadError(f"{where} must be a dictionary")
    _check_keys(data, _LIFECYCLE_KEYS, where)
    ignore = _as_list(data.get("ignore_on_update"), f"{where}.ignore_on_update")
    if not all(isinstance(item, str) for item in ignore):
        raise LoadError(f"{where}.ignore_on_update must list attribute names")
    return LifecyclePolicy(
        create_before_destroy=bool(data.get("create_before_destroy", False)),
        prevent_destroy=bool(data.get("prevent_destroy", False)),
        ignore_on_update=frozenset(ignore),
    )


def _parse_kinds(data: Any) -> dict[str, ResourceKindSchema]:
    if not isinstance(data, dict):
        raise LoadError("'kinds' must be a dictionary of kind -> schema")
    kinds: dict[str, ResourceKindSchema] = {}
    for kind, schema in data.items():
        schema = schema or {}
        if not isinstance(schema, dict):
            raise LoadError(f"kinds.{kind} must be a dictionary")
        _check_keys(schema, {"immutable"}, f"kinds.{kind}")
        immutable = _as_list(schema.get("immutable"), f"kinds.{kind}.immutable")
        kinds[str(kind)] = ResourceKindSchema(kind=str(kind), immutable=frozenset(immutable))
    return kinds


def _check_template_dependency(
    modules: tuple[ModuleDeclaration, ...],
    module: ModuleDeclaration,
    template: ResourceTemplate,
    dep: str,
) -> None:
    if "." in dep:
        module_name, template_id = dep.split(".", 1)
    else:
        module_name, template_id = module.name, dep
    target = next((m for m in modules if m.name == module_name), None)
    if target is None or target.template(template_id) is None:
        raise LoadError(f"Resource '{template.qualified_id}' depends on unknown resource '{dep}'")


def _compile(value: Any, where: str) -> None:
    try:
        compile_value(value)
    except ExpressionError as e:
        raise LoadError(f"{where}: {e.message}") from e


def _compile_bare(value: Any, where: str) -> None:
    try:
        parse_bare(value)
    except ExpressionError as e:
        raise LoadError(f"{where}: {e.message}") from e


def _name(value: Any, where: str) -> str:
    if not isinstance(value, str) or not NAME_PATTERN.match(value):
        raise LoadError(f"{where} must be an identifier (letters, digits, underscore), got {value!r}")
    return value


def _as_list(value: Any, where: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise LoadError(f"{where} must be a list")
    return value


def _check_keys(data: dict[str, Any], allowed: set[str], where: str) -> None:
    unknown = set(data) - allowed
    if unknown:
        raise LoadError(f"Unknown keys in {where}: {', '.join(sorted(unknown))}")


def _check_unique(names: list[str], what: str) -> None:
    seen: set[str] = set()
    for name in names:
        if name in seen:
            raise LoadError(f"Duplicate {what} name '{name}'")
        seen.add(name)
