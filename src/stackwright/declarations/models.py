"""
Declaration models.

In-memory model of a declaration file: top-level parameters, resource
kind schemas and an ordered set of modules. All models are frozen once
loaded.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

PARAMETER_TYPES = ("string", "number", "bool", "list", "map", "any")


@dataclass(frozen=True)
class ParameterSpec:
    """A typed input parameter (top-level or module input)."""

    name: str
    type: str = "any"
    default: Any = None
    has_default: bool = False
    validation: str | None = None
    value: Any = None  # wiring expression, module inputs only
    sensitive: bool = False
    description: str | None = None

    @property
    def is_wired(self) -> bool:
        return self.value is not None


@dataclass(frozen=True)
class LifecyclePolicy:
    create_before_destroy: bool = False
    prevent_destroy: bool = False
    ignore_on_update: frozenset[str] = frozenset()


@dataclass(frozen=True)
class ResourceTemplate:
    """Template for zero or more resource instances of one kind."""

    id: str
    module: str
    kind: str
    count: Any = 1
    attributes: dict[str, Any] = field(default_factory=dict)
    lifecycle: LifecyclePolicy = field(default_factory=LifecyclePolicy)
    self_referential: frozenset[str] = frozenset()
    depends_on: tuple[str, ...] = ()

    @property
    def qualified_id(self) -> str:
        return f"{self.module}.{self.id}"


@dataclass(frozen=True)
class ModuleDeclaration:
    name: str
    inputs: tuple[ParameterSpec, ...] = ()
    resources: tuple[ResourceTemplate, ...] = ()
    outputs: dict[str, Any] = field(default_factory=dict)
    depends_on: tuple[str, ...] = ()

    def template(self, template_id: str) -> ResourceTemplate | None:
        for template in self.resources:
            if template.id == template_id:
                return template
        return None

    def input(self, name: str) -> ParameterSpec | None:
        for spec in self.inputs:
            if spec.name == name:
                return spec
        return None


@dataclass(frozen=True)
class ResourceKindSchema:
    """Provider-side facts about a resource kind the planner needs."""

    kind: str
    immutable: frozenset[str] = frozenset()


@dataclass(frozen=True)
class Declarations:
    """Everything loaded from one declaration file."""

    modules: tuple[ModuleDeclaration, ...]
    parameters: tuple[ParameterSpec, ...] = ()
    kinds: dict[str, ResourceKindSchema] = field(default_factory=dict)
    source: Path | None = None

    def module(self, name: str) -> ModuleDeclaration | None:
        for module in self.modules:
            if module.name == name:
                return module
        return None

    def parameter(self, name: str) -> ParameterSpec | None:
        for spec in self.parameters:
            if spec.name == name:
                return spec
        return None

    @property
    def module_names(self) -> list[str]:
        return [m.name for m in self.modules]


@dataclass(frozen=True)
class Profile:
    """Named environment profile supplying top-level parameter values."""

    name: str
    parameters: dict[str, Any] = field(default_factory=dict)
    source: Path | None = None
