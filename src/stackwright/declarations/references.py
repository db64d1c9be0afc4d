"""
Instance addresses and reference tokens.

Attribute values that depend on another resource instance are not known
until that instance has been applied. The expander renders them as
reference tokens:

    ${ref:networking.vpc[0].id}

Tokens stay in rendered attributes, in plans and in state, so identical
declarations always render identical values. The apply executor swaps
them for observed attributes just before calling a provider.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Iterator

NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_ADDRESS = r"(?P<module>[A-Za-z_]\w*)\.(?P<template>[A-Za-z_]\w*)\[(?P<index>\d+)\]"
ADDRESS_PATTERN = re.compile(rf"^{_ADDRESS}$")
REF_PATTERN = re.compile(rf"\$\{{ref:{_ADDRESS}\.(?P<path>[A-Za-z_][\w.]*)\}}")


class _Absent:
    """Value of a reference into a template that expanded to no instance."""

    _instance: "_Absent | None" = None

    def __new__(cls) -> "_Absent":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "<absent>"


ABSENT = _Absent()


@dataclass(frozen=True, order=True)
class InstanceAddress:
    """Stable identity of a resource instance: (module, template, index)."""

    module: str
    template: str
    index: int = 0

    def __str__(self) -> str:
        return f"{self.module}.{self.template}[{self.index}]"

    @property
    def template_key(self) -> tuple[str, str]:
        return (self.module, self.template)

    @classmethod
    def parse(cls, text: str) -> "InstanceAddress":
        match = ADDRESS_PATTERN.match(text.strip())
        if not match:
            raise ValueError(f"Invalid instance address: {text!r}")
        return cls(match["module"], match["template"], int(match["index"]))


def make_reference(address: InstanceAddress, path: str) -> str:
    return f"${{ref:{address}.{path}}}"


def iter_references(value: Any) -> Iterator[tuple[InstanceAddress, str]]:
    """Yield (address, attribute path) for every token in a nested value."""
    if isinstance(value, str):
        for match in REF_PATTERN.finditer(value):
            address = InstanceAddress(match["module"], match["template"], int(match["index"]))
            yield address, match["path"]
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item)


def contains_reference(value: Any) -> bool:
    return next(iter_references(value), None) is not None


def contains_absent(value: Any) -> bool:
    if value is ABSENT:
        return True
    if isinstance(value, dict):
        return any(contains_absent(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_absent(v) for v in value)
    return False


def format_scalar(value: Any) -> str:
    """Render a value for embedding inside a larger string."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def resolve_references(
    value: Any,
    lookup: Callable[[InstanceAddress, str], Any],
) -> Any:
    """
    Replace reference tokens using ``lookup(address, path)``.

    A string that is exactly one token becomes the looked-up value with its
    type preserved; tokens embedded in a longer string are formatted.
    Errors raised by ``lookup`` propagate.
    """
    if isinstance(value, str):
        whole = REF_PATTERN.fullmatch(value)
        if whole:
            address = InstanceAddress(whole["module"], whole["template"], int(whole["index"]))
            return lookup(address, whole["path"])

        def replace(match: re.Match[str]) -> str:
            address = InstanceAddress(match["module"], match["template"], int(match["index"]))
            return format_scalar(lookup(address, match["path"]))

        return REF_PATTERN.sub(replace, value)
    if isinstance(value, dict):
        return {k: resolve_references(v, lookup) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_references(v, lookup) for v in value]
    return value


def lookup_path(attributes: dict[str, Any], path: str) -> Any:
    """Follow a dotted path into nested attribute maps. Raises KeyError."""
    current: Any = attributes
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            raise KeyError(path)
    return current
