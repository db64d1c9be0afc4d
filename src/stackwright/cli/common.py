"""Shared helpers for CLI commands."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Coroutine, TypeVar

from stackwright.config.loader import load_config
from stackwright.config.settings import Settings
from stackwright.orchestrator import Orchestrator

T = TypeVar("T")


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run an async operation from a sync CLI command."""
    return asyncio.run(coro)


def build_orchestrator(
    declarations_file: str | None = None,
    config_path: str | None = None,
    settings: Settings | None = None,
) -> Orchestrator:
    settings = settings or load_config(config_path)
    return Orchestrator(settings, declarations_file=declarations_file)


def print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def mask(value: Any, sensitive: bool) -> str:
    """Render a value for human output."""
    if sensitive:
        return "(sensitive)"
    if isinstance(value, str):
        return json.dumps(value)
    return json.dumps(value, sort_keys=True, default=str)
