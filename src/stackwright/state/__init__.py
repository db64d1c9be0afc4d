"""Versioned state snapshots and their stores."""

from stackwright.state.base import StateStore
from stackwright.state.local import LocalStateStore
from stackwright.state.memory import InMemoryStateStore
from stackwright.state.models import ResourceState, StateSnapshot
from stackwright.state.sql import SqlStateStore

__all__ = [
    "InMemoryStateStore",
    "LocalStateStore",
    "ResourceState",
    "SqlStateStore",
    "StateSnapshot",
    "StateStore",
]
