"""Leased distributed locks on state keys."""

from stackwright.locking.backends import InMemoryLockBackend, LocalLockBackend
from stackwright.locking.dynamodb import DynamoDBLockBackend
from stackwright.locking.manager import LeaseKeeper, LockManager
from stackwright.locking.models import LockBackend, LockRecord
from stackwright.locking.sql import SqlLockBackend

__all__ = [
    "DynamoDBLockBackend",
    "InMemoryLockBackend",
    "LeaseKeeper",
    "LocalLockBackend",
    "LockBackend",
    "LockManager",
    "LockRecord",
    "SqlLockBackend",
]
