"""
Application settings using Pydantic.

Provides environment-based configuration loading with STACKWRIGHT_ prefix.
"""

import getpass
import os
import socket
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings

STATE_BACKENDS = ("local", "sql", "memory")
LOCK_BACKENDS = ("local", "sql", "dynamodb", "memory")


def default_holder() -> str:
    """Identity recorded on lock records: user@host:pid."""
    try:
        user = getpass.getuser()
    except (KeyError, OSError):  # no passwd entry in minimal containers
        user = "unknown"
    return f"{user}@{socket.gethostname()}:{os.getpid()}"


class Settings(BaseSettings):
    """Application settings."""

    # Declarations
    declarations_file: str = "stack.yaml"

    # State store
    state_backend: str = "local"
    state_dir: str = ".stackwright"
    database_url: str = "sqlite+aiosqlite:///.stackwright/state.db"
    db_pool_size: int = 5
    db_max_overflow: int = 10
    debug: bool = False

    # Lock manager
    lock_backend: str = "local"
    lock_lease_seconds: float = 60.0
    lock_timeout_seconds: float = 0.0
    lock_backoff_initial: float = 0.5
    lock_backoff_max: float = 8.0
    holder: str | None = None

    # AWS (DynamoDB lock table)
    aws_region: str = "us-east-1"
    dynamodb_table: str = "stackwright-locks"

    # Logging
    log_level: str = "WARNING"

    @field_validator("state_backend")
    @classmethod
    def _check_state_backend(cls, value: str) -> str:
        if value not in STATE_BACKENDS:
            raise ValueError(f"state_backend must be one of {', '.join(STATE_BACKENDS)}")
        return value

    @field_validator("lock_backend")
    @classmethod
    def _check_lock_backend(cls, value: str) -> str:
        if value not in LOCK_BACKENDS:
            raise ValueError(f"lock_backend must be one of {', '.join(LOCK_BACKENDS)}")
        return value

    @field_validator("lock_lease_seconds")
    @classmethod
    def _check_lease(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("lock_lease_seconds must be positive")
        return value

    def holder_identity(self) -> str:
        return self.holder or default_holder()

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "STACKWRIGHT_"
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
