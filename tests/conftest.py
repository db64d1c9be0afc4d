"""Root test configuration."""

import logging
from pathlib import Path

import pytest
import structlog

from stackwright.config.backends import Backends
from stackwright.config.settings import Settings
from stackwright.locking import InMemoryLockBackend, LockManager
from stackwright.state import InMemoryStateStore

STACK_YAML = """
parameters:
  - name: environment
    type: string
    validation: "environment == 'dev' OR environment == 'prod'"
  - name: compute_count
    type: number
    default: 2
    validation: "value >= 0"
  - name: db_password
    type: string
    default: hunter2
    sensitive: true

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
          cidr_block: "${var.cidr_block}"
          name: "${param.environment}-vpc"
    outputs:
      vpc_id: "${resource.vpc.id}"

  - name: compute
    inputs:
      - name: vpc_id
        type: string
        value: "${module.networking.vpc_id}"
      - name: compute_count
        type: number
    resources:
      - id: server
        kind: instance
        count: "${var.compute_count}"
        attributes:
          name: "server-${count.index}"
          vpc: "${var.vpc_id}"
          password: "${param.db_password}"
    outputs:
      server_ids: "${resource.server[*].id}"
"""


def pytest_configure(config):
    """Configure structlog for tests to suppress debug/info output."""
    logging.basicConfig(level=logging.WARNING, force=True)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def write_stack(directory: Path, stack: str = STACK_YAML, profiles: dict[str, str] | None = None) -> Path:
    """Write a declaration file plus profiles into ``directory``."""
    stack_file = directory / "stack.yaml"
    stack_file.write_text(stack)
    profiles_dir = directory / "profiles"
    profiles_dir.mkdir(exist_ok=True)
    if profiles is None:
        profiles = {
            "dev": "profile: dev\nparameters:\n  environment: dev\n",
            "prod": "profile: prod\nparameters:\n  environment: prod\n  compute_count: 4\n",
        }
    for name, body in profiles.items():
        (profiles_dir / f"{name}.yaml").write_text(body)
    return stack_file


@pytest.fixture
def stack_file(tmp_path):
    return write_stack(tmp_path)


@pytest.fixture
def memory_settings(tmp_path):
    return Settings(
        state_backend="memory",
        lock_backend="memory",
        state_dir=str(tmp_path / ".stackwright"),
        holder="tester@host:1",
    )


@pytest.fixture
def memory_backends(memory_settings):
    return Backends(
        store=InMemoryStateStore(),
        locks=LockManager(InMemoryLockBackend(), backoff_initial=0.01, backoff_max=0.05),
        settings=memory_settings,
    )
