from __future__ import annotations

import uuid
from typing import Any

import structlog

from stackwright.providers.base import ProviderRequest
from stackwright.state.models import ResourceState

logger = structlog.get_logger()


class NullProvider:
    """Records resources without touching any external system.

    Observed attributes echo the request plus a generated ``id``; updates
    keep the id.
    """

    async def create(self, request: ProviderRequest) -> dict[str, Any]:
        observed = dict(request.attributes)
        observed.setdefault("id", f"{request.kind}-{uuid.uuid4().hex[:12]}")
        logger.debug("null_provider_create", address=str(request.address))
        return observed

    async def update(self, request: ProviderRequest, prior: ResourceState) -> dict[str, Any]:
        observed = dict(request.attributes)
        if "id" in prior.observed:
            observed.setdefault("id", prior.observed["id"])
        logger.debug("null_provider_update", address=str(request.address))
        return observed

    async def delete(self, state: ResourceState) -> None:
        logger.debug("null_provider_delete", address=str(state.address))
