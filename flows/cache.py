"""
FlowCache — process-local "active flow per tenant" reference.

Refresh policy:
  - pull-on-miss: get() asks the loader (normally the repository's
    active-flow lookup) when the tenant has no entry; a miss that finds no
    flow is not cached, so a newly activated flow is picked up on the next
    message without a restart
  - push: the sync path installs a flow directly with put()
  - invalidate: any repository mutation for a tenant drops its entry

The cache is not transactional with the durable store and starts empty on
every process start.
"""
from __future__ import annotations

import structlog
from typing import Awaitable, Callable, Optional

from models.schemas import Flow

logger = structlog.get_logger()

FlowLoader = Callable[[str], Awaitable[Optional[Flow]]]


class FlowCache:

    def __init__(self, loader: FlowLoader = None):
        self._loader = loader
        self._flows: dict[str, Flow] = {}

    def bind_loader(self, loader: FlowLoader) -> None:
        self._loader = loader

    async def get(self, tenant_id: str) -> Optional[Flow]:
        flow = self._flows.get(tenant_id)
        if flow is not None:
            return flow
        if self._loader is None:
            return None
        flow = await self._loader(tenant_id)
        if flow is not None:
            self._flows[tenant_id] = flow
            logger.debug("flow_cache_loaded", tenant_id=tenant_id, flow_id=flow.id)
        return flow

    def peek(self, tenant_id: str) -> Optional[Flow]:
        return self._flows.get(tenant_id)

    def put(self, tenant_id: str, flow: Flow) -> None:
        self._flows[tenant_id] = flow
        logger.info("flow_cache_updated", tenant_id=tenant_id, flow_id=flow.id, name=flow.name)

    def invalidate(self, tenant_id: str) -> None:
        if self._flows.pop(tenant_id, None) is not None:
            logger.debug("flow_cache_invalidated", tenant_id=tenant_id)

    def clear(self) -> None:
        self._flows.clear()

    def __contains__(self, tenant_id: str) -> bool:
        return tenant_id in self._flows
