"""
ResilientStore — Durable-first storage facade with a one-way fallback.

State machine:

    HEALTHY ──(any primary failure or timeout)──▶ DEGRADED

  HEALTHY   every call goes to the primary (SQL) backend, bounded by
            `timeout` seconds via asyncio.wait_for.
  DEGRADED  every call goes to the in-memory fallback for the rest of the
            process lifetime. There is no re-probe; returning to the
            durable backend requires a restart.

The call that trips the transition is retried on the fallback, so the
caller never sees the failure. Data written to the primary before the
transition is not visible in degraded mode.
"""
from __future__ import annotations

import asyncio
import structlog
from enum import Enum
from typing import Any, Optional

from database.store_base import BaseStore
from database.store_memory import InMemoryStore
from models.schemas import Conversation, Flow, FlowNode, MessageLog

logger = structlog.get_logger()


class StoreHealth(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"


class ResilientStore(BaseStore):

    def __init__(self, primary: BaseStore, fallback: BaseStore = None, timeout: float = 5.0):
        self._primary = primary
        self._fallback = fallback or InMemoryStore()
        self._timeout = timeout
        self._health = StoreHealth.HEALTHY
        self._degraded_reason = ""

    # ── State ─────────────────────────────────────────────────

    @property
    def health(self) -> StoreHealth:
        return self._health

    @property
    def backend_name(self) -> str:
        """Name of the backend currently serving calls."""
        if self._health == StoreHealth.HEALTHY:
            return self._primary.backend_name
        return self._fallback.backend_name

    def _degrade(self, operation: str, error: BaseException) -> None:
        if self._health == StoreHealth.DEGRADED:
            return
        self._health = StoreHealth.DEGRADED
        self._degraded_reason = f"{operation}: {type(error).__name__}: {error}"
        logger.warning("store_degraded",
                       primary=self._primary.backend_name,
                       fallback=self._fallback.backend_name,
                       operation=operation,
                       error=str(error) or type(error).__name__)

    async def _call(self, operation: str, *args, **kwargs) -> Any:
        if self._health == StoreHealth.HEALTHY:
            try:
                return await asyncio.wait_for(
                    getattr(self._primary, operation)(*args, **kwargs),
                    timeout=self._timeout,
                )
            except Exception as e:
                self._degrade(operation, e)
        return await getattr(self._fallback, operation)(*args, **kwargs)

    # ── Flows ─────────────────────────────────────────────────

    async def get_flow(self, flow_id: str) -> Optional[Flow]:
        return await self._call("get_flow", flow_id)

    async def list_flows(
        self, tenant_id: str, *, filters: dict[str, Any] = None,
        offset: int = 0, limit: int = 50,
    ) -> tuple[list[Flow], int]:
        return await self._call("list_flows", tenant_id, filters=filters, offset=offset, limit=limit)

    async def save_flow(self, flow: Flow) -> Flow:
        return await self._call("save_flow", flow)

    async def delete_flow(self, flow_id: str) -> bool:
        return await self._call("delete_flow", flow_id)

    async def activate_flow(self, tenant_id: str, flow_id: str) -> bool:
        return await self._call("activate_flow", tenant_id, flow_id)

    async def deactivate_flow(self, flow_id: str) -> bool:
        return await self._call("deactivate_flow", flow_id)

    async def get_active_flow(self, tenant_id: str) -> Optional[Flow]:
        return await self._call("get_active_flow", tenant_id)

    # ── Nodes ─────────────────────────────────────────────────

    async def list_nodes(self, flow_id: str) -> list[FlowNode]:
        return await self._call("list_nodes", flow_id)

    async def get_node(self, node_id: str) -> Optional[FlowNode]:
        return await self._call("get_node", node_id)

    async def save_nodes(self, nodes: list[FlowNode]) -> list[FlowNode]:
        return await self._call("save_nodes", nodes)

    async def delete_node(self, node_id: str) -> bool:
        return await self._call("delete_node", node_id)

    # ── Conversations ─────────────────────────────────────────

    async def get_conversation(self, tenant_id: str, phone_number: str) -> Optional[Conversation]:
        return await self._call("get_conversation", tenant_id, phone_number)

    async def create_conversation(
        self, tenant_id: str, phone_number: str, customer_name: str = None,
    ) -> Conversation:
        return await self._call("create_conversation", tenant_id, phone_number, customer_name)

    async def update_conversation(self, conversation_id: str, **fields) -> Optional[Conversation]:
        return await self._call("update_conversation", conversation_id, **fields)

    # ── Messages ──────────────────────────────────────────────

    async def add_message(
        self, conversation_id: str, content: str, is_from_bot: bool,
        message_type: str = "text",
    ) -> MessageLog:
        return await self._call("add_message", conversation_id, content, is_from_bot, message_type)

    async def get_messages(self, conversation_id: str, limit: int = 50) -> list[MessageLog]:
        return await self._call("get_messages", conversation_id, limit)

    # ── Stats ─────────────────────────────────────────────────

    def stats(self) -> dict[str, Any]:
        return {
            "backend": self.backend_name,
            "health": self._health.value,
            "degraded_reason": self._degraded_reason,
        }
