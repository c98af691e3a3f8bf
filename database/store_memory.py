"""
InMemoryStore — Dict-backed store for development, testing and degraded mode.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlStore
  - Single event loop: no await between read and write, so each call is atomic
  - All data lost on process restart

Stored models are deep-copied on the way in and out, so callers never
hold a reference into the store.
"""
from __future__ import annotations

import structlog
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Optional

from database.store_base import BaseStore
from models.schemas import Conversation, Flow, FlowNode, MessageLog, new_id

logger = structlog.get_logger()

_FLOW_FILTERS = ("is_active", "is_template", "business_type", "flow_type")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _matches(flow: Flow, filters: dict[str, Any]) -> bool:
    for key in _FLOW_FILTERS:
        wanted = filters.get(key)
        if wanted is not None and getattr(flow, key) != wanted:
            return False
    return True


class InMemoryStore(BaseStore):
    """Full-featured in-memory store with the same interface as SqlStore."""

    backend_name = "memory"

    def __init__(self):
        self._flows: dict[str, Flow] = {}                           # id → flow (no nodes)
        self._nodes: dict[str, FlowNode] = {}                       # id → node
        self._conversations: dict[str, Conversation] = {}           # id → conversation
        self._messages: dict[str, list[MessageLog]] = defaultdict(list)  # conv_id → [messages]

        # Indexes
        self._conversation_index: dict[str, str] = {}               # "tenant:phone" → conv_id
        logger.info("inmemory_store_initialized")

    # ── Flows ─────────────────────────────────────────────

    async def get_flow(self, flow_id: str) -> Optional[Flow]:
        flow = self._flows.get(flow_id)
        return flow.model_copy(deep=True) if flow else None

    async def list_flows(
        self, tenant_id: str, *, filters: dict[str, Any] = None,
        offset: int = 0, limit: int = 50,
    ) -> tuple[list[Flow], int]:
        filters = filters or {}
        matching = [
            f for f in self._flows.values()
            if f.tenant_id == tenant_id and _matches(f, filters)
        ]
        matching.sort(key=lambda f: f.updated_at, reverse=True)
        page = matching[offset:offset + limit]
        return [f.model_copy(deep=True) for f in page], len(matching)

    async def save_flow(self, flow: Flow) -> Flow:
        stored = flow.model_copy(deep=True, update={"nodes": []})
        existing = self._flows.get(flow.id)
        if existing is not None:
            stored.is_active = existing.is_active
        self._flows[flow.id] = stored
        return flow

    async def delete_flow(self, flow_id: str) -> bool:
        if self._flows.pop(flow_id, None) is None:
            return False
        for node_id in [n.id for n in self._nodes.values() if n.flow_id == flow_id]:
            del self._nodes[node_id]
        return True

    async def activate_flow(self, tenant_id: str, flow_id: str) -> bool:
        target = self._flows.get(flow_id)
        if target is None or target.tenant_id != tenant_id:
            return False
        now = _utcnow()
        for flow in self._flows.values():
            if flow.tenant_id == tenant_id and flow.is_active and flow.id != flow_id:
                flow.is_active = False
                flow.updated_at = now
        target.is_active = True
        target.updated_at = now
        return True

    async def deactivate_flow(self, flow_id: str) -> bool:
        flow = self._flows.get(flow_id)
        if flow is None:
            return False
        flow.is_active = False
        flow.updated_at = _utcnow()
        return True

    async def get_active_flow(self, tenant_id: str) -> Optional[Flow]:
        for flow in self._flows.values():
            if flow.tenant_id == tenant_id and flow.is_active:
                return flow.model_copy(deep=True)
        return None

    # ── Nodes ─────────────────────────────────────────────

    async def list_nodes(self, flow_id: str) -> list[FlowNode]:
        nodes = [n for n in self._nodes.values() if n.flow_id == flow_id]
        nodes.sort(key=lambda n: n.created_at)
        return [n.model_copy(deep=True) for n in nodes]

    async def get_node(self, node_id: str) -> Optional[FlowNode]:
        node = self._nodes.get(node_id)
        return node.model_copy(deep=True) if node else None

    async def save_nodes(self, nodes: list[FlowNode]) -> list[FlowNode]:
        for node in nodes:
            self._nodes[node.id] = node.model_copy(deep=True)
        return nodes

    async def delete_node(self, node_id: str) -> bool:
        return self._nodes.pop(node_id, None) is not None

    # ── Conversations ─────────────────────────────────────

    async def get_conversation(self, tenant_id: str, phone_number: str) -> Optional[Conversation]:
        conv_id = self._conversation_index.get(f"{tenant_id}:{phone_number}")
        if not conv_id:
            return None
        return self._conversations[conv_id].model_copy(deep=True)

    async def create_conversation(
        self, tenant_id: str, phone_number: str, customer_name: str = None,
    ) -> Conversation:
        key = f"{tenant_id}:{phone_number}"
        existing = self._conversation_index.get(key)
        if existing:
            return self._conversations[existing].model_copy(deep=True)
        conv = Conversation(tenant_id=tenant_id, phone_number=phone_number, customer_name=customer_name)
        self._conversations[conv.id] = conv
        self._conversation_index[key] = conv.id
        return conv.model_copy(deep=True)

    async def update_conversation(self, conversation_id: str, **fields) -> Optional[Conversation]:
        conv = self._conversations.get(conversation_id)
        if conv is None:
            return None
        updated = conv.model_copy(update={**fields, "updated_at": _utcnow()}, deep=True)
        self._conversations[conversation_id] = updated
        return updated.model_copy(deep=True)

    # ── Messages ──────────────────────────────────────────

    async def add_message(
        self, conversation_id: str, content: str, is_from_bot: bool,
        message_type: str = "text",
    ) -> MessageLog:
        msg = MessageLog(
            id=new_id(), conversation_id=conversation_id, content=content,
            message_type=message_type, is_from_bot=is_from_bot,
        )
        self._messages[conversation_id].append(msg)
        return msg

    async def get_messages(self, conversation_id: str, limit: int = 50) -> list[MessageLog]:
        msgs = self._messages.get(conversation_id, [])
        # Return last N messages in chronological order
        return list(msgs[-limit:])

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "flows": len(self._flows),
            "nodes": len(self._nodes),
            "conversations": len(self._conversations),
            "messages": sum(len(v) for v in self._messages.values()),
        }
